import asyncio
import json
import logging
import math
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from orchestration.persistence import JsonDocument, Watermark


logger = logging.getLogger(__name__)

MODES = ('percent', 'absolute')

# dataclass field -> key in the persisted document
_DOC_KEYS = {
    'mode': 'mode',
    'target': 'target',
    'stop': 'stop',
    'target_pct': 'targetPct',
    'stop_pct': 'stopPct',
    'trail_pct': 'trailPct',
    'avg_cost': 'avgCost',
    'eod_close': 'eodClose',
    'eod_cutoff_min': 'eodCutoffMin',
    'eod_close_pct': 'eodClosePct',
    'eod_close_for_crypto': 'eodCloseForCrypto',
}
_BOOL_FIELDS = ('eod_close', 'eod_close_for_crypto')


def _finite(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


@dataclass(frozen=True)
class OverrideRecord:
    """Exit parameters for one instrument that take precedence over static config."""

    mode: Optional[str] = None
    target: Optional[float] = None
    stop: Optional[float] = None
    target_pct: Optional[float] = None
    stop_pct: Optional[float] = None
    trail_pct: Optional[float] = None
    avg_cost: Optional[float] = None
    eod_close: Optional[bool] = None
    eod_cutoff_min: Optional[float] = None
    eod_close_pct: Optional[float] = None
    eod_close_for_crypto: Optional[bool] = None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> 'OverrideRecord':
        if not isinstance(raw, dict):
            return cls()
        values: Dict[str, Any] = {}
        for attr, key in _DOC_KEYS.items():
            value = raw.get(key, raw.get(attr))
            if attr == 'mode':
                values[attr] = value if value in MODES else None
            elif attr in _BOOL_FIELDS:
                values[attr] = bool(value) if value is not None else None
            else:
                values[attr] = _finite(value)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            _DOC_KEYS[f.name]: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    @property
    def is_empty(self) -> bool:
        return not self.to_dict()


EMPTY = OverrideRecord()


def _patch_to_doc(patch: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in patch.items():
        out[_DOC_KEYS.get(key, key)] = value
    return out


class OverrideStore:
    """Hot-reloadable per-instrument exit overrides backed by a JSON document."""

    def __init__(self, path: str, watch_interval_s: float = 2.0):
        self.document = JsonDocument(path)
        self.watch_interval_s = watch_interval_s
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._watermark: Optional[Watermark] = None
        self._loaded = False
        self._watch_task: Optional[asyncio.Task] = None

    @property
    def path(self) -> str:
        return str(self.document.path)

    def _load_if_changed(self) -> bool:
        mark = self.document.watermark()
        if self._loaded and mark == self._watermark:
            return False
        try:
            data = self.document.read_sync()
        except (json.JSONDecodeError, ValueError) as exc:
            # Torn read while a writer replaces the file: keep the stale cache and retry next call
            logger.warning("Overrides document unreadable, keeping cached copy: %s", exc)
            return False
        except OSError as exc:
            logger.warning("Overrides document read failed, keeping cached copy: %s", exc)
            return False
        self._cache = {str(k).upper(): v for k, v in data.items() if isinstance(v, dict)}
        self._watermark = mark
        self._loaded = True
        return True

    async def refresh(self) -> bool:
        return await asyncio.to_thread(self._load_if_changed)

    async def get(self, instrument: str) -> OverrideRecord:
        await self.refresh()
        return self.get_cached(instrument)

    def get_cached(self, instrument: str) -> OverrideRecord:
        raw = self._cache.get(instrument.upper())
        return OverrideRecord.from_dict(raw) if raw else EMPTY

    async def all(self) -> Dict[str, OverrideRecord]:
        await self.refresh()
        return {symbol: OverrideRecord.from_dict(raw) for symbol, raw in self._cache.items()}

    async def upsert(self, instrument: str, patch: Dict[str, Any], replace: bool = False) -> OverrideRecord:
        """Merge ``patch`` into one instrument's record (or replace it) and persist."""
        symbol = instrument.upper()
        doc_patch = _patch_to_doc(patch)

        def _mutate(data: Dict[str, Any]) -> Dict[str, Any]:
            current = {} if replace else dict(data.get(symbol) or {})
            current.update(doc_patch)
            data[symbol] = {k: v for k, v in current.items() if v is not None}
            return data[symbol]

        data, record = await self.document.update(_mutate)
        self._remember(data)
        logger.info("Override for %s updated: %s", symbol, record)
        return OverrideRecord.from_dict(record)

    async def set_percent(
        self,
        instrument: str,
        target_pct: Optional[float],
        stop_pct: Optional[float],
        trail_pct: Optional[float] = 0.0,
    ) -> OverrideRecord:
        return await self.upsert(instrument, {
            'mode': 'percent',
            'target_pct': target_pct,
            'stop_pct': stop_pct,
            'trail_pct': trail_pct or 0.0,
        })

    async def set_absolute(
        self,
        instrument: str,
        target: Optional[float],
        stop: Optional[float],
        trail_pct: Optional[float] = None,
    ) -> OverrideRecord:
        patch: Dict[str, Any] = {'mode': 'absolute', 'target': target, 'stop': stop}
        if trail_pct is not None:
            patch['trail_pct'] = trail_pct
        return await self.upsert(instrument, patch)

    async def remove(self, instrument: str) -> bool:
        symbol = instrument.upper()

        def _mutate(data: Dict[str, Any]) -> bool:
            return data.pop(symbol, None) is not None

        data, removed = await self.document.update(_mutate)
        self._remember(data)
        return bool(removed)

    def _remember(self, data: Dict[str, Any]) -> None:
        # Our own write is the newest state; adopt it so a read-back never sees the prior version
        self._cache = {str(k).upper(): v for k, v in data.items() if isinstance(v, dict)}
        self._watermark = self.document.watermark()
        self._loaded = True

    def watch(self) -> asyncio.Task:
        """Begin polling the document for external edits."""
        if self._watch_task is None or self._watch_task.done():
            self._load_if_changed()
            self._watch_task = asyncio.create_task(self._watch_loop())
        return self._watch_task

    async def stop(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            await asyncio.gather(self._watch_task, return_exceptions=True)
            self._watch_task = None

    async def _watch_loop(self) -> None:
        while True:
            await asyncio.sleep(self.watch_interval_s)
            try:
                if await self.refresh():
                    logger.info("Overrides reloaded from %s (%s instruments)", self.path, len(self._cache))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Overrides watch failed: %s", exc)
