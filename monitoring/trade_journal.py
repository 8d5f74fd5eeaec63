import csv
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from strategy.execution_types import ExitFill


logger = logging.getLogger(__name__)

TRADE_COLUMNS = [
    'ts', 'session', 'symbol', 'side', 'qty', 'fill_price', 'avg_cost',
    'slippage_bps', 'fee', 'reason', 'mode', 'realized_pnl', 'cum_pnl',
]
MARK_COLUMNS = ['ts', 'session', 'symbol', 'price', 'qty', 'avg_cost', 'unreal_pnl']


def _f6(value: float) -> str:
    return f"{float(value):.6f}"


@dataclass
class PnLBucket:
    cum_pnl: float = 0.0
    trades: int = 0


class TradeJournal:
    """Append-only CSV journals of exits and mark-to-market samples.

    Column order is consumed positionally by the dashboard and must not change.
    """

    def __init__(self, trades_path: str, marks_path: str, session: Optional[str] = None):
        self.trades_path = Path(trades_path)
        self.marks_path = Path(marks_path)
        self.session = session or str(uuid.uuid4())
        self.buckets: Dict[str, PnLBucket] = {}
        # Rows are appended from worker threads
        self._lock = threading.Lock()

    def bucket(self, symbol: str) -> PnLBucket:
        return self.buckets.setdefault(symbol, PnLBucket())

    def record_exit(self, fill: ExitFill, ts: Optional[datetime] = None) -> float:
        """Append one exit row; returns the symbol's cumulative realized PnL."""
        with self._lock:
            bucket = self.bucket(fill.symbol)
            bucket.cum_pnl += fill.realized_pnl
            bucket.trades += 1
            self._append(self.trades_path, TRADE_COLUMNS, [
                self._ts(ts), self.session, fill.symbol, 'sell', _f6(fill.qty),
                _f6(fill.fill_price), _f6(fill.avg_cost), _f6(fill.slippage_bps), _f6(fill.fee),
                fill.reason, fill.mode, _f6(fill.realized_pnl), _f6(bucket.cum_pnl),
            ])
        logger.info(
            "EXIT %s %s qty=%s fill=%.6f avg=%.6f pnl=%.4f cum=%.4f (%s)",
            fill.symbol,
            fill.reason,
            fill.qty,
            fill.fill_price,
            fill.avg_cost,
            fill.realized_pnl,
            bucket.cum_pnl,
            fill.mode,
        )
        return bucket.cum_pnl

    def record_mark(self, symbol: str, price: float, qty: float, avg_cost: float, ts: Optional[datetime] = None):
        with self._lock:
            self._append(self.marks_path, MARK_COLUMNS, [
                self._ts(ts), self.session, symbol, _f6(price), _f6(qty), _f6(avg_cost),
                _f6((price - avg_cost) * qty),
            ])

    def read_trades(self, limit: Optional[int] = None) -> List[Dict[str, str]]:
        return self._read(self.trades_path, limit)

    def read_marks(self, limit: Optional[int] = None) -> List[Dict[str, str]]:
        return self._read(self.marks_path, limit)

    def totals(self) -> Dict[str, Dict[str, float]]:
        return {
            symbol: {'cum_pnl': bucket.cum_pnl, 'trades': bucket.trades}
            for symbol, bucket in self.buckets.items()
        }

    def reset(self) -> None:
        """Truncate both journals back to their header rows and clear PnL buckets."""
        with self._lock:
            for path, columns in ((self.trades_path, TRADE_COLUMNS), (self.marks_path, MARK_COLUMNS)):
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open('w', newline='', encoding='utf-8') as handle:
                    csv.writer(handle).writerow(columns)
            self.buckets.clear()
        logger.info("Trade journals reset (session %s)", self.session)

    @staticmethod
    def _ts(ts: Optional[datetime]) -> str:
        return (ts or datetime.now(timezone.utc)).isoformat()

    @staticmethod
    def _append(path: Path, columns: List[str], row: List[str]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            new_file = not path.exists() or path.stat().st_size == 0
            with path.open('a', newline='', encoding='utf-8') as handle:
                writer = csv.writer(handle)
                if new_file:
                    writer.writerow(columns)
                writer.writerow(row)
        except OSError as exc:
            logger.error("Failed to append to %s: %s", path, exc)

    @staticmethod
    def _read(path: Path, limit: Optional[int]) -> List[Dict[str, str]]:
        if not path.exists():
            return []
        with path.open('r', newline='', encoding='utf-8') as handle:
            rows = list(csv.DictReader(handle))
        if limit is not None and limit >= 0:
            rows = rows[-limit:] if limit else []
        return rows
