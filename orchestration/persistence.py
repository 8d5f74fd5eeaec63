import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from monitoring.async_utils import RetryPolicy, with_backoff
from strategy.errors import NON_RETRYABLE, OverridesLocked


logger = logging.getLogger(__name__)

Watermark = Tuple[int, int]

LOCK_RETRY = RetryPolicy(attempts=5, base_delay_s=0.05, max_delay_s=0.5)


class JsonDocument:
    """A small JSON document shared between this process and external editors.

    Writers go through :meth:`update`, which serialises on an in-process lock and
    an exclusive ``<path>.lock`` file, re-reads the current document, applies the
    mutation and replaces the file atomically. Readers never take the lock.
    """

    def __init__(
        self,
        path: str,
        default_factory: Callable[[], Dict[str, Any]] = dict,
        stale_lock_s: float = 30.0,
        lock_retry: RetryPolicy = LOCK_RETRY,
    ):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')
        self.default_factory = default_factory
        self.stale_lock_s = stale_lock_s
        self.lock_retry = lock_retry
        self._lock = asyncio.Lock()

    def watermark(self) -> Optional[Watermark]:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def read_sync(self) -> Dict[str, Any]:
        try:
            raw = self.path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return self.default_factory()
        if not raw.strip():
            return self.default_factory()
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    async def read(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self.read_sync)

    async def update(self, mutate: Callable[[Dict[str, Any]], Any]) -> Tuple[Dict[str, Any], Any]:
        """Read-modify-write; returns the written document and ``mutate``'s result."""
        async with self._lock:
            return await with_backoff(
                lambda: asyncio.to_thread(self._locked_update, mutate),
                f"update:{self.path.name}",
                policy=self.lock_retry,
                give_up_on=NON_RETRYABLE + (ValueError, TypeError),
            )

    def _locked_update(self, mutate: Callable[[Dict[str, Any]], Any]) -> Tuple[Dict[str, Any], Any]:
        self._acquire_file_lock()
        try:
            data = self.read_sync()
            result = mutate(data)
            self._write_atomic(data)
            return data, result
        finally:
            self._release_file_lock()

    def _acquire_file_lock(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if self._break_stale_lock():
                return self._acquire_file_lock()
            raise OverridesLocked(f"{self.path.name} is locked")
        with os.fdopen(fd, 'w') as fh:
            fh.write(str(os.getpid()))

    def _break_stale_lock(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age < self.stale_lock_s:
            return False
        logger.warning("Removing stale lock %s (age %.1fs)", self.lock_path, age)
        self.lock_path.unlink(missing_ok=True)
        return True

    def _release_file_lock(self) -> None:
        self.lock_path.unlink(missing_ok=True)

    def _write_atomic(self, data: Dict[str, Any]) -> None:
        tmp = self.path.with_name(f"{self.path.name}.tmp-{os.getpid()}-{time.monotonic_ns()}")
        tmp.write_text(json.dumps(data, indent=2, default=str), encoding='utf-8')
        os.replace(tmp, self.path)
