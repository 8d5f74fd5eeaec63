import logging
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(
    level: int = logging.INFO,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    When ``log_file`` is given, records are also appended to that file.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    fmt = log_format or DEFAULT_FORMAT
    logging.basicConfig(level=level, format=fmt)
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding='utf-8')
        handler.setFormatter(logging.Formatter(fmt))
        root.addHandler(handler)


class InstrumentLogAdapter(logging.LoggerAdapter):
    """Prefix every record with the instrument it concerns."""

    def process(self, msg, kwargs):
        instrument = self.extra.get('instrument', '?')
        extra = dict(kwargs.get('extra') or {})
        extra.setdefault('instrument', instrument)
        kwargs['extra'] = extra
        return f"[{instrument}] {msg}", kwargs


def for_instrument(logger: logging.Logger, instrument: str) -> InstrumentLogAdapter:
    return InstrumentLogAdapter(logger, {'instrument': instrument})
