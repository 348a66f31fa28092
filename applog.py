# applog.py
# Shared "medcabinet" logger: in-memory ring for the debug view + optional log file.

import logging
from pathlib import Path
from threading import RLock
from typing import Optional

_LOG_LOCK = RLock()


class _RingLog:
    def __init__(self, max_lines=800):
        self.max_lines = int(max_lines)
        self._lines = []
        self._lock = RLock()

    def add(self, line: str):
        line = (line or "").rstrip("\n")
        if not line:
            return
        with self._lock:
            self._lines.append(line)
            if len(self._lines) > self.max_lines:
                del self._lines[:-self.max_lines]

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def tail(self, n: int = 50) -> str:
        with self._lock:
            return "\n".join(self._lines[-n:])

    def clear(self):
        with self._lock:
            self._lines = []


RING = _RingLog()


class _FileAndRingHandler(logging.Handler):
    def __init__(self, ring: _RingLog):
        super().__init__()
        self.ring = ring
        self.log_path: Optional[Path] = None
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            msg = str(record.getMessage())
        self.ring.add(msg)
        if self.log_path is None:
            return
        try:
            with _LOG_LOCK:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with self.log_path.open("a", encoding="utf-8") as f:
                    f.write(msg + "\n")
        except OSError:
            self.handleError(record)


logger = logging.getLogger("medcabinet")
logger.setLevel(logging.INFO)

_HANDLER = next((h for h in logger.handlers if isinstance(h, _FileAndRingHandler)), None)
if _HANDLER is None:
    _HANDLER = _FileAndRingHandler(RING)
    logger.addHandler(_HANDLER)


def set_log_file(path: Optional[Path]):
    """Start (or stop, with None) mirroring log lines to ``path``."""
    with _LOG_LOCK:
        _HANDLER.log_path = Path(path) if path is not None else None


def clear_log():
    RING.clear()
    path = _HANDLER.log_path
    if path is not None:
        with _LOG_LOCK:
            path.unlink(missing_ok=True)
