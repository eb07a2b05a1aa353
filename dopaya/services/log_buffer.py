"""
dopaya.services.log_buffer — Operator Alert Buffer
====================================================

Points accounting failures never reach the donor: by the time the ledger
runs, money has already moved.  They are logged instead, and this module
keeps the WARNING-and-above records of the ``dopaya`` logger tree in a
thread-safe ring buffer so operators can read them from
``GET /api/admin/alerts``.

Each process (API worker) keeps its own buffer via a module-level
singleton.  Nothing is persisted; a log shipper is the durable copy.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_CAPACITY = 1000
ALERT_LOGGER = "dopaya"

# Module-level singleton — one per process
_buffer: AlertBuffer | None = None
_lock = threading.Lock()


class AlertEntry:
    """One captured log record."""
    __slots__ = ("timestamp", "level", "logger", "message")

    def __init__(self, timestamp: str, level: str, logger: str, message: str):
        self.timestamp = timestamp
        self.level = level
        self.logger = logger
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "logger": self.logger,
            "message": self.message,
        }


class AlertBuffer:
    """Thread-safe ring buffer backed by :class:`collections.deque`."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: deque[AlertEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: AlertEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_entries(
        self,
        tail: int = 100,
        level: str | None = None,
        logger_filter: str | None = None,
    ) -> list[dict[str, str]]:
        """Return the most recent *tail* entries, optionally filtered."""
        min_level = getattr(logging, level.upper(), 0) if level else 0

        with self._lock:
            snapshot = list(self._entries)

        results: list[dict[str, str]] = []
        for entry in snapshot:
            if min_level and getattr(logging, entry.level, 0) < min_level:
                continue
            # prefix match
            if logger_filter and not entry.logger.startswith(logger_filter):
                continue
            results.append(entry.to_dict())

        if tail and len(results) > tail:
            results = results[-tail:]
        return results

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._entries)


class AlertHandler(logging.Handler):
    """Logging handler that appends records to an :class:`AlertBuffer`."""

    def __init__(self, buffer: AlertBuffer, level: int = logging.WARNING) -> None:
        super().__init__(level)
        self._buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            if record.exc_info and record.exc_info[1] is not None:
                message = f"{message} [{type(record.exc_info[1]).__name__}: {record.exc_info[1]}]"
            self._buffer.append(AlertEntry(
                timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                level=record.levelname,
                logger=record.name,
                message=message,
            ))
        except Exception:
            self.handleError(record)


# ---------------------------------------------------------------------------
# Singleton access
# ---------------------------------------------------------------------------
def get_buffer() -> AlertBuffer:
    """Return (or create) the process-global alert buffer."""
    global _buffer
    if _buffer is None:
        with _lock:
            if _buffer is None:
                _buffer = AlertBuffer()
    return _buffer


def install_handler(level: int = logging.WARNING) -> AlertHandler:
    """Attach the alert handler to the ``dopaya`` logger (idempotent)."""
    target = logging.getLogger(ALERT_LOGGER)
    for existing in target.handlers:
        if isinstance(existing, AlertHandler):
            existing.setLevel(level)
            return existing

    handler = AlertHandler(get_buffer(), level=level)
    target.addHandler(handler)
    return handler


def get_alerts(
    tail: int = 100,
    level: str | None = None,
    logger_filter: str | None = None,
) -> list[dict[str, str]]:
    """Convenience wrapper — fetch entries from the global buffer."""
    return get_buffer().get_entries(tail=tail, level=level, logger_filter=logger_filter)
