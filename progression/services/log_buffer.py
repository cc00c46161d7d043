"""
progression.services.log_buffer — Recent Log Records for the Admin API
=======================================================================

A bounded, thread-safe tail of recent log records kept in process memory.
Admins read it through ``GET /api/admin/logs`` and change how much is
captured with ``PUT /api/admin/logs/level``.  Nothing is persisted; the
audit trail of record is ``admin_log`` and ``reward_history``.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from progression.errors import ValidationError

DEFAULT_CAPACITY = 2000
VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True, slots=True)
class LogEntry:
    timestamp: str
    level: str
    logger: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


class LogBuffer:
    """Ring of the last *capacity* :class:`LogEntry` objects."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: LogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def tail(
        self,
        count: int = 200,
        min_level: str | None = None,
        logger_prefix: str | None = None,
    ) -> list[dict[str, str]]:
        """Newest-last entries at or above *min_level* from loggers under *logger_prefix*."""
        threshold = logging.getLevelName(min_level.upper()) if min_level else 0
        if not isinstance(threshold, int):
            raise ValidationError(f"Invalid level: {min_level}. Must be one of {VALID_LEVELS}")

        with self._lock:
            snapshot = list(self._entries)

        selected = [
            e.to_dict() for e in snapshot
            if logging.getLevelName(e.level) >= threshold
            and (not logger_prefix or e.logger.startswith(logger_prefix))
        ]
        return selected[-count:] if count > 0 else selected

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class BufferHandler(logging.Handler):
    """Logging handler feeding a :class:`LogBuffer`."""

    def __init__(self, buffer: LogBuffer, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(LogEntry(
                timestamp=datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                level=record.levelname,
                logger=record.name,
                message=self.format(record),
            ))
        except Exception:
            self.handleError(record)


# One buffer per process
_buffer = LogBuffer()
_install_lock = threading.Lock()


def get_buffer() -> LogBuffer:
    return _buffer


def _installed_handler() -> BufferHandler | None:
    for handler in logging.getLogger().handlers:
        if isinstance(handler, BufferHandler):
            return handler
    return None


def install_handler(level: int = logging.INFO) -> BufferHandler:
    """Attach the buffer to the root logger (once) and return its handler.

    Uvicorn's loggers are switched to propagate so request logs land in
    the buffer too.
    """
    with _install_lock:
        handler = _installed_handler()
        if handler is None:
            handler = BufferHandler(_buffer, level=level)
            handler.setFormatter(logging.Formatter("%(message)s"))
            logging.getLogger().addHandler(handler)
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            logging.getLogger(name).propagate = True
        return handler


def get_logs(
    tail: int = 200,
    level: str | None = None,
    logger_filter: str | None = None,
) -> list[dict[str, str]]:
    return _buffer.tail(count=tail, min_level=level, logger_prefix=logger_filter)


def get_current_level() -> str:
    handler = _installed_handler()
    if handler is None:
        return logging.getLevelName(logging.getLogger().level)
    return logging.getLevelName(handler.level)


def set_capture_level(level_name: str) -> str:
    """Change the minimum level captured into the buffer.

    Raises
    ------
    ValidationError
        If *level_name* is not one of :data:`VALID_LEVELS`.
    """
    level_name = level_name.upper()
    if level_name not in VALID_LEVELS:
        raise ValidationError(f"Invalid level: {level_name}. Must be one of {VALID_LEVELS}")
    install_handler().setLevel(getattr(logging, level_name))
    return level_name
