"""Shared logging utilities.

SafeStreamHandler tolerates broken pipes and closed file descriptors, which
happen when CLI output is piped into ``head`` or the terminal goes away during
a long report run.

DebugLogBuffer keeps the most recent records in memory so a front end can show
a diagnostics panel without tailing log files.
"""
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that ignores broken pipe and closed file errors."""

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass  # stdout closed, ignore silently
        except ValueError:
            pass  # I/O operation on closed file


def configure_safe_logging(level=logging.INFO):
    """Configure root logger with SafeStreamHandler.

    Safe to call multiple times (guards against duplicate handlers).

    Args:
        level: Logging level to set (default: INFO)
    """
    logger = logging.getLogger()
    existing = [h for h in logger.handlers if isinstance(h, SafeStreamHandler)]
    if existing:
        for handler in existing:
            handler.setLevel(level)
    else:
        handler = SafeStreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handler.setLevel(level)
        logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    # aiohttp logs every connection detail at DEBUG
    logging.getLogger("aiohttp").setLevel(max(level, logging.INFO))


class DebugLogEntry(BaseModel):
    timestamp: str
    level: str
    message: str
    context: Optional[str] = None


LogListener = Callable[[list], None]


class DebugLogBuffer(logging.Handler):
    """Logging handler keeping the newest ``max_logs`` records, newest first.

    ``context`` is the short logger name (``freshdesk_activity.http_client`` ->
    ``http_client``) unless the record carries an explicit ``context`` extra.
    """

    DEFAULT_MAX_LOGS = 1000

    def __init__(self, max_logs: int = DEFAULT_MAX_LOGS, level=logging.NOTSET):
        super().__init__(level)
        self.max_logs = max_logs
        self._logs: deque = deque(maxlen=max_logs)
        self._listeners: list[LogListener] = []
        self._lock_logs = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = DebugLogEntry(
                timestamp=datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
                level=record.levelname.lower(),
                message=record.getMessage(),
                context=getattr(record, "context", None) or record.name.rsplit(".", 1)[-1],
            )
        except Exception:
            self.handleError(record)
            return

        with self._lock_logs:
            self._logs.appendleft(entry)
            snapshot = list(self._logs)
        for listener in list(self._listeners):
            listener(snapshot)

    def get_logs(self) -> list[DebugLogEntry]:
        with self._lock_logs:
            return list(self._logs)

    def clear(self) -> None:
        with self._lock_logs:
            self._logs.clear()
        for listener in list(self._listeners):
            listener([])

    def subscribe(self, listener: LogListener) -> Callable[[], None]:
        """Register a listener called with the full log list on every change.

        Returns a function that unsubscribes it.
        """
        self._listeners.append(listener)
        listener(self.get_logs())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


def attach_debug_buffer(
    logger_name: str = "freshdesk_activity",
    max_logs: int = DebugLogBuffer.DEFAULT_MAX_LOGS,
    level=logging.DEBUG,
) -> DebugLogBuffer:
    """Attach a DebugLogBuffer to a logger (idempotent) and return it."""
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers:
        if isinstance(handler, DebugLogBuffer):
            return handler
    buffer = DebugLogBuffer(max_logs=max_logs, level=level)
    logger.addHandler(buffer)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    return buffer
