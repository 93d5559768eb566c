from __future__ import annotations

import logging
from collections import deque

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class RecentLogBuffer(logging.Handler):
    """Keeps the last ``capacity`` formatted records for the status endpoint."""

    def __init__(self, capacity: int = 200) -> None:
        super().__init__()
        self._lines: deque[str] = deque(maxlen=max(1, capacity))
        self.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._lines.append(self.format(record))
        except Exception:
            self.handleError(record)

    def lines(self, limit: int | None = None) -> list[str]:
        items = list(self._lines)
        if limit is not None:
            return items[-limit:] if limit > 0 else []
        return items

    def clear(self) -> None:
        self._lines.clear()


def attach_log_buffer(logger: logging.Logger, capacity: int) -> RecentLogBuffer:
    for handler in logger.handlers:
        if isinstance(handler, RecentLogBuffer):
            logger.removeHandler(handler)
    buffer = RecentLogBuffer(capacity)
    logger.addHandler(buffer)
    return buffer
