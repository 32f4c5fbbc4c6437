from __future__ import annotations

from typing import List, Optional


class SentinelError(Exception):
    """Base class for log-sentinel errors."""


class ConfigError(SentinelError):
    pass


class EventSourceError(SentinelError):
    """The filesystem event source could not be initialized."""


class TailError(SentinelError):
    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path


class LineTooLongError(TailError):
    """A single record exceeded the line buffer.

    ``lines`` holds the complete lines read before the oversized one so
    callers can still process them.
    """

    def __init__(self, path: str, limit: int, lines: Optional[List[str]] = None):
        super().__init__(path, f"line exceeds buffer size of {limit} bytes")
        self.limit = limit
        self.lines = list(lines or [])


class NotifierError(SentinelError):
    pass
