from __future__ import annotations

import logging
import os
from typing import BinaryIO, List

from .errors import LineTooLongError
from .store import OffsetStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 100 * 1024 * 1024
DEFAULT_BUFFER_SIZE = 64 * 1024


def _decode(raw: bytes) -> str:
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


class TailReader:
    """Incrementally read whole lines appended to files since the last call.

    Offsets live in the shared :class:`OffsetStore`. After a read the stored
    offset points just past the last complete line, so an unterminated
    trailing fragment is picked up again once its newline is written.

    Not re-entrant per path: callers must serialize reads of the same file.
    """

    def __init__(self, offsets: OffsetStore, max_file_size: int = DEFAULT_MAX_FILE_SIZE,
                 buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.offsets = offsets
        self.max_file_size = max_file_size
        self.buffer_size = buffer_size

    def read_new_lines(self, path: str) -> List[str]:
        with open(path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            if size > self.max_file_size:
                logger.debug("skip read of %s: %d bytes exceeds limit %d", path, size, self.max_file_size)
                return []
            offset = self.offsets.get(path)
            if size < offset:
                logger.info("%s shrank from %d to %d bytes, reading from start", path, offset, size)
                offset = 0
            f.seek(offset)
            lines: List[str] = []
            try:
                consumed = self._scan(f, size - offset, lines)
            except LineTooLongError as e:
                # Skip the whole snapshot rather than re-hit the same record forever
                self.offsets.set(path, size)
                raise LineTooLongError(path, self.buffer_size, lines) from e
        self.offsets.set(path, offset + consumed)
        return lines

    def _scan(self, f: BinaryIO, remaining: int, lines: List[str]) -> int:
        """Read at most ``remaining`` bytes, appending complete lines.

        Returns the number of bytes consumed by complete lines.
        """
        consumed = 0
        pending = b""
        while remaining > 0:
            chunk = f.read(min(self.buffer_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            parts = (pending + chunk).split(b"\n")
            pending = parts.pop()
            for raw in parts:
                if len(raw) > self.buffer_size:
                    raise LineTooLongError(getattr(f, "name", "?"), self.buffer_size)
                consumed += len(raw) + 1
                lines.append(_decode(raw))
            if len(pending) > self.buffer_size:
                raise LineTooLongError(getattr(f, "name", "?"), self.buffer_size)
        return consumed
