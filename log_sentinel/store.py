from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from .rules import (
    DirectoryRule,
    FileRule,
    WatchBinding,
    is_excluded_dir,
    is_in_directory,
    matches_extension,
)


class RWLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class OffsetStore:
    """Absolute path -> bytes already delivered to the matcher."""

    def __init__(self):
        self._lock = RWLock()
        self._offsets: Dict[str, int] = {}

    def get(self, path: str, default: int = 0) -> int:
        with self._lock.read():
            return self._offsets.get(path, default)

    def set(self, path: str, offset: int) -> None:
        with self._lock.write():
            self._offsets[path] = int(offset)

    def discard(self, path: str) -> bool:
        with self._lock.write():
            return self._offsets.pop(path, None) is not None

    def discard_under(self, directory: str) -> int:
        prefix = directory.rstrip(os.sep) + os.sep
        with self._lock.write():
            doomed = [p for p in self._offsets if p.startswith(prefix)]
            for p in doomed:
                del self._offsets[p]
        return len(doomed)

    def snapshot(self) -> Dict[str, int]:
        with self._lock.read():
            return dict(self._offsets)

    @contextmanager
    def exclusive(self) -> Iterator[Dict[str, int]]:
        """Yield the raw mapping while holding the write lock."""
        with self._lock.write():
            yield self._offsets

    def __contains__(self, path: object) -> bool:
        with self._lock.read():
            return path in self._offsets

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._offsets)


class WatchRegistry:
    """Maps watched paths back to the rule that declared them.

    File rules win over directory rules; directory rules are consulted in
    registration order.
    """

    def __init__(self):
        self._lock = RWLock()
        self._files: Dict[str, FileRule] = {}
        self._dirs: List[DirectoryRule] = []

    def add_file(self, rule: FileRule) -> None:
        with self._lock.write():
            self._files[rule.path] = rule

    def add_directory(self, rule: DirectoryRule) -> None:
        with self._lock.write():
            # Rules sharing a path all apply, first registered first
            if rule not in self._dirs:
                self._dirs.append(rule)

    def directory_rules_for(self, path: str) -> List[DirectoryRule]:
        out = []
        with self._lock.read():
            for rule in self._dirs:
                if not is_in_directory(path, rule.path, rule.recursive):
                    continue
                if rule.recursive and is_excluded_dir(os.path.dirname(path), rule.exclude_dirs):
                    continue
                out.append(rule)
        return out

    def binding_for(self, path: str) -> Optional[WatchBinding]:
        with self._lock.read():
            frule = self._files.get(path)
        if frule is not None:
            return WatchBinding(frule.keywords, frule)
        for drule in self.directory_rules_for(path):
            if matches_extension(path, drule.extensions):
                return WatchBinding(drule.keywords, drule)
        return None

    def resolve(self, path: str) -> Optional[Tuple[str, ...]]:
        binding = self.binding_for(path)
        return binding.keywords if binding else None

    def watched_files(self) -> List[str]:
        with self._lock.read():
            return sorted(self._files)

    def watched_dirs(self) -> List[str]:
        with self._lock.read():
            return sorted({r.path for r in self._dirs})
