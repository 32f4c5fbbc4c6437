"""Filesystem event sources.

Both sources watch directories non-recursively; the monitor walks trees and
adds one watch per directory itself. Watching a file means watching its
parent directory, and watches are shared between every path that needs them.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import EventSourceError

logger = logging.getLogger(__name__)

WRITE = "write"
CREATE = "create"
REMOVE = "remove"
RENAME = "rename"


@dataclass
class FsEvent:
    kind: str  # "write" | "create" | "remove" | "rename"
    path: str
    is_dir: bool = False


class EventSource:
    """Base class: watch bookkeeping plus an asyncio event stream."""

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._watches: Dict[str, Any] = {}
        self._requested: Dict[str, str] = {}
        self._closed = False

    def start(self) -> None:
        """Bind to the running loop. Must be called from inside it."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._start()

    def add_path(self, path: str) -> None:
        p = os.path.abspath(path)
        if not os.path.exists(p):
            raise FileNotFoundError(p)
        target = p if os.path.isdir(p) else os.path.dirname(p)
        if target not in self._watches:
            self._watches[target] = self._watch_dir(target)
            logger.debug("watching %s", target)
        self._requested[p] = target

    def remove_path(self, path: str) -> bool:
        p = os.path.abspath(path)
        target = self._requested.pop(p, None)
        if target is None:
            return False
        if target not in self._requested.values():
            handle = self._watches.pop(target, None)
            if handle is not None:
                self._unwatch_dir(target, handle)
                logger.debug("stopped watching %s", target)
        return True

    def is_watching(self, path: str) -> bool:
        return os.path.abspath(path) in self._watches

    def watched(self) -> Set[str]:
        return set(self._watches)

    async def events(self) -> AsyncIterator[FsEvent]:
        if self._queue is None:
            raise EventSourceError("event source not started")
        while True:
            ev = await self._queue.get()
            if ev is None:
                return
            yield ev

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._close()
        self._join()
        self._finish()

    async def aclose(self) -> None:
        """Like :meth:`close`, but waits for backend threads off the loop."""
        if self._closed:
            return
        self._closed = True
        self._close()
        await asyncio.to_thread(self._join)
        self._finish()

    def _finish(self) -> None:
        self._watches.clear()
        self._requested.clear()
        self._post(None)

    def emit(self, kind: str, path: str, is_dir: bool = False) -> None:
        self._post(FsEvent(kind, os.path.abspath(path), is_dir))

    def _post(self, item: Optional[FsEvent]) -> None:
        if self._loop is None or self._queue is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # loop already closed; nobody is listening
            logger.debug("dropping event %s, loop closed", item)

    # Subclass hooks
    def _start(self) -> None:
        pass

    def _watch_dir(self, directory: str) -> Any:
        raise NotImplementedError

    def _unwatch_dir(self, directory: str, handle: Any) -> None:
        pass

    def _close(self) -> None:
        pass

    def _join(self) -> None:
        pass


class _ForwardingHandler(FileSystemEventHandler):
    def __init__(self, source: "WatchdogEventSource"):
        super().__init__()
        self._source = source

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._source.translate(event)


class WatchdogEventSource(EventSource):
    """Native notifications (inotify, FSEvents, ...) through watchdog."""

    def __init__(self, join_timeout: float = 5.0):
        super().__init__()
        self._observer = None
        self._stopping = None
        self._handler = _ForwardingHandler(self)
        self.join_timeout = join_timeout

    def _start(self) -> None:
        try:
            self._observer = Observer()
            self._observer.daemon = True
            self._observer.start()
        except Exception as e:
            raise EventSourceError(f"failed to start filesystem observer: {e}") from e

    def _watch_dir(self, directory: str) -> Any:
        if self._observer is None:
            raise EventSourceError("event source not started")
        return self._observer.schedule(self._handler, directory, recursive=False)

    def _unwatch_dir(self, directory: str, handle: Any) -> None:
        try:
            self._observer.unschedule(handle)
        except (KeyError, OSError) as e:
            # inotify drops the watch itself when the directory goes away
            logger.debug("unschedule %s: %s", directory, e)

    def _close(self) -> None:
        obs, self._observer = self._observer, None
        if obs is None:
            return
        obs.unschedule_all()
        obs.stop()
        self._stopping = obs

    def _join(self) -> None:
        obs, self._stopping = self._stopping, None
        if obs is None:
            return
        obs.join(timeout=self.join_timeout)
        if obs.is_alive():
            logger.warning("filesystem observer did not stop within %.1fs", self.join_timeout)

    def translate(self, event: FileSystemEvent) -> None:
        """Runs on the observer thread."""
        etype = event.event_type
        src = os.fsdecode(event.src_path)
        is_dir = bool(event.is_directory)
        if etype == "modified":
            if not is_dir:
                self.emit(WRITE, src)
        elif etype == "created":
            self.emit(CREATE, src, is_dir)
        elif etype == "deleted":
            self.emit(REMOVE, src, is_dir)
        elif etype == "moved":
            self.emit(RENAME, src, is_dir)
            dest = os.fsdecode(getattr(event, "dest_path", "") or "")
            if dest:
                self.emit(CREATE, dest, is_dir)
        # opened/closed notifications carry no new content


Snapshot = Tuple[Dict[str, Tuple[int, int]], Set[str]]


class PollingEventSource(EventSource):
    """Snapshot-diff watcher for filesystems without native notifications.

    Renames are not observable by polling and surface as remove + create.
    """

    def __init__(self, poll_interval: float = 1.0):
        super().__init__()
        self.poll = poll_interval
        self._task: Optional[asyncio.Task] = None
        self._unreadable: Set[str] = set()

    @staticmethod
    def _scan(directory: str) -> Snapshot:
        files: Dict[str, Tuple[int, int]] = {}
        dirs: Set[str] = set()
        with os.scandir(directory) as it:
            for entry in it:
                try:
                    if entry.is_dir(follow_symlinks=False):
                        dirs.add(entry.path)
                    elif entry.is_file():
                        st = entry.stat()
                        files[entry.path] = (st.st_size, st.st_mtime_ns)
                except FileNotFoundError:
                    continue
        return files, dirs

    def _start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _watch_dir(self, directory: str) -> Snapshot:
        return self._scan(directory)

    def _unwatch_dir(self, directory: str, handle: Any) -> None:
        self._unreadable.discard(directory)

    def _close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def poll_once(self) -> None:
        for d in list(self._watches):
            old_files, old_dirs = self._watches[d]
            try:
                new_files, new_dirs = self._scan(d)
                self._unreadable.discard(d)
            except FileNotFoundError:
                new_files, new_dirs = {}, set()
            except OSError as e:
                # Treated as empty until it can be listed again
                if d not in self._unreadable:
                    self._unreadable.add(d)
                    logger.warning("cannot poll %s: %s", d, e)
                new_files, new_dirs = {}, set()
            oldf, newf = set(old_files), set(new_files)
            for p in sorted(newf - oldf):
                self.emit(CREATE, p)
            for p in sorted(oldf & newf):
                if new_files[p] != old_files[p]:
                    self.emit(WRITE, p)
            for p in sorted(oldf - newf):
                self.emit(REMOVE, p)
            for p in sorted(new_dirs - old_dirs):
                self.emit(CREATE, p, True)
            for p in sorted(old_dirs - new_dirs):
                self.emit(REMOVE, p, True)
            if d in self._watches:
                self._watches[d] = (new_files, new_dirs)

    async def _run(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.poll)
            try:
                self.poll_once()
            except Exception:
                logger.exception("poll failed")
