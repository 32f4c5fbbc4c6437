from __future__ import annotations

import asyncio
import logging
import os
import signal
from contextlib import suppress
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import SentinelConfig
from .errors import ConfigError, EventSourceError, LineTooLongError, SentinelError
from .metrics import MonitorStats
from .notifiers import Alert, AlertDispatcher, Notifier, create_notifiers
from .rules import DirectoryRule, FileRule, Rule, is_excluded_dir, match_keyword, matches_extension
from .sources import CREATE, REMOVE, RENAME, WRITE, EventSource, FsEvent, PollingEventSource, WatchdogEventSource
from .store import OffsetStore, WatchRegistry
from .tailer import TailReader
from .util import file_size

logger = logging.getLogger(__name__)


class LogMonitor:
    """Watch-and-tail engine.

    A single consumer task handles filesystem events in arrival order; tail
    reads, matching and offset updates all happen synchronously on that
    path. Only notifier delivery is fanned out to separate tasks. The
    reconciliation task runs on the same loop and never yields mid-sweep,
    so it cannot interleave with a read of the same file.
    """

    def __init__(self, config: SentinelConfig, notifiers: List[Notifier],
                 source: Optional[EventSource] = None, stats: Optional[MonitorStats] = None):
        self.config = config
        self.settings = config.settings
        self.offsets = OffsetStore()
        self.registry = WatchRegistry()
        self.reader = TailReader(self.offsets, self.settings.max_file_size, self.settings.buffer_size)
        self.stats = stats or MonitorStats()
        self.dispatcher = AlertDispatcher(notifiers, self.stats, self.settings.alert_template)
        self.source = source
        self._consumer: Optional[asyncio.Task] = None
        self._reconciler: Optional[asyncio.Task] = None
        self._running = False

    @property
    def max_file_size(self) -> int:
        return self.settings.max_file_size

    @property
    def running(self) -> bool:
        return self._running

    def _make_source(self) -> EventSource:
        if self.settings.backend == "polling":
            return PollingEventSource(poll_interval=self.settings.poll_interval)
        return WatchdogEventSource()

    # Lifecycle

    async def start(self) -> None:
        if self._running:
            return
        if self.source is None:
            self.source = self._make_source()
        try:
            self.source.start()
        except EventSourceError:
            raise
        except Exception as e:
            raise EventSourceError(f"failed to start event source: {e}") from e

        for rule in self.config.enabled_rules():
            try:
                self.register(rule)
            except (OSError, SentinelError) as e:
                logger.error("failed to watch %s: %s", rule.path or "<empty>", e)

        loop = asyncio.get_running_loop()
        self._consumer = loop.create_task(self._watch_loop())
        self._reconciler = loop.create_task(self._reconcile_loop())
        self._running = True
        logger.info("monitor started: %d files, %d directories, %d tracked offsets",
                    len(self.registry.watched_files()), len(self.registry.watched_dirs()), len(self.offsets))

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self.source is not None:
            await self.source.aclose()
        if self._reconciler is not None:
            self._reconciler.cancel()
            with suppress(asyncio.CancelledError):
                await self._reconciler
        if self._consumer is not None:
            try:
                await asyncio.wait_for(self._consumer, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("event consumer did not finish in time, cancelled")
        logger.info("monitor stopped (%s)", self.stats.summary())

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "files": self.registry.watched_files(),
            "dirs": self.registry.watched_dirs(),
            "tracked": len(self.offsets),
            "pending_alerts": self.dispatcher.pending,
            **self.stats.as_dict(),
        }

    # Registration

    def register(self, rule: Rule) -> None:
        if isinstance(rule, FileRule):
            self.register_file(rule)
        elif isinstance(rule, DirectoryRule):
            self.register_directory(rule)
        else:
            raise TypeError(f"unsupported rule type {type(rule).__name__}")

    def register_file(self, rule: FileRule) -> None:
        path = rule.path
        if not os.path.isfile(path):
            raise FileNotFoundError(f"no such file: {path}")
        self.source.add_path(path)
        self.offsets.set(path, os.stat(path).st_size)
        self.registry.add_file(rule)
        logger.info("watching file %s", path)

    def register_directory(self, rule: DirectoryRule) -> None:
        path = rule.path
        if not os.path.isdir(path):
            raise FileNotFoundError(f"no such directory: {path}")
        if rule.recursive:
            self.registry.add_directory(rule)
            n = self._watch_tree(path, rule, strict=True)
            logger.info("watching directory %s recursively (%d directories)", path, n)
        else:
            self.source.add_path(path)
            try:
                self.scan_directory(path, rule)
            except OSError:
                self.source.remove_path(path)
                raise
            self.registry.add_directory(rule)
            logger.info("watching directory %s", path)

    def _watch_tree(self, top: str, rule: DirectoryRule, strict: bool = False) -> int:
        """Watch and scan every non-excluded directory under ``top``.

        With ``strict`` a failure on ``top`` itself propagates; failures
        below it are logged and the walk continues.
        """
        def _onerror(err: OSError):
            if strict and os.path.abspath(err.filename or "") == top:
                raise err
            logger.warning("cannot list %s: %s", err.filename, err)

        watched = 0
        for dirpath, dirnames, _ in os.walk(top, onerror=_onerror):
            if is_excluded_dir(dirpath, rule.exclude_dirs):
                logger.info("excluding %s", dirpath)
                dirnames[:] = []
                continue
            dirnames[:] = sorted(d for d in dirnames
                                 if not is_excluded_dir(os.path.join(dirpath, d), rule.exclude_dirs))
            try:
                self.source.add_path(dirpath)
                self.scan_directory(dirpath, rule)
            except OSError as e:
                if strict and dirpath == top:
                    raise
                logger.warning("failed to watch directory %s: %s", dirpath, e)
                continue
            watched += 1
        return watched

    def scan_directory(self, directory: str, rule: DirectoryRule) -> int:
        """Seed offsets of the matching files directly inside ``directory``.

        Existing content is never alerted on: offsets start at current size.
        """
        seeded = 0
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
        for entry in entries:
            try:
                if not entry.is_file():
                    continue
                size = entry.stat().st_size
            except OSError:
                continue
            path = os.path.join(directory, entry.name)
            if not matches_extension(path, rule.extensions):
                continue
            if size > self.max_file_size:
                logger.warning("skipping oversized file %s (%d bytes, limit %d)", path, size, self.max_file_size)
                continue
            self.offsets.set(path, size)
            seeded += 1
        return seeded

    # Event routing

    async def _watch_loop(self) -> None:
        async for ev in self.source.events():
            self.stats.events += 1
            try:
                await self.handle_event(ev)
            except Exception:
                logger.exception("error handling %s event for %s", ev.kind, ev.path)
        logger.debug("event stream closed")

    async def handle_event(self, ev: FsEvent) -> None:
        if ev.kind == WRITE:
            self.on_write(ev.path)
        elif ev.kind == CREATE:
            if ev.is_dir or os.path.isdir(ev.path):
                self.on_dir_created(ev.path)
            else:
                self.on_create(ev.path)
        elif ev.kind in (REMOVE, RENAME):
            self.on_remove(ev.path, renamed=ev.kind == RENAME, is_dir=ev.is_dir)
        else:
            logger.debug("ignoring %s event for %s", ev.kind, ev.path)

    def on_write(self, path: str) -> int:
        keywords = self.registry.resolve(path)
        if not keywords:
            return 0
        try:
            lines = self.reader.read_new_lines(path)
        except LineTooLongError as e:
            logger.warning("%s; skipped to end of file", e)
            lines = e.lines
        except OSError as e:
            logger.warning("failed to read new content of %s: %s", path, e)
            return 0
        self.stats.lines += len(lines)
        alerts = 0
        for line in lines:
            kw = match_keyword(line, keywords)
            if kw is None:
                continue
            self.dispatcher.dispatch(Alert(path=path, line=line, timestamp=datetime.now(), keyword=kw))
            alerts += 1
        return alerts

    def on_create(self, path: str) -> bool:
        binding = self.registry.binding_for(path)
        if binding is None or not isinstance(binding.rule, DirectoryRule):
            logger.debug("ignoring new file %s", path)
            return False
        size = file_size(path)
        if size is None:
            logger.debug("new file %s vanished before tracking", path)
            return False
        if size > self.max_file_size:
            logger.warning("skipping oversized new file %s (%d bytes, limit %d)", path, size, self.max_file_size)
            return False
        # New files are tailed from the start
        self.offsets.set(path, 0)
        logger.info("discovered new log file %s", path)
        return True

    def on_dir_created(self, path: str) -> int:
        """Watch and baseline a new directory for every recursive rule covering it.

        Watches are shared, so overlapping rules only add references.
        """
        total = 0
        for rule in self.registry.directory_rules_for(path):
            if not rule.recursive:
                continue
            if is_excluded_dir(path, rule.exclude_dirs):
                logger.info("ignoring directory %s excluded by rule on %s", path, rule.path)
                continue
            n = self._watch_tree(path, rule)
            logger.info("watching new directory %s for rule on %s (%d directories)", path, rule.path, n)
            total += n
        return total

    def on_remove(self, path: str, renamed: bool = False, is_dir: bool = False) -> None:
        dropped = self.offsets.discard(path)
        if is_dir or self.source.is_watching(path):
            prefix = path.rstrip(os.sep) + os.sep
            for d in sorted(self.source.watched()):
                if d == path or d.startswith(prefix):
                    self.source.remove_path(d)
            dropped = self.offsets.discard_under(path) > 0 or dropped
        if dropped:
            logger.info("log file %s %s, stopped tracking", path, "renamed" if renamed else "removed")

    # Reconciliation

    def reconcile(self) -> Dict[str, int]:
        removed = reanchored = 0
        with self.offsets.exclusive() as offsets:
            for path in list(offsets):
                try:
                    size = os.stat(path).st_size
                except FileNotFoundError:
                    del offsets[path]
                    removed += 1
                    logger.info("dropping offset of vanished file %s", path)
                    continue
                except OSError as e:
                    logger.debug("cannot stat %s: %s", path, e)
                    continue
                if size > self.max_file_size and offsets[path] < size:
                    offsets[path] = size
                    reanchored += 1
                    logger.info("re-anchored oversized file %s at %d bytes", path, size)
            tracked = len(offsets)
        logger.info("reconciliation done: %d removed, %d re-anchored, %d files tracked (%s)",
                    removed, reanchored, tracked, self.stats.summary())
        return {"removed": removed, "reanchored": reanchored, "tracked": tracked}

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval)
            try:
                self.reconcile()
            except Exception:
                logger.exception("reconciliation failed")


async def run_monitor(config: SentinelConfig, notifiers: Optional[List[Notifier]] = None,
                      stop_event: Optional[asyncio.Event] = None) -> LogMonitor:
    """Run a monitor until SIGINT/SIGTERM (or ``stop_event``) and stop it cleanly."""
    if notifiers is None:
        notifiers = create_notifiers(config.notifiers)
    if not notifiers:
        raise ConfigError("no usable notifiers configured")
    logger.info("configured %d notifiers", len(notifiers))

    monitor = LogMonitor(config, notifiers)
    await monitor.start()

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError, ValueError):
            # not supported here; Ctrl-C still surfaces as KeyboardInterrupt
            pass
    logger.info("Log sentinel running. Press Ctrl-C to stop.")
    try:
        await stop_event.wait()
        logger.info("shutdown requested")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(sig)
        await monitor.stop()
    return monitor
