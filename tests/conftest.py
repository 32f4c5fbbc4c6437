import asyncio
import threading
import time

import pytest

from log_sentinel.config import SentinelConfig, Settings
from log_sentinel.errors import NotifierError
from log_sentinel.notifiers import Notifier
from log_sentinel.runtime import LogMonitor
from log_sentinel.sources import EventSource


class FakeEventSource(EventSource):
    """In-memory event source: tests push events by hand."""

    def __init__(self):
        super().__init__()
        self.added = []
        self.removed = []

    def _watch_dir(self, directory):
        self.added.append(directory)
        return directory

    def _unwatch_dir(self, directory, handle):
        self.removed.append(directory)

    def push(self, kind, path, is_dir=False):
        self.emit(kind, str(path), is_dir)


class RecordingNotifier(Notifier):
    name = "recording"

    def __init__(self):
        self.messages = []
        self._lock = threading.Lock()

    def send(self, message):
        with self._lock:
            self.messages.append(message)


class FailingNotifier(Notifier):
    name = "failing"

    def send(self, message):
        raise NotifierError("boom")


async def wait_until(cond, timeout=3.0, step=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        await asyncio.sleep(step)
    return cond()


@pytest.fixture
def fake_source():
    return FakeEventSource()


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def make_monitor(fake_source, recorder):
    def _make(rules=(), notifiers=None, **settings):
        from log_sentinel.rules import DirectoryRule, FileRule

        cfg = SentinelConfig(
            log_files=[r for r in rules if isinstance(r, FileRule)],
            log_directories=[r for r in rules if isinstance(r, DirectoryRule)],
            settings=Settings(**settings),
        )
        return LogMonitor(cfg, notifiers if notifiers is not None else [recorder], source=fake_source)

    return _make


@pytest.fixture(name="wait_until")
def _wait_until_fixture():
    return wait_until
