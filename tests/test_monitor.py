import asyncio
import os
import re
from pathlib import Path

import pytest

from log_sentinel.config import SentinelConfig
from log_sentinel.errors import EventSourceError
from log_sentinel.rules import DirectoryRule, FileRule
from log_sentinel.runtime import LogMonitor
from log_sentinel.sources import FsEvent


def _append(p: Path, data: bytes):
    with p.open("ab") as h:
        h.write(data)


def test_directory_rule_alerts_on_appended_match(tmp_path: Path, make_monitor, recorder):
    logs = tmp_path / "logs"
    logs.mkdir()
    a = logs / "a.log"
    a.write_bytes(b"0123456789")
    rule = DirectoryRule(path=str(logs), keywords=["panic"], extensions=[".log"], recursive=False)

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        assert monitor.offsets.get(str(a)) == 10
        _append(a, b"ok\npanic: boom\n")
        await monitor.handle_event(FsEvent("write", str(a)))
        await monitor.dispatcher.wait_idle()
        return monitor

    monitor = asyncio.run(run_case())
    assert len(recorder.messages) == 1
    assert "panic: boom" in recorder.messages[0]
    assert monitor.offsets.get(str(a)) == 25
    assert monitor.stats.alerts == 1 and monitor.stats.lines == 2


def test_alert_message_format(tmp_path: Path, make_monitor, recorder):
    logs = tmp_path / "logs"
    logs.mkdir()
    a = logs / "a.log"
    a.write_bytes(b"")
    rule = DirectoryRule(path=str(logs), keywords=["error"], extensions=[".log"])
    line = "ERROR {{path}} <b>raw</b> \t tail"

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        _append(a, (line + "\n").encode())
        monitor.on_write(str(a))
        await monitor.dispatcher.wait_idle()

    asyncio.run(run_case())
    msg = recorder.messages[0]
    assert f"File: {a}" in msg
    assert re.search(r"Time: \d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}", msg)
    assert msg.endswith(f"Line: {line}")


def test_create_in_subdirectory_of_non_recursive_rule_is_ignored(tmp_path: Path, make_monitor, recorder):
    logs = tmp_path / "logs"
    sub = logs / "sub"
    sub.mkdir(parents=True)
    rule = DirectoryRule(path=str(logs), keywords=["panic"], extensions=[".log"], recursive=False)
    b = sub / "b.log"

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        b.write_bytes(b"panic: nested\n")
        await monitor.handle_event(FsEvent("create", str(b)))
        await monitor.handle_event(FsEvent("write", str(b)))
        await monitor.dispatcher.wait_idle()
        return monitor

    monitor = asyncio.run(run_case())
    assert str(b) not in monitor.offsets
    assert recorder.messages == []


def test_recursive_rule_tails_direct_and_nested_files(tmp_path: Path, make_monitor, recorder, fake_source):
    logs = tmp_path / "logs"
    sub = logs / "sub"
    sub.mkdir(parents=True)
    rule = DirectoryRule(path=str(logs), keywords=["panic"], extensions=[".log"], recursive=True)
    top, nested = logs / "top.log", sub / "nested.log"

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        for f in (top, nested):
            f.write_bytes(b"")
            await monitor.handle_event(FsEvent("create", str(f)))
            assert monitor.offsets.get(str(f), default=-1) == 0
            _append(f, b"panic: " + f.name.encode() + b"\n")
            await monitor.handle_event(FsEvent("write", str(f)))
        await monitor.dispatcher.wait_idle()

    asyncio.run(run_case())
    assert sorted(fake_source.added) == sorted([str(logs), str(sub)])
    assert len(recorder.messages) == 2


def test_excluded_directories_are_never_tailed(tmp_path: Path, make_monitor, recorder, fake_source):
    logs = tmp_path / "logs"
    deep = logs / "skipme" / "deep"
    deep.mkdir(parents=True)
    (logs / "kept").mkdir()
    old = deep / "old.log"
    old.write_bytes(b"history\n")
    rule = DirectoryRule(path=str(logs), keywords=["panic"], extensions=[".log"],
                         recursive=True, exclude_dirs=["skipme"])

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        fresh = deep / "fresh.log"
        fresh.write_bytes(b"")
        await monitor.handle_event(FsEvent("create", str(fresh)))
        _append(fresh, b"panic\n")
        _append(old, b"panic\n")
        await monitor.handle_event(FsEvent("write", str(fresh)))
        await monitor.handle_event(FsEvent("write", str(old)))
        newdir = logs / "skipme2"
        newdir.mkdir()
        assert monitor.on_dir_created(str(newdir)) == 0
        await monitor.dispatcher.wait_idle()
        return monitor

    monitor = asyncio.run(run_case())
    assert not any("skipme" in d for d in fake_source.added)
    assert sorted(fake_source.added) == sorted([str(logs), str(logs / "kept")])
    assert len(monitor.offsets) == 0
    assert recorder.messages == []


def test_new_subdirectory_under_recursive_rule_is_watched_and_scanned(tmp_path: Path, make_monitor, recorder,
                                                                      fake_source):
    logs = tmp_path / "logs"
    logs.mkdir()
    rule = DirectoryRule(path=str(logs), keywords=["error"], extensions=[".log"], recursive=True)

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        inner = logs / "svc" / "inner"
        inner.mkdir(parents=True)
        pre = inner / "pre.log"
        pre.write_bytes(b"error before watch\n")
        await monitor.handle_event(FsEvent("create", str(logs / "svc"), is_dir=True))
        assert str(inner) in fake_source.added
        assert monitor.offsets.get(str(pre)) == pre.stat().st_size
        _append(pre, b"error after watch\n")
        await monitor.handle_event(FsEvent("write", str(pre)))
        await monitor.dispatcher.wait_idle()

    asyncio.run(run_case())
    assert len(recorder.messages) == 1
    assert "error after watch" in recorder.messages[0]


def test_remove_and_rename_drop_offsets(tmp_path: Path, make_monitor):
    logs = tmp_path / "logs"
    logs.mkdir()
    a, b = logs / "a.log", logs / "b.log"
    a.write_bytes(b"aaaa\n")
    b.write_bytes(b"bbbb\n")
    rule = DirectoryRule(path=str(logs), keywords=["x"], extensions=[".log"])

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        assert len(monitor.offsets) == 2
        a.unlink()
        await monitor.handle_event(FsEvent("remove", str(a)))
        await monitor.handle_event(FsEvent("rename", str(b)))
        assert len(monitor.offsets) == 0
        # a later create starts a fresh lifecycle
        a.write_bytes(b"")
        await monitor.handle_event(FsEvent("create", str(a)))
        return monitor

    monitor = asyncio.run(run_case())
    assert monitor.offsets.snapshot() == {str(a): 0}


def test_removed_directory_releases_watches(tmp_path: Path, make_monitor, fake_source):
    logs = tmp_path / "logs"
    sub = logs / "sub"
    sub.mkdir(parents=True)
    (sub / "x.log").write_bytes(b"1\n")
    rule = DirectoryRule(path=str(logs), keywords=["x"], extensions=[".log"], recursive=True)

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        await monitor.handle_event(FsEvent("remove", str(sub), is_dir=True))
        return monitor

    monitor = asyncio.run(run_case())
    assert fake_source.removed == [str(sub)]
    assert not fake_source.is_watching(str(sub))
    assert len(monitor.offsets) == 0


def test_oversized_new_file_is_skipped(tmp_path: Path, make_monitor):
    logs = tmp_path / "logs"
    logs.mkdir()
    big = logs / "big.log"
    big.write_bytes(b"z" * 100)
    rule = DirectoryRule(path=str(logs), keywords=["z"], extensions=[".log"])

    async def run_case():
        monitor = make_monitor([rule], max_file_size=50)
        monitor.register(rule)
        assert str(big) not in monitor.offsets
        assert monitor.on_create(str(big)) is False
        return monitor

    monitor = asyncio.run(run_case())
    assert len(monitor.offsets) == 0


def test_reconcile_evicts_vanished_files_once(tmp_path: Path, make_monitor):
    f = tmp_path / "gone.log"
    monitor = make_monitor()
    monitor.offsets.set(str(f), 42)

    first = monitor.reconcile()
    second = monitor.reconcile()
    assert first["removed"] == 1
    assert second["removed"] == 0
    assert str(f) not in monitor.offsets


def test_reconcile_reanchors_oversized_files(tmp_path: Path, make_monitor):
    big = tmp_path / "big.log"
    big.write_bytes(b"q" * 100)
    small = tmp_path / "small.log"
    small.write_bytes(b"q" * 10)
    monitor = make_monitor(max_file_size=50)
    monitor.offsets.set(str(big), 5)
    monitor.offsets.set(str(small), 2)

    result = monitor.reconcile()
    assert result == {"removed": 0, "reanchored": 1, "tracked": 2}
    assert monitor.offsets.get(str(big)) == 100
    assert monitor.offsets.get(str(small)) == 2


def test_notifier_failure_does_not_block_others(tmp_path: Path, make_monitor, recorder, failing_notifier):
    f = tmp_path / "app.log"
    f.write_bytes(b"")
    rule = FileRule(path=str(f), keywords=["fatal"])

    async def run_case():
        monitor = make_monitor([rule], notifiers=[failing_notifier, recorder])
        monitor.register(rule)
        _append(f, b"FATAL one\nfine\nfatal two\n")
        assert monitor.on_write(str(f)) == 2
        await monitor.dispatcher.wait_idle()
        return monitor

    monitor = asyncio.run(run_case())
    assert len(recorder.messages) == 2
    assert monitor.stats.deliveries["failing"] == {"success": 0, "error": 2}
    assert monitor.stats.deliveries["recording"] == {"success": 2, "error": 0}


def test_start_skips_bad_rules_and_stop_ends_stream(tmp_path: Path, make_monitor, recorder, fake_source,
                                                    wait_until):
    f = tmp_path / "app.log"
    f.write_bytes(b"existing error\n")
    rules = [
        FileRule(path=str(tmp_path / "missing.log"), keywords=["error"]),
        DirectoryRule(path=str(tmp_path / "nodir"), keywords=["error"], extensions=[".log"]),
        FileRule(path=str(f), keywords=["error"]),
        FileRule(path=str(tmp_path / "disabled.log"), keywords=["error"], enabled=False),
    ]

    async def run_case():
        monitor = make_monitor(rules)
        await monitor.start()
        assert monitor.running
        assert monitor.registry.watched_files() == [str(f)]
        _append(f, b"new error\n")
        fake_source.push("write", f)
        assert await wait_until(lambda: recorder.messages)
        await monitor.stop()
        await monitor.stop()
        assert monitor._consumer.done()
        return monitor

    monitor = asyncio.run(run_case())
    assert len(recorder.messages) == 1
    assert "new error" in recorder.messages[0]
    assert monitor.stats.events == 1
    assert monitor.status()["running"] is False


def test_event_source_failure_is_fatal(recorder):
    from log_sentinel.sources import EventSource

    class BrokenSource(EventSource):
        def _start(self):
            raise OSError("inotify limit reached")

    monitor = LogMonitor(SentinelConfig(), [recorder], source=BrokenSource())
    with pytest.raises(EventSourceError):
        asyncio.run(monitor.start())
    assert not monitor.running


def test_handler_errors_do_not_stop_consumer(tmp_path: Path, make_monitor, fake_source, wait_until, monkeypatch):
    f = tmp_path / "app.log"
    f.write_bytes(b"")
    rule = FileRule(path=str(f), keywords=["error"])
    calls = []

    async def run_case():
        monitor = make_monitor([rule])
        await monitor.start()

        def boom(path):
            calls.append(path)
            raise RuntimeError("unexpected")

        monkeypatch.setattr(monitor, "on_write", boom)
        fake_source.push("write", f)
        fake_source.push("write", f)
        assert await wait_until(lambda: len(calls) == 2)
        await monitor.stop()
        return monitor

    monitor = asyncio.run(run_case())
    assert monitor.stats.events == 2


def test_write_for_unknown_path_is_ignored(tmp_path: Path, make_monitor, recorder):
    stray = tmp_path / "stray.log"
    stray.write_bytes(b"error\n")

    async def run_case():
        monitor = make_monitor()
        assert monitor.on_write(str(stray)) == 0
        return monitor

    monitor = asyncio.run(run_case())
    assert str(stray) not in monitor.offsets
    assert recorder.messages == []


def test_file_rule_starts_at_end_of_existing_content(tmp_path: Path, make_monitor, recorder):
    f = tmp_path / "app.log"
    f.write_bytes(b"old error\n")
    rule = FileRule(path=str(f), keywords=["error"])

    async def run_case():
        monitor = make_monitor([rule])
        monitor.register(rule)
        assert monitor.offsets.get(str(f)) == os.path.getsize(f)
        assert monitor.on_write(str(f)) == 0
        with pytest.raises(FileNotFoundError):
            monitor.register(FileRule(path=str(tmp_path / "nope.log"), keywords=["x"]))
        await monitor.dispatcher.wait_idle()

    asyncio.run(run_case())
    assert recorder.messages == []


def test_new_directory_is_baselined_for_every_overlapping_recursive_rule(tmp_path: Path, make_monitor, recorder,
                                                                         fake_source):
    logs = tmp_path / "logs"
    app = logs / "app"
    app.mkdir(parents=True)
    outer = DirectoryRule(path=str(logs), keywords=["error"], extensions=[".log"], recursive=True)
    inner = DirectoryRule(path=str(app), keywords=["error"], extensions=[".txt"], recursive=True)

    async def run_case():
        monitor = make_monitor([outer, inner])
        monitor.register(outer)
        monitor.register(inner)
        new = app / "new"
        new.mkdir()
        pre_txt = new / "pre.txt"
        pre_log = new / "pre.log"
        pre_txt.write_bytes(b"error historical\n")
        pre_log.write_bytes(b"error old\n")
        assert monitor.on_dir_created(str(new)) == 2
        assert monitor.offsets.get(str(pre_txt), -1) == pre_txt.stat().st_size
        assert monitor.offsets.get(str(pre_log), -1) == pre_log.stat().st_size
        _append(pre_txt, b"error fresh\n")
        await monitor.handle_event(FsEvent("write", str(pre_txt)))
        await monitor.handle_event(FsEvent("write", str(pre_log)))
        await monitor.dispatcher.wait_idle()

    asyncio.run(run_case())
    assert len(recorder.messages) == 1
    assert "error fresh" in recorder.messages[0]


def test_new_directory_excluded_by_one_rule_is_still_walked_for_another(tmp_path: Path, make_monitor, fake_source):
    logs = tmp_path / "logs"
    app = logs / "app"
    app.mkdir(parents=True)
    outer = DirectoryRule(path=str(logs), keywords=["error"], extensions=[".log"], recursive=True,
                          exclude_dirs=["cache"])
    inner = DirectoryRule(path=str(app), keywords=["error"], extensions=[".log"], recursive=True)

    async def run_case():
        monitor = make_monitor([outer, inner])
        monitor.register(outer)
        monitor.register(inner)
        cache = app / "cache"
        cache.mkdir()
        (cache / "c.log").write_bytes(b"abc\n")
        await monitor.handle_event(FsEvent("create", str(cache), is_dir=True))
        return monitor

    monitor = asyncio.run(run_case())
    assert str(app / "cache") in fake_source.added
    assert monitor.offsets.get(str(app / "cache" / "c.log"), -1) == 4
