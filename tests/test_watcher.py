# tests/test_watcher.py
from __future__ import annotations
import logging, os, threading, time
import pytest

from readwatch.exceptions import FilesystemError
from readwatch.watcher import FileKind, FileWatcher


def _touch(path, text="@r\nA\n+\n!\n", mtime=None):
    path.write_text(text)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def test_startup_scan_is_ordered_and_classified(tmp_path):
    _touch(tmp_path / "b.fastq", mtime=200)
    _touch(tmp_path / "a.fastq.gz", mtime=200)
    _touch(tmp_path / "c.csv", mtime=100)
    _touch(tmp_path / "notes.txt")
    _touch(tmp_path / ".partial.fastq")
    w = FileWatcher(tmp_path, debounce=0)
    events = w.scan_existing()
    assert [e.path.name for e in events] == ["c.csv", "a.fastq.gz", "b.fastq"]
    assert [e.kind for e in events] == [FileKind.ANNOTATION, FileKind.READS, FileKind.READS]
    assert w.scan_existing() == []                     # each key once


def test_same_basename_at_startup_and_live_is_one_event(tmp_path):
    p = _touch(tmp_path / "batch_1.fastq")
    w = FileWatcher(tmp_path, debounce=0)
    assert len(w.scan_existing()) == 1
    w.notify_path(p)                                   # the live watcher sees it too
    w.notify_path(tmp_path / "batch_1.csv")            # and its annotation output
    assert w.poll_pending(now=0) == []
    assert w.poll_pending(now=10) == []
    assert w.pending == []


def test_debounce_waits_for_size_and_mtime_to_settle(tmp_path):
    p = _touch(tmp_path / "batch_2.fastq")
    w = FileWatcher(tmp_path, debounce=2.0)
    w.notify_path(p)
    assert w.poll_pending(now=100) == []               # first look
    assert w.poll_pending(now=101) == []               # not quiet long enough
    with p.open("a") as fh:
        fh.write("@r2\nC\n+\n!\n")
    assert w.poll_pending(now=102.5) == []             # changed, clock restarts
    assert w.poll_pending(now=104) == []
    events = w.poll_pending(now=104.6)
    assert [e.path for e in events] == [p]
    assert w.is_seen("batch_2")


def test_empty_placeholder_is_dropped_then_picked_up_when_written(tmp_path, caplog):
    caplog.set_level(logging.INFO, logger="readwatch.watcher")
    p = _touch(tmp_path / "batch_4.fastq", text="")
    w = FileWatcher(tmp_path, debounce=1.0, empty_timeout=30.0)
    assert w.scan_existing() == []                     # empty files are never emitted
    assert w.poll_pending(now=0) == []
    assert w.poll_pending(now=20) == []
    assert w.pending == [p]
    assert w.poll_pending(now=31) == []
    assert w.pending == []
    assert "still empty" in caplog.text

    _touch(p)                                          # the basecaller finally writes it
    w.notify_path(p)
    assert w.poll_pending(now=40) == []
    assert [e.path for e in w.poll_pending(now=41)] == [p]


def test_unreadable_file_is_retried_then_dropped(tmp_path, monkeypatch, caplog):
    p = _touch(tmp_path / "batch_3.fastq")
    w = FileWatcher(tmp_path, debounce=0, max_retries=2, backoff=1.0)

    def denied(path):
        raise PermissionError("locked by the basecaller")
    monkeypatch.setattr(w, "_signature", denied)

    w.notify_path(p)
    assert w.poll_pending(now=0) == []                 # attempt 1, retry at 1
    assert w.poll_pending(now=0.5) == []               # still backing off
    assert w.poll_pending(now=1) == []                 # attempt 2, retry at 3
    assert w.pending == [p]
    assert w.poll_pending(now=3) == []                 # attempt 3 > max → drop
    assert w.pending == []
    assert "giving up" in caplog.text
    assert "retry 1/2" in caplog.text


def test_missing_directory_is_fatal(tmp_path):
    w = FileWatcher(tmp_path / "nope", debounce=0)
    with pytest.raises(FilesystemError):
        w.check_directory()
    with pytest.raises(FilesystemError):
        w.scan_existing()


def test_mark_seen_preseeds(tmp_path):
    _touch(tmp_path / "batch_4.fastq")
    w = FileWatcher(tmp_path, debounce=0)
    assert w.mark_seen("batch_4.csv") is True
    assert w.mark_seen("batch_4") is False
    assert w.scan_existing() == []


def test_events_startup_then_live_then_restart(tmp_path):
    _touch(tmp_path / "old.fastq")
    w = FileWatcher(tmp_path, debounce=0.1, poll_interval=0.05)
    got = []

    def consume():
        for ev in w.events():
            got.append(ev.path.name)

    def wait_for(n):
        end = time.monotonic() + 10
        while len(got) < n and time.monotonic() < end:
            time.sleep(0.02)

    t = threading.Thread(target=consume)
    t.start()
    wait_for(1)
    _touch(tmp_path / "new.csv", text="read_name\n")
    wait_for(2)
    w.stop()
    t.join(timeout=5)
    assert got == ["old.fastq", "new.csv"]
    assert not t.is_alive()

    # restart: nothing seen before comes back
    _touch(tmp_path / "later.fq")
    t = threading.Thread(target=consume)
    t.start()
    wait_for(3)
    w.stop()
    t.join(timeout=5)
    assert got == ["old.fastq", "new.csv", "later.fq"]


def test_simulate_real_time_spaces_startup_events(tmp_path):
    for i in range(3):
        _touch(tmp_path / f"b{i}.fastq", mtime=100 + i)
    w = FileWatcher(tmp_path, debounce=0, simulate_real_time=0.2)
    gen = w.events()
    t0 = time.monotonic()
    names = [next(gen).path.name for _ in range(3)]
    elapsed = time.monotonic() - t0
    w.stop()
    gen.close()
    assert names == ["b0.fastq", "b1.fastq", "b2.fastq"]
    assert elapsed >= 0.35
