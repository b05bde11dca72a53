# src/readwatch/watcher.py
"""
readwatch.watcher
Turns a directory of sequencer output into a stream of FileEvents.

Two sources feed the stream: one ordered pass over what is already on disk
when the watcher starts, then live filesystem notifications from watchdog.
A file is only handed on once its size and mtime have stopped changing for
``debounce`` seconds, and each batch key is handed on at most once.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Union

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from readwatch.exceptions import FilesystemError
from readwatch.models import ANNOTATION_SUFFIXES, READ_SUFFIXES, batch_key
from readwatch.utility.progress import stage_bar

L = logging.getLogger(__name__)
PathLike = Union[str, Path]

__all__ = ["FileKind", "FileEvent", "FileWatcher"]


class FileKind(str, Enum):
    READS = "reads"
    ANNOTATION = "annotation"


@dataclass(frozen=True)
class FileEvent:
    path: Path
    kind: FileKind

    @property
    def key(self) -> str:
        return batch_key(self.path)


@dataclass
class _Pending:
    sig: tuple[int, int] | None = None  # (size, mtime_ns) at the last look
    since: float = 0.0                  # when sig last changed
    attempts: int = 0
    next_try: float = 0.0


# ── watchdog glue ──────────────────────────────────────────────────────
class _FSHandler(FileSystemEventHandler):
    """Forward interesting paths to the watcher; all the logic lives there."""

    def __init__(self, watcher: "FileWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event):  # type: ignore[override]
        if not event.is_directory:
            self.watcher.notify_path(event.src_path)

    def on_modified(self, event):  # type: ignore[override]
        if not event.is_directory:
            self.watcher.notify_path(event.src_path)

    def on_moved(self, event):  # type: ignore[override]
        # sequencers write to a temp name and rename when done
        if not event.is_directory:
            self.watcher.notify_path(event.dest_path)


# ── watcher ────────────────────────────────────────────────────────────
class FileWatcher:
    def __init__(
        self,
        directory: PathLike,
        *,
        debounce: float = 2.0,
        poll_interval: float = 0.5,
        read_suffixes: Iterable[str] = READ_SUFFIXES,
        annotation_suffixes: Iterable[str] = ANNOTATION_SUFFIXES,
        max_retries: int = 5,
        backoff: float = 0.5,
        simulate_real_time: float = 0.0,
        empty_timeout: float = 60.0,
    ):
        self.directory = Path(directory)
        self.debounce = debounce
        self.poll_interval = poll_interval
        self.read_suffixes = tuple(s.lower() for s in read_suffixes)
        self.annotation_suffixes = tuple(s.lower() for s in annotation_suffixes)
        self.max_retries = max_retries
        self.backoff = backoff
        self.simulate_real_time = simulate_real_time
        self.empty_timeout = empty_timeout

        self._seen: set[str] = set()
        self._seen_lock = threading.Lock()
        self._inbox: queue.Queue[Path] = queue.Queue()
        self._pending: dict[Path, _Pending] = {}
        self._stop = threading.Event()
        self._observer: Observer | None = None

    # ── seen-set ──────────────────────────────────────────────────
    def _key(self, path: PathLike) -> str:
        return batch_key(path, self.read_suffixes + self.annotation_suffixes)

    def mark_seen(self, name: PathLike) -> bool:
        """Record a batch key (or a file name) as handled. True if it was new."""
        key = self._key(name)
        with self._seen_lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def is_seen(self, name: PathLike) -> bool:
        with self._seen_lock:
            return self._key(name) in self._seen

    # ── classification ────────────────────────────────────────────
    def kind_of(self, path: PathLike) -> FileKind | None:
        name = Path(path).name
        if name.startswith("."):
            return None
        lower = name.lower()
        if lower.endswith(self.read_suffixes):
            return FileKind.READS
        if lower.endswith(self.annotation_suffixes):
            return FileKind.ANNOTATION
        return None

    # ── startup ───────────────────────────────────────────────────
    def check_directory(self) -> None:
        d = self.directory
        if not d.is_dir():
            raise FilesystemError(f"basecalled directory {d} does not exist")
        try:
            next(d.iterdir(), None)
        except PermissionError as e:
            raise FilesystemError(f"basecalled directory {d} is not readable: {e}") from e

    @staticmethod
    def _signature(path: Path) -> tuple[int, int]:
        st = path.stat()
        return st.st_size, st.st_mtime_ns

    def scan_existing(self) -> list[FileEvent]:
        """
        One ordered pass (mtime, then name) over files already present.
        Files still growing are left to the live loop.
        """
        self.check_directory()
        first: dict[Path, tuple[int, int]] = {}
        for p in self.directory.iterdir():
            if not p.is_file() or self.kind_of(p) is None or self.is_seen(p):
                continue
            try:
                first[p] = self._signature(p)
            except OSError as e:
                L.warning("could not stat %s during startup scan: %s", p, e)
                self._inbox.put(p)
        if not first:
            return []

        ordered = sorted(first, key=lambda p: (first[p][1], p.name))
        L.info("Found %d existing file(s) in %s", len(ordered), self.directory)
        if self.debounce:
            time.sleep(self.debounce)

        out: list[FileEvent] = []
        with stage_bar(len(ordered), desc="startup scan", unit="file") as bar:
            for p in ordered:
                bar.update(1)
                try:
                    stable = self._signature(p) == first[p]
                except OSError:
                    stable = False
                if not stable or first[p][0] == 0:
                    L.debug("%s is still being written; watching it", p.name)
                    self._inbox.put(p)
                    continue
                if self.mark_seen(p):
                    out.append(FileEvent(p, self.kind_of(p)))
        return out

    # ── live side ─────────────────────────────────────────────────
    def notify_path(self, path: PathLike) -> None:
        """Called from the watchdog thread; cheap and thread-safe."""
        p = Path(path)
        if self.kind_of(p) is not None:
            self._inbox.put(p)

    def poll_pending(self, now: float | None = None) -> list[FileEvent]:
        """
        Look at every pending file once. Returns the ones whose size and
        mtime have held still for the debounce window.
        """
        now = time.monotonic() if now is None else now
        while True:
            try:
                p = self._inbox.get_nowait()
            except queue.Empty:
                break
            if p not in self._pending and not self.is_seen(p):
                self._pending[p] = _Pending(since=now)

        ready: list[FileEvent] = []
        for p, entry in list(self._pending.items()):
            if self.is_seen(p):
                self._pending.pop(p)
                continue
            if now < entry.next_try:
                continue
            try:
                sig = self._signature(p)
            except FileNotFoundError:
                L.debug("%s vanished before it settled", p)
                self._pending.pop(p)
                continue
            except OSError as e:
                entry.attempts += 1
                if entry.attempts > self.max_retries:
                    L.error("giving up on %s after %d attempts: %s", p, self.max_retries, e)
                    self._pending.pop(p)
                    continue
                delay = self.backoff * 2 ** (entry.attempts - 1)
                entry.next_try = now + delay
                L.warning("could not stat %s (%s); retry %d/%d in %.1fs",
                          p, e, entry.attempts, self.max_retries, delay)
                continue

            entry.attempts = 0
            if sig != entry.sig:
                entry.sig, entry.since = sig, now
                continue
            if sig[0] == 0:
                # placeholder; its first write brings it back as a modified event
                if now - entry.since >= self.empty_timeout:
                    L.info("%s still empty after %.0fs; dropped until it is written",
                           p.name, now - entry.since)
                    self._pending.pop(p)
                continue
            if now - entry.since < self.debounce:
                continue
            self._pending.pop(p)
            if self.mark_seen(p):
                ready.append(FileEvent(p, self.kind_of(p)))
        return ready

    def events(self) -> Iterator[FileEvent]:
        """
        Startup scan events first, then live ones until stop(). Calling it
        again after stop() picks up where it left off.

        The observer is running before the scan starts, so a file that lands
        mid-scan is caught by one side or the other; the seen-set drops the
        duplicate.
        """
        self._stop.clear()
        self.check_directory()
        observer = Observer()
        observer.schedule(_FSHandler(self), str(self.directory), recursive=False)
        observer.start()
        self._observer = observer
        try:
            for i, ev in enumerate(self.scan_existing()):
                if i and self.simulate_real_time and self._stop.wait(self.simulate_real_time):
                    return
                L.debug("startup event: %s", ev)
                yield ev

            L.info("Watching %s for new files", self.directory)
            while not self._stop.is_set():
                for ev in self.poll_pending():
                    L.debug("live event: %s", ev)
                    yield ev
                self._stop.wait(self.poll_interval)
        finally:
            observer.stop()
            observer.join(timeout=5)
            self._observer = None

    def stop(self) -> None:
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()

    @property
    def pending(self) -> list[Path]:
        return list(self._pending)
