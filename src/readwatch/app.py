# src/readwatch/app.py
"""
readwatch.app
The one object that holds a run's state and wires the parts together.

    watcher thread ──READS──▶ PipelineRunner ──RunResult──┐
          │                                               ▼
          └──ANNOTATION──────────────────────────▶ ingest queue ──▶ Datastore

Everything that reaches the Datastore goes through the ingest queue and is
consumed by a single thread, so files are parsed and committed in the order
they arrive.
"""
from __future__ import annotations

import logging
import queue
import threading
from pathlib import Path
from typing import Union

from readwatch.annotation import parse_file
from readwatch.annotators.base import BaseAnnotator
from readwatch import annotators
from readwatch.config import (
    Change,
    FilterUpdate,
    MappingUpdate,
    ReferenceDisplayUpdate,
    RunConfig,
    TitleUpdate,
    changes_from_dict,
)
from readwatch.datastore import Datastore, Snapshot
from readwatch.models import ANNOTATION_SUFFIXES, batch_key
from readwatch.notify import LogChannel, NotificationChannel
from readwatch.runner import PipelineRunner, RunResult
from readwatch.utility.progress import stage_bar
from readwatch.watcher import FileKind, FileWatcher

L = logging.getLogger(__name__)
PathLike = Union[str, Path]

__all__ = ["Application"]

_STOP = object()  # ingest-queue sentinel


class Application:
    def __init__(
        self,
        config: RunConfig,
        *,
        channel: NotificationChannel | None = None,
        annotator: BaseAnnotator | None = None,
    ):
        self.config = config
        self.title = config.title
        self.channel = channel if channel is not None else LogChannel()
        self.datastore = Datastore(
            genome_length=config.genome_length,
            num_coverage_bins=config.num_coverage_bins,
            temporal_resolution=config.temporal_resolution,
            read_length_resolution=config.read_length_resolution,
            filters=config.filters,
            mapping=config.mapping,
            channel=self.channel,
        )
        self._annotator = annotator
        self.runner: PipelineRunner | None = None
        self.watcher: FileWatcher | None = None

        self._ingest_q: queue.Queue = queue.Queue()
        self._ingested: set[str] = set()
        self._ingested_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._started = False

    # ── ingestion ─────────────────────────────────────────────────
    def ingest_file(self, path: PathLike) -> int:
        """
        Parse one annotation file and commit its records. A batch key is
        only ever committed once; repeats return 0.
        """
        p = Path(path)
        key = batch_key(p)
        with self._ingested_lock:
            if key in self._ingested:
                L.info("%s already ingested; skipping", p.name)
                return 0
            self._ingested.add(key)
        try:
            records, warnings = parse_file(p)
            for w in warnings:
                L.debug("%s", w)
            return self.datastore.ingest(records)
        except (OSError, ValueError) as e:
            L.error("could not ingest %s: %s", p, e)
            self._release(key)
            return 0
        except Exception:
            # leave the key free so a corrected file can still come in
            self._release(key)
            raise

    def _release(self, key: str) -> None:
        with self._ingested_lock:
            self._ingested.discard(key)

    def replay_existing(self) -> int:
        """Ingest annotation output already sitting in the annotated directory."""
        out_dir = self.config.annotated_path
        if not out_dir.is_dir():
            return 0
        files = sorted(
            (p for p in out_dir.iterdir()
             if p.is_file() and p.name.lower().endswith(ANNOTATION_SUFFIXES)),
            key=lambda p: (p.stat().st_mtime_ns, p.name),
        )
        if not files:
            return 0
        L.info("Replaying %d annotated file(s) from %s", len(files), out_dir)
        total = 0
        with stage_bar(len(files), desc="replay", unit="file") as bar:
            for p in files:
                total += self.ingest_file(p)
                bar.update(1)
        return total

    def _clear_annotated(self) -> None:
        out_dir = self.config.annotated_path
        if not out_dir.is_dir():
            return
        removed = 0
        for p in out_dir.iterdir():
            if p.is_file() and p.name.lower().endswith(ANNOTATION_SUFFIXES):
                p.unlink()
                removed += 1
        L.info("Cleared %d annotated file(s) from %s", removed, out_dir)

    # ── threads ───────────────────────────────────────────────────
    def _ingest_loop(self) -> None:
        while True:
            item = self._ingest_q.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, RunResult):
                    if item.ok:
                        self.ingest_file(item.output_path)
                    else:
                        L.error("annotation of %s failed; nothing ingested", item.input_path.name)
                else:
                    self.ingest_file(item)
            except Exception:  # noqa: BLE001 - keep the only ingestion path alive
                L.exception("unexpected failure while ingesting %s", item)
            finally:
                self._ingest_q.task_done()

    def _watch_loop(self) -> None:
        assert self.watcher is not None and self.runner is not None
        try:
            for ev in self.watcher.events():
                if ev.kind is FileKind.READS:
                    self.runner.submit(ev.path)
                else:
                    self._ingest_q.put(ev.path)
        except Exception:  # noqa: BLE001
            L.exception("file watcher stopped unexpectedly")

    def start(self) -> "Application":
        """Replay what is on disk, then start watching."""
        if self._started:
            return self
        cfg = self.config.require_live()
        if cfg.clear_annotated:
            self._clear_annotated()
        cfg.annotated_path.mkdir(parents=True, exist_ok=True)
        self.replay_existing()

        self.watcher = FileWatcher(
            cfg.basecalled_path,
            debounce=cfg.debounce,
            poll_interval=cfg.poll_interval,
            simulate_real_time=cfg.simulate_real_time,
        )
        self.watcher.check_directory()
        with self._ingested_lock:
            for key in self._ingested:
                self.watcher.mark_seen(key)

        annotator = self._annotator or annotators.load(
            cfg.annotator,
            command=cfg.command,
            options=cfg.options,
            options_flag=cfg.options_flag,
            workdir=cfg.workdir,
        )
        self.runner = PipelineRunner(
            annotator,
            channel=self.channel,
            results=self._ingest_q,
            output_dir=cfg.annotated_path,
            max_workers=cfg.workers,
            timeout=cfg.timeout,
            grace_period=cfg.grace_period,
        )
        self._threads = [
            threading.Thread(target=self._ingest_loop, name="ingest", daemon=True),
            threading.Thread(target=self._watch_loop, name="watcher", daemon=True),
        ]
        for t in self._threads:
            t.start()
        self._started = True
        L.info("Run '%s' started: watching %s, annotations in %s",
               self.title or "untitled", cfg.basecalled_path, cfg.annotated_path)
        return self

    def shutdown(self) -> None:
        """Stop watching, stop every run, drain the ingest queue."""
        if not self._started:
            return
        if self.watcher is not None:
            self.watcher.stop()
        if self.runner is not None:
            self.runner.shutdown(wait=True)
        self._ingest_q.put(_STOP)
        for t in self._threads:
            t.join(timeout=30)
        self._started = False
        L.info("Run '%s' shut down (%d reads held)", self.title or "untitled",
               self.datastore.record_count)

    def __enter__(self) -> "Application":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.shutdown()

    # ── changes & queries ─────────────────────────────────────────
    def apply(self, change: Change) -> None:
        """The single entry point for configuration changes during a run."""
        if isinstance(change, FilterUpdate):
            self.datastore.set_filters(change.filters)
        elif isinstance(change, MappingUpdate):
            self.datastore.set_barcode_mapping(self.datastore.mapping.updated(change.pairs))
        elif isinstance(change, TitleUpdate):
            self.title = change.title
            L.info("run title set to '%s'", change.title)
        elif isinstance(change, ReferenceDisplayUpdate):
            self.datastore.set_displayed_references(change.names)
        else:
            raise TypeError(f"unsupported change request: {change!r}")

    def apply_dict(self, raw: dict) -> None:
        for change in changes_from_dict(raw):
            self.apply(change)

    def snapshot(self, *, displayed_only: bool = False) -> Snapshot | None:
        return self.datastore.snapshot(displayed_only=displayed_only)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until queued runs have finished and the ingest queue is empty."""
        done = self.runner.wait(timeout) if self.runner is not None else True
        self._ingest_q.join()
        return done
