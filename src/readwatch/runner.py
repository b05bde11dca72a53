# src/readwatch/runner.py
"""
readwatch.runner
Supervised wrapper around the external annotation process.

One PipelineRun per read batch. Runs go through

    idle → running → success | error → closed

and every transition is logged on the run, written to the log and pushed
to the notification channel. At most ``max_workers`` runs execute at once;
anything beyond that waits its turn in submission order.
"""
from __future__ import annotations

import gzip
import logging
import queue
import subprocess
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait as futures_wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Union

from Bio.SeqIO.QualityIO import FastqGeneralIterator

from readwatch.annotators.base import BaseAnnotator
from readwatch.exceptions import PipelineExecutionError
from readwatch.hardware import recommend_workers
from readwatch.models import batch_key
from readwatch.notify import NotificationChannel, safe_notify

L = logging.getLogger(__name__)
PathLike = Union[str, Path]

__all__ = [
    "RunStatus",
    "MessageKind",
    "status_for_message",
    "PipelineMessage",
    "PipelineRun",
    "RunResult",
    "PipelineRunner",
]

STDERR_TAIL = 20  # lines of annotator stderr kept in an error message


# ── state machine ──────────────────────────────────────────────────────
class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CLOSED = "closed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.ERROR)


class MessageKind(str, Enum):
    INIT = "init"
    START = "start"
    SUCCESS = "success"
    ERROR = "error"
    CLOSED = "closed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, text: "str | MessageKind") -> "MessageKind":
        if isinstance(text, cls):
            return text
        try:
            return cls(str(text).strip().lower())
        except ValueError:
            return cls.UNKNOWN


_STATUS_FOR_KIND = {
    MessageKind.INIT: RunStatus.IDLE,
    MessageKind.START: RunStatus.RUNNING,
    MessageKind.SUCCESS: RunStatus.SUCCESS,
    MessageKind.ERROR: RunStatus.ERROR,
    MessageKind.CLOSED: RunStatus.CLOSED,
}

_ALLOWED = {
    RunStatus.IDLE: {RunStatus.RUNNING, RunStatus.ERROR},  # error = cancelled while queued
    RunStatus.RUNNING: {RunStatus.SUCCESS, RunStatus.ERROR},
    RunStatus.SUCCESS: {RunStatus.CLOSED},
    RunStatus.ERROR: {RunStatus.CLOSED},
    RunStatus.CLOSED: set(),
}


def status_for_message(kind: "str | MessageKind") -> RunStatus | None:
    """Status a message kind moves a run to; None (no transition) for anything unknown."""
    return _STATUS_FOR_KIND.get(MessageKind.parse(kind))


@dataclass(frozen=True)
class PipelineMessage:
    time: float
    kind: MessageKind
    content: str

    def to_dict(self) -> dict:
        return {"time": self.time, "type": self.kind.value, "content": self.content}


@dataclass
class PipelineRun:
    uid: str
    name: str
    input_path: Path
    output_path: Path
    status: RunStatus = RunStatus.IDLE
    messages: list[PipelineMessage] = field(default_factory=list)
    returncode: int | None = None
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def record(self, kind: "str | MessageKind", content: str) -> PipelineMessage:
        """Append a message and apply the transition its kind implies."""
        kind = MessageKind.parse(kind)
        target = status_for_message(kind)
        if target is not None and target is not self.status:
            if target not in _ALLOWED[self.status]:
                raise ValueError(
                    f"pipeline run {self.uid}: illegal transition "
                    f"{self.status.value} → {target.value}")
            self.status = target
        msg = PipelineMessage(time=time.time(), kind=kind, content=content)
        self.messages.append(msg)
        return msg

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "name": self.name,
            "status": self.status.value,
            "input": str(self.input_path),
            "output": str(self.output_path),
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass(frozen=True)
class RunResult:
    """What the ingestion side hears about a finished run."""
    uid: str
    name: str
    status: RunStatus
    input_path: Path
    output_path: Path

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.SUCCESS


# ── helpers ────────────────────────────────────────────────────────────
def count_reads(path: Path) -> int | None:
    """Number of FASTQ records in *path*; None when it can't be read."""
    opener = gzip.open if path.name.lower().endswith(".gz") else open
    try:
        with opener(path, "rt") as fh:
            return sum(1 for _ in FastqGeneralIterator(fh))
    except (OSError, ValueError) as e:
        L.debug("could not count reads in %s: %s", path, e)
        return None


def _tail(text: str | None, n: int = STDERR_TAIL) -> str:
    lines = (text or "").strip().splitlines()
    return "\n".join(lines[-n:])


# ── runner ─────────────────────────────────────────────────────────────
class PipelineRunner:
    """
    Bounded pool of annotation runs.

    Finished runs are announced as :class:`RunResult` on ``results`` (a
    ``queue.Queue``), which is the only way the ingestion side hears about
    them.
    """

    def __init__(
        self,
        annotator: BaseAnnotator,
        *,
        channel: NotificationChannel | None = None,
        results: queue.Queue | None = None,
        output_dir: PathLike | None = None,
        max_workers: int | None = None,
        timeout: float | None = 3600.0,
        grace_period: float = 10.0,
        poll_interval: float = 0.5,
    ):
        self.annotator = annotator
        self.channel = channel
        self.results: queue.Queue = results if results is not None else queue.Queue()
        self.output_dir = Path(output_dir) if output_dir else None
        self.max_workers = max_workers or recommend_workers()
        self.timeout = timeout
        self.grace_period = grace_period
        self.poll_interval = poll_interval

        self._lock = threading.RLock()
        self._runs: dict[str, PipelineRun] = {}
        self._futures: dict[str, Future] = {}
        self._pool = ThreadPoolExecutor(max_workers=self.max_workers,
                                        thread_name_prefix="annotate")
        L.info("Pipeline runner ready (%d concurrent run(s), annotator %r)",
               self.max_workers, annotator)

    # ── public API ────────────────────────────────────────────────
    def submit(
        self,
        input_path: PathLike,
        *,
        name: str | None = None,
        output_path: PathLike | None = None,
    ) -> PipelineRun:
        """Create a run for *input_path* and queue it."""
        src = Path(input_path)
        key = batch_key(src)
        if output_path is None:
            out_dir = self.output_dir or src.parent
            output_path = out_dir / f"{key}.csv"
        run = PipelineRun(
            uid=uuid.uuid4().hex,
            name=name or key,
            input_path=src,
            output_path=Path(output_path),
        )
        with self._lock:
            self._runs[run.uid] = run
        self._post(run, MessageKind.INIT, f"queued {src.name}")
        fut = self._pool.submit(self._execute, run)
        with self._lock:
            self._futures[run.uid] = fut
        return run

    def cancel(self, uid: str) -> bool:
        """
        Ask a run to stop. Queued runs never start; running ones get
        terminate, then kill after the grace period.
        """
        with self._lock:
            run = self._runs[uid]
            fut = self._futures.get(uid)
            if run.status not in (RunStatus.IDLE, RunStatus.RUNNING):
                return False
            run._cancel.set()
        if fut is not None and fut.cancel():
            self._post(run, MessageKind.ERROR, "cancelled before start")
            self._finish(run)
        else:
            L.info("termination requested for pipeline %s (%s)", run.name, uid[:8])
        return True

    def close(self, uid: str) -> bool:
        """Move a finished run to closed. False if it isn't finished."""
        with self._lock:
            run = self._runs[uid]
            if not run.status.terminal:
                return False
        self._post(run, MessageKind.CLOSED, "closed")
        return True

    def clear(self, uid: str) -> None:
        """Close (if needed) and forget a run. Running runs are never dropped."""
        with self._lock:
            run = self._runs[uid]
            if run.status in (RunStatus.IDLE, RunStatus.RUNNING):
                raise PipelineExecutionError(
                    f"pipeline {run.name} is {run.status.value}; stop it before clearing")
        if run.status.terminal:
            self.close(uid)
        with self._lock:
            self._runs.pop(uid, None)
            self._futures.pop(uid, None)

    def get(self, uid: str) -> PipelineRun:
        with self._lock:
            return self._runs[uid]

    def runs(self) -> list[PipelineRun]:
        with self._lock:
            return list(self._runs.values())

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every submitted run has finished. True if they all did."""
        with self._lock:
            futs = list(self._futures.values())
        _, not_done = futures_wait(futs, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop everything still going and close every finished run."""
        for run in self.runs():
            if run.status in (RunStatus.IDLE, RunStatus.RUNNING):
                self.cancel(run.uid)
        self._pool.shutdown(wait=wait)
        for run in self.runs():
            if run.status.terminal:
                self.close(run.uid)
        L.info("Pipeline runner shut down")

    # ── internals ─────────────────────────────────────────────────
    def _post(self, run: PipelineRun, kind: MessageKind, content: str) -> None:
        with self._lock:
            msg = run.record(kind, content)
        level = logging.ERROR if kind is MessageKind.ERROR else logging.INFO
        L.log(level, "[%s] %s: %s", run.name, kind.value, content)
        if self.channel is not None:
            safe_notify(self.channel.notify_pipeline,
                        run.uid, run.name, kind.value, msg.time, content)

    def _finish(self, run: PipelineRun) -> None:
        self.results.put(RunResult(
            uid=run.uid,
            name=run.name,
            status=run.status,
            input_path=run.input_path,
            output_path=run.output_path,
        ))

    def _execute(self, run: PipelineRun) -> RunStatus:
        try:
            self._run_annotation(run)
        except PipelineExecutionError as e:
            self._post(run, MessageKind.ERROR, str(e))
        except Exception as e:  # noqa: BLE001 - one bad run must not wedge the pool
            L.exception("annotation run %s crashed", run.uid[:8])
            self._post(run, MessageKind.ERROR, f"internal error: {e}")
        finally:
            self._finish(run)
        return run.status

    def _run_annotation(self, run: PipelineRun) -> None:
        if run.cancel_requested:  # cancelled while queued but the future had started
            raise PipelineExecutionError("cancelled before start")

        try:
            cmd = self.annotator.build_command(run.input_path, run.output_path,
                                               run_name=run.name)
            run.output_path.parent.mkdir(parents=True, exist_ok=True)
        except (OSError, ValueError, KeyError) as e:
            raise PipelineExecutionError(f"could not prepare annotation: {e}") from e

        n_reads = count_reads(run.input_path)
        what = f"{n_reads} reads" if n_reads is not None else "reads"
        self._post(run, MessageKind.START, f"annotating {what} from {run.input_path.name}")
        L.debug("RUN ANNOTATOR: %s", " ".join(cmd))

        started = time.monotonic()
        try:
            rc, stderr, stopped = self._supervise(run, cmd, started)
        except (OSError, subprocess.SubprocessError) as e:
            raise PipelineExecutionError(f"could not start annotation process: {e}") from e

        run.returncode = rc
        elapsed = time.monotonic() - started
        valid = self.annotator.output_is_valid(run.output_path)

        if valid and stopped is None and rc == 0:
            self._post(run, MessageKind.SUCCESS,
                       f"finished in {elapsed:.1f}s → {run.output_path.name}")
        elif valid and stopped is not None:
            self._post(run, MessageKind.SUCCESS,
                       f"{stopped}, but output was already complete → {run.output_path.name}")
        else:
            reason = stopped or (f"annotator exited with code {rc}" if rc
                                 else f"expected output {run.output_path.name} missing")
            detail = _tail(stderr)
            raise PipelineExecutionError(f"{reason}\n{detail}" if detail else reason)

    def _supervise(self, run: PipelineRun, cmd: list[str], started: float):
        """
        Wait for the process, checking for cancellation and timeout every
        ``poll_interval``. Returns (returncode, stderr, stop reason or None).
        """
        proc = subprocess.Popen(
            cmd,
            cwd=self.annotator.workdir,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        stopped: str | None = None
        while True:
            try:
                out, err = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if run.cancel_requested:
                    stopped = "cancelled"
                elif self.timeout and time.monotonic() - started > self.timeout:
                    stopped = f"timed out after {self.timeout:g}s"
                if stopped:
                    out, err = self._stop(proc)
                    break
        if out:
            L.debug("[%s] annotator stdout:\n%s", run.name, _tail(out))
        return proc.returncode, err, stopped

    def _stop(self, proc: subprocess.Popen):
        proc.terminate()
        try:
            return proc.communicate(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            L.warning("annotation process %d ignored SIGTERM - killing", proc.pid)
            proc.kill()
            return proc.communicate()
