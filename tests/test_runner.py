# tests/test_runner.py
"""
Pipeline runs against a fake annotator: a tiny python script run with
sys.executable, so no snakemake or mapper is needed.
"""
from __future__ import annotations
import queue, sys, textwrap, time
from pathlib import Path
import pytest

from readwatch.annotators.command import CommandAnnotator
from readwatch.datastore import Datastore
from readwatch.exceptions import PipelineExecutionError
from readwatch.models import ReadRecord
from readwatch.runner import (MessageKind, PipelineRun, PipelineRunner, RunStatus,
                              status_for_message)

HEADER = "read_name,barcode,best_reference,start_coord,mapped_len,read_len,start_time"

SCRIPTS = {
    "ok": f"""
        import sys
        with open(sys.argv[2], "w") as fh:
            fh.write("{HEADER}\\nr1,NB01,genomeA,0,10,10,1\\n")
    """,
    "fail": """
        import sys
        sys.stderr.write("mapper exploded\\n")
        sys.exit(3)
    """,
    "slow": """
        import time
        time.sleep(30)
    """,
    "ok_then_hang": f"""
        import sys, time
        with open(sys.argv[2], "w") as fh:
            fh.write("{HEADER}\\nr1,NB01,genomeA,0,10,10,1\\n")
        time.sleep(30)
    """,
}


class RecordingChannel:
    def __init__(self):
        self.events = []

    def notify_data(self, snapshot):
        pass

    def notify_pipeline(self, uid, name, kind, timestamp, content):
        self.events.append((name, kind, content))


@pytest.fixture()
def make_runner(tmp_path):
    runners = []

    def _make(kind: str, **kw):
        script = tmp_path / f"{kind}.py"
        script.write_text(textwrap.dedent(SCRIPTS[kind]))
        annotator = CommandAnnotator([sys.executable, str(script), "{input}", "{output}"])
        kw.setdefault("max_workers", 2)
        kw.setdefault("poll_interval", 0.05)
        kw.setdefault("grace_period", 2)
        r = PipelineRunner(annotator, output_dir=tmp_path / "annotations", **kw)
        runners.append(r)
        return r

    yield _make
    for r in runners:
        r.shutdown(wait=True)


def _fastq(tmp_path: Path, name: str, n: int = 2) -> Path:
    p = tmp_path / name
    p.write_text("".join(f"@read{i}\nACGT\n+\n!!!!\n" for i in range(n)))
    return p


def _wait_for(pred, timeout=10.0):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if pred():
            return True
        time.sleep(0.02)
    return False


# ── state machine ──────────────────────────────────────────────────────
def test_status_for_message_is_total():
    assert status_for_message("init") is RunStatus.IDLE
    assert status_for_message("start") is RunStatus.RUNNING
    assert status_for_message(MessageKind.SUCCESS) is RunStatus.SUCCESS
    assert status_for_message("Error") is RunStatus.ERROR
    assert status_for_message("closed") is RunStatus.CLOSED
    assert status_for_message("progress 40%") is None
    assert MessageKind.parse("progress 40%") is MessageKind.UNKNOWN


def test_unknown_message_keeps_status_and_illegal_transition_raises(tmp_path):
    run = PipelineRun("u1", "b", tmp_path / "b.fastq", tmp_path / "b.csv")
    run.record("start", "go")
    run.record("chatter", "50% done")
    assert run.status is RunStatus.RUNNING
    assert [m.kind for m in run.messages] == [MessageKind.START, MessageKind.UNKNOWN]
    with pytest.raises(ValueError):
        run.record("closed", "too early")


# ── execution ──────────────────────────────────────────────────────────
def test_successful_run(tmp_path, make_runner):
    ch = RecordingChannel()
    results = queue.Queue()
    runner = make_runner("ok", channel=ch, results=results)
    run = runner.submit(_fastq(tmp_path, "batch_1.fastq", n=3))
    assert runner.wait(timeout=20)

    res = results.get(timeout=1)
    assert res.ok and res.uid == run.uid
    assert res.output_path == tmp_path / "annotations" / "batch_1.csv"
    assert res.output_path.exists()
    assert run.status is RunStatus.SUCCESS
    assert [k for _, k, _ in ch.events] == ["init", "start", "success"]
    assert "3 reads" in ch.events[1][2]


def test_nonzero_exit_is_error_with_stderr(tmp_path, make_runner):
    results = queue.Queue()
    runner = make_runner("fail", results=results)
    run = runner.submit(_fastq(tmp_path, "batch_2.fastq"))
    assert runner.wait(timeout=20)
    assert run.status is RunStatus.ERROR
    assert run.returncode == 3
    assert "mapper exploded" in run.messages[-1].content
    assert not results.get(timeout=1).ok


def test_timeout_goes_running_to_error_and_leaves_records(tmp_path, make_runner):
    ds = Datastore(genome_length=100, num_coverage_bins=10)
    ds.ingest([ReadRecord("r0", "NB01", "genomeA", 0, 10, 10, 1.0)])
    before = ds.snapshot()

    runner = make_runner("slow", timeout=0.3)
    run = runner.submit(_fastq(tmp_path, "batch_3.fastq"))
    assert runner.wait(timeout=20)

    kinds = [m.kind for m in run.messages]
    assert kinds[-2:] == [MessageKind.START, MessageKind.ERROR]
    assert run.status is RunStatus.ERROR
    assert "timed out" in run.messages[-1].content
    assert ds.snapshot() is before


def test_stopped_run_with_complete_output_counts_as_success(tmp_path, make_runner):
    runner = make_runner("ok_then_hang", timeout=1.0)
    run = runner.submit(_fastq(tmp_path, "batch_4.fastq"))
    assert runner.wait(timeout=20)
    assert run.status is RunStatus.SUCCESS


def test_queue_is_fifo_beyond_the_bound(tmp_path, make_runner):
    ch = RecordingChannel()
    runner = make_runner("ok", channel=ch, max_workers=1)
    names = [f"batch_{i}" for i in range(4)]
    for n in names:
        runner.submit(_fastq(tmp_path, f"{n}.fastq"))
    assert runner.wait(timeout=30)
    lifecycle = [(name, kind) for name, kind, _ in ch.events if kind != "init"]
    assert lifecycle == [(n, k) for n in names for k in ("start", "success")]


def test_cancel_queued_and_running(tmp_path, make_runner):
    runner = make_runner("slow", max_workers=1)
    first = runner.submit(_fastq(tmp_path, "batch_5.fastq"))
    second = runner.submit(_fastq(tmp_path, "batch_6.fastq"))
    assert _wait_for(lambda: first.status is RunStatus.RUNNING)

    assert runner.cancel(second.uid)
    assert second.status is RunStatus.ERROR
    assert second.messages[-1].content == "cancelled before start"

    with pytest.raises(PipelineExecutionError):
        runner.clear(first.uid)
    assert runner.cancel(first.uid)
    assert runner.wait(timeout=20)
    assert first.status is RunStatus.ERROR
    assert "cancelled" in first.messages[-1].content


def test_close_and_clear(tmp_path, make_runner):
    runner = make_runner("ok")
    run = runner.submit(_fastq(tmp_path, "batch_7.fastq"))
    assert runner.wait(timeout=20)
    assert runner.close(run.uid)
    assert run.status is RunStatus.CLOSED
    assert not runner.close(run.uid)
    runner.clear(run.uid)
    assert runner.runs() == []
    with pytest.raises(KeyError):
        runner.get(run.uid)


def test_missing_executable_is_error(tmp_path):
    runner = PipelineRunner(CommandAnnotator(["definitely-not-a-real-mapper", "{input}"]),
                            max_workers=1, output_dir=tmp_path)
    run = runner.submit(_fastq(tmp_path, "batch_8.fastq"))
    assert runner.wait(timeout=10)
    runner.shutdown()
    assert run.status is RunStatus.CLOSED
    assert [m.kind for m in run.messages][-2:] == [MessageKind.ERROR, MessageKind.CLOSED]
    assert "not found" in run.messages[-2].content
