# tests/test_notify.py
import logging

from readwatch.datastore import Datastore
from readwatch.exceptions import NotificationError
from readwatch.models import ReadRecord
from readwatch.notify import LogChannel, safe_notify


def test_log_channel_summary(caplog):
    caplog.set_level(logging.INFO, logger="readwatch.notify")
    ds = Datastore(genome_length=100, num_coverage_bins=10, temporal_resolution=30,
                   channel=LogChannel())
    ds.ingest([ReadRecord("r1", "NB01", "g", 0, 10, 10, 40.0),
               ReadRecord("r2", "NB01", "unmapped", 0, 0, 10, 70.0)])
    assert "new data (t=90s, 1 mapped, 2 processed)" in caplog.text


def test_log_channel_pipeline(caplog):
    caplog.set_level(logging.INFO, logger="readwatch.notify")
    LogChannel().notify_pipeline("0123456789abcdef", "batch_1", "start", 0.0, "annotating")
    assert "[pipeline batch_1 01234567] start: annotating" in caplog.text


def test_safe_notify_swallows_and_reports(caplog):
    def gone(*_):
        raise NotificationError("peer went away")

    def buggy(*_):
        raise KeyError("combinedData")

    assert safe_notify(gone, 1) is False
    delivered = [r for r in caplog.records if "peer went away" in r.getMessage()]
    assert delivered and delivered[0].levelno == logging.WARNING
    assert delivered[0].exc_info is None

    assert safe_notify(buggy, 1) is False
    crashed = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert crashed and crashed[0].exc_info is not None

    assert safe_notify(lambda *_: None, 1) is True
