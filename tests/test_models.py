# tests/test_models.py
import pytest

from readwatch.exceptions import ConfigError
from readwatch.models import (UNASSIGNED_LABEL, BarcodeMapping, FilterSpec,
                              ReadRecord, batch_key)


def _rec(read_length):
    return ReadRecord("r", "NB01", "g", 0, 10, read_length, 1.0)


@pytest.mark.parametrize("name, key", [
    ("batch_7.fastq.gz", "batch_7"),
    ("batch_7.FASTQ", "batch_7"),
    ("batch_7.csv", "batch_7"),
    ("/some/dir/batch_7.fq", "batch_7"),
    ("notes.txt", "notes.txt"),
])
def test_batch_key(name, key):
    assert batch_key(name) == key


def test_filter_bounds_inclusive():
    f = FilterSpec.from_dict({"minReadLength": 100, "max_read_length": "200"})
    assert f == FilterSpec(100, 200)
    assert f.accepts(_rec(100)) and f.accepts(_rec(200))
    assert not f.accepts(_rec(99)) and not f.accepts(_rec(201))
    assert f.to_dict() == {"minReadLength": 100, "maxReadLength": 200}


def test_filter_none_clears_and_empty_accepts_all():
    assert FilterSpec.from_dict({"minReadLength": None}) == FilterSpec()
    assert FilterSpec.from_dict(None).accepts(_rec(0))


@pytest.mark.parametrize("raw", [
    {"minQuality": 7},
    {"minReadLength": "long"},
    {"minReadLength": 500, "maxReadLength": 100},
])
def test_filter_rejects_bad_input(raw):
    with pytest.raises(ConfigError):
        FilterSpec.from_dict(raw)


def test_mapping_reassignment_prunes_empty_samples():
    m = BarcodeMapping.from_pairs([("NB01", "A"), ("NB02", "B")])
    assert m.samples == {"A": ["NB01"], "B": ["NB02"]}
    m2 = m.updated([("NB02", "A")])
    assert m2.samples == {"A": ["NB01", "NB02"]}
    assert m.sample_for("NB02") == "B"          # original untouched
    assert m2.sample_for("NB99") == UNASSIGNED_LABEL


def test_mapping_unassign_and_defaults():
    m = BarcodeMapping.from_pairs([("NB01", "A"), ("NB03", "")])
    assert m["NB03"] == "NB03"
    m2 = m.updated([("NB01", UNASSIGNED_LABEL)])
    assert "NB01" not in m2
    with pytest.raises(ConfigError):
        m.updated([("", "A")])


def test_mapping_from_samples_and_assignments():
    m = BarcodeMapping.from_samples([{"name": "S1", "barcodes": ["NB01", "NB02"]}])
    assert m == BarcodeMapping({"NB01": "S1", "NB02": "S1"})
    assert BarcodeMapping.parse_assignments(["NB05=x", "NB06"]) == [("NB05", "x"), ("NB06", "NB06")]
    with pytest.raises(ConfigError):
        BarcodeMapping.from_samples([{"barcodes": ["NB01"]}])


def test_mapping_from_csv(tmp_path):
    p = tmp_path / "barcodes.csv"
    p.write_text("Barcode,Sample\nNB01,alpha\nNB02,beta\n")
    assert BarcodeMapping.from_csv(p) == BarcodeMapping({"NB01": "alpha", "NB02": "beta"})
    bad = tmp_path / "bad.csv"
    bad.write_text("barcode,name\nNB01,alpha\n")
    with pytest.raises(ConfigError, match="sample"):
        BarcodeMapping.from_csv(bad)
    with pytest.raises(ConfigError):
        BarcodeMapping.from_csv(tmp_path / "missing.csv")
