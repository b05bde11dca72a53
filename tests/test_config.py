# tests/test_config.py
from __future__ import annotations
import textwrap
import pytest

from readwatch.config import (FilterUpdate, MappingUpdate, ReferenceDisplayUpdate,
                              TitleUpdate, changes_from_dict, load_run_config)
from readwatch.exceptions import ConfigError
from readwatch.models import FilterSpec


def _yaml(tmp_path, text):
    p = tmp_path / "config.yaml"
    p.write_text(textwrap.dedent(text))
    return p


BASIC = """\
    run:
      title: demo
      basecalled_path: fastq
      annotated_path: out
      samples:
        - name: patient_7
          barcodes: [NB01, NB02]
    genome:
      length: 29903
    display:
      temporal_resolution: 60
      filters:
        minReadLength: 300
    annotation:
      command: [snakemake, --cores, "2"]
      options:
        min_identity: 0.8
      max_workers: 3
    watch:
      debounce: 1
"""


def test_load_with_defaults_and_relative_paths(tmp_path):
    cfg = load_run_config(_yaml(tmp_path, BASIC))
    assert cfg.title == "demo"
    assert cfg.basecalled_path == (tmp_path / "fastq").resolve()
    assert cfg.annotated_path == (tmp_path / "out").resolve()
    assert cfg.genome_length == 29903
    assert cfg.num_coverage_bins == 1000 and cfg.read_length_resolution == 10
    assert cfg.temporal_resolution == 60.0
    assert cfg.filters == FilterSpec(min_read_length=300)
    assert cfg.command == ["snakemake", "--cores", "2"]
    assert cfg.workers == 3
    assert cfg.debounce == 1.0 and cfg.poll_interval == 0.5
    assert cfg.mapping.samples == {"patient_7": ["NB01", "NB02"]}
    assert cfg.options["limit_barcodes_to"] == ["NB01", "NB02"]
    assert cfg.options["min_identity"] == 0.8


def test_barcode_cascade_csv_then_cli(tmp_path):
    csv = tmp_path / "barcodes.csv"
    csv.write_text("barcode,sample\nNB03,alpha\nNB04,beta\n")
    cfg = load_run_config(
        _yaml(tmp_path, BASIC),
        barcodes_csv=str(csv),
        barcode_names=["NB04=alpha", "NB05"],
    )
    # the CSV replaces the samples section, CLI pairs are applied on top
    assert dict(cfg.mapping) == {"NB03": "alpha", "NB04": "alpha", "NB05": "NB05"}


def test_cli_overrides(tmp_path):
    cfg = load_run_config(
        _yaml(tmp_path, BASIC),
        title="override",
        max_workers=1,
        clear_annotated=True,
        annotation_options={"min_identity": "0.9"},
        timeout=None,                                  # None = keep the file's value
    )
    assert cfg.title == "override"
    assert cfg.workers == 1
    assert cfg.clear_annotated is True
    assert cfg.options["min_identity"] == "0.9"
    assert cfg.timeout == 3600.0


@pytest.mark.parametrize("text, match", [
    ("genome: {length: 0}\n", "genome.length"),
    ("genome: {length: 10}\ndisplay: {num_coverage_bins: 0}\n", "num_coverage_bins"),
    ("genome: {length: 10}\nannotation: {command: 'snakemake --cores 2'}\n", "must be a list"),
    ("genome: {length: ten}\n", "expected int"),
    ("genome: {length: 10}\ndisplay: {filters: {bogus: 1}}\n", "unknown filter"),
    ("genome: {length: 10}\nannotation: {annotator: nope}\n", "unknown annotator"),
    ("genome: {length: 10}\nlogging: {backup_count: -1}\n", "backup_count"),
    ("genome: [1, 2]\n", "must be a mapping"),
])
def test_invalid_config(tmp_path, text, match):
    with pytest.raises(ConfigError, match=match):
        load_run_config(_yaml(tmp_path, text))


def test_missing_file_and_live_requirements(tmp_path):
    with pytest.raises(ConfigError):
        load_run_config(tmp_path / "nope.yaml")
    cfg = load_run_config(_yaml(tmp_path, "genome: {length: 10}\n"))
    with pytest.raises(ConfigError, match="basecalled"):
        cfg.require_live()


def test_changes_from_dict(caplog):
    changes = changes_from_dict({
        "filters": {"maxReadLength": 3000},
        "barcodeToSamples": {"NB01": "S1", "NB02": ""},
        "title": "new title",
        "referencesToDisplay": ["genomeA"],
        "colour": "red",
    })
    assert changes == [
        FilterUpdate(FilterSpec(max_read_length=3000)),
        MappingUpdate((("NB01", "S1"), ("NB02", ""))),
        TitleUpdate("new title"),
        ReferenceDisplayUpdate(("genomeA",)),
    ]
    assert "colour" in caplog.text


def test_changes_from_dict_list_forms():
    (change,) = changes_from_dict({"barcodeToSamples": [{"barcode": "NB01", "name": "S1"}, "NB02=S2"]})
    assert change.pairs == (("NB01", "S1"), ("NB02", "S2"))
    with pytest.raises(ConfigError):
        changes_from_dict({"barcodeToSamples": 7})
