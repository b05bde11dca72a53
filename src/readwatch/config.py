# src/readwatch/config.py
"""
readwatch.config
Run configuration (YAML) and the typed change requests the dashboard sends.

Layout of the YAML file::

    run:        title, basecalled_path, annotated_path, clear_annotated,
                simulate_real_time, barcodes_csv, samples
    genome:     label, length
    display:    num_coverage_bins, read_length_resolution,
                temporal_resolution, filters
    annotation: command, options, options_flag, timeout, grace_period,
                max_workers
    watch:      debounce, poll_interval

Anything missing falls back to the defaults below; anything wrong raises
ConfigError before a single thread is started.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Union

import yaml

from readwatch.annotators import ANNOTATOR_REGISTRY
from readwatch.exceptions import ConfigError
from readwatch.hardware import recommend_workers
from readwatch.models import BarcodeMapping, FilterSpec
from readwatch.utility.utils import CONF_PATH, load_config, resolve_path

L = logging.getLogger(__name__)
PathLike = Union[str, Path]

__all__ = [
    "RunConfig",
    "load_run_config",
    "FilterUpdate",
    "MappingUpdate",
    "TitleUpdate",
    "ReferenceDisplayUpdate",
    "Change",
    "changes_from_dict",
]

_SECTIONS = ("run", "genome", "display", "annotation", "watch", "logging")


@dataclass
class RunConfig:
    # run
    title: str = ""
    basecalled_path: Path | None = None
    annotated_path: Path = Path("annotations")
    clear_annotated: bool = False
    simulate_real_time: float = 0.0
    mapping: BarcodeMapping = field(default_factory=BarcodeMapping)
    # genome
    genome_label: str = ""
    genome_length: int = 0
    # display
    num_coverage_bins: int = 1000
    read_length_resolution: int = 10
    temporal_resolution: float = 30.0
    filters: FilterSpec = field(default_factory=FilterSpec)
    # annotation
    annotator: str = "command"
    command: list[str] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)
    options_flag: str | None = "--config"
    timeout: float | None = 3600.0
    grace_period: float = 10.0
    max_workers: int | None = None
    workdir: Path | None = None
    # watch
    debounce: float = 2.0
    poll_interval: float = 0.5
    # logging
    log_dir: Path | None = None           # None → $READWATCH_LOG_DIR or logs/
    log_rotate_mb: float | None = None
    log_backup_count: int = 0

    def validate(self) -> "RunConfig":
        """Raise ConfigError for anything that would break a live run."""
        if self.genome_length <= 0:
            raise ConfigError("genome.length must be a positive integer")
        for name in ("num_coverage_bins", "read_length_resolution"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"display.{name} must be > 0")
        if self.temporal_resolution <= 0:
            raise ConfigError("display.temporal_resolution must be > 0")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigError("annotation.max_workers must be at least 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError("annotation.timeout must be > 0 (or null for none)")
        if self.debounce < 0 or self.poll_interval <= 0:
            raise ConfigError("watch.debounce must be >= 0 and watch.poll_interval > 0")
        if self.log_backup_count < 0 or (self.log_rotate_mb is not None and self.log_rotate_mb <= 0):
            raise ConfigError("logging.backup_count must be >= 0 and logging.rotate_mb > 0")
        if self.annotator not in ANNOTATOR_REGISTRY:
            valid = ", ".join(sorted(ANNOTATOR_REGISTRY))
            raise ConfigError(f"unknown annotator '{self.annotator}'. Valid annotators: {valid}")
        return self

    def require_live(self) -> "RunConfig":
        """Extra checks for `readwatch run`: a directory and a command."""
        if self.basecalled_path is None:
            raise ConfigError("no basecalled path given (run.basecalled_path or --basecalledPath)")
        if not self.command:
            raise ConfigError("annotation.command is empty")
        return self

    @property
    def workers(self) -> int:
        return self.max_workers or recommend_workers()


# ── loading ────────────────────────────────────────────────────────────
def _section(raw: Mapping[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"config section '{name}' must be a mapping")
    return dict(value)


def _typed(section: str, data: Mapping[str, Any], key: str, kind, default):
    value = data.get(key, default)
    if value is None:
        return None
    try:
        if kind is bool and isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{section}.{key}: expected {kind.__name__}, got {value!r}") from e


def load_run_config(path: PathLike | None = None, **overrides: Any) -> RunConfig:
    """
    Build a validated RunConfig from *path* (default ``config/config.yaml``)
    with CLI *overrides* layered on top. Override keys are RunConfig field
    names plus ``barcode_names`` (list of ``BC=name``) and
    ``annotation_options`` (dict merged into ``options``).
    """
    cfg_path = Path(path) if path else CONF_PATH
    if path and not cfg_path.is_file():
        raise ConfigError(f"config file {cfg_path} not found")
    try:
        raw = load_config(cfg_path) if cfg_path.is_file() else {}
    except yaml.YAMLError as e:
        raise ConfigError(f"could not parse {cfg_path}: {e}") from e
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{cfg_path} must contain a mapping at the top level")
    unknown = set(raw) - set(_SECTIONS)
    if unknown:
        L.warning("ignoring unknown config section(s): %s", ", ".join(sorted(unknown)))

    base = cfg_path.parent if cfg_path.is_file() else Path.cwd()
    run, genome, display, ann, watch, logs = (_section(raw, s) for s in _SECTIONS)
    if isinstance(ann.get("command"), str):
        raise ConfigError("annotation.command must be a list, e.g. [snakemake, --snakefile, ...]")

    cfg = RunConfig(
        title=str(run.get("title") or ""),
        basecalled_path=resolve_path(run.get("basecalled_path"), base),
        annotated_path=resolve_path(run.get("annotated_path") or "annotations", base),
        clear_annotated=_typed("run", run, "clear_annotated", bool, False),
        simulate_real_time=_typed("run", run, "simulate_real_time", float, 0.0) or 0.0,
        genome_label=str(genome.get("label") or ""),
        genome_length=_typed("genome", genome, "length", int, 0) or 0,
        num_coverage_bins=_typed("display", display, "num_coverage_bins", int, 1000),
        read_length_resolution=_typed("display", display, "read_length_resolution", int, 10),
        temporal_resolution=_typed("display", display, "temporal_resolution", float, 30.0),
        filters=FilterSpec.from_dict(display.get("filters")),
        annotator=str(ann.get("annotator") or "command"),
        command=[str(c) for c in (ann.get("command") or [])],
        options=dict(ann.get("options") or {}),
        options_flag=ann.get("options_flag", "--config"),
        timeout=_typed("annotation", ann, "timeout", float, 3600.0),
        grace_period=_typed("annotation", ann, "grace_period", float, 10.0),
        max_workers=_typed("annotation", ann, "max_workers", int, None),
        workdir=resolve_path(ann.get("workdir"), base),
        debounce=_typed("watch", watch, "debounce", float, 2.0),
        poll_interval=_typed("watch", watch, "poll_interval", float, 0.5),
        log_dir=resolve_path(logs.get("dir"), base),
        log_rotate_mb=_typed("logging", logs, "rotate_mb", float, None),
        log_backup_count=_typed("logging", logs, "backup_count", int, 0) or 0,
    )
    # ── barcode → sample cascade: samples, then CSV, then CLI pairs ──
    mapping = BarcodeMapping.from_samples(run.get("samples") or [])
    csv = resolve_path(run.get("barcodes_csv"), base)
    csv_override = overrides.pop("barcodes_csv", None)
    if csv_override:
        csv = resolve_path(csv_override, Path.cwd())
    if csv is not None:
        mapping = BarcodeMapping.from_csv(csv)
    pairs = BarcodeMapping.parse_assignments(overrides.pop("barcode_names", None) or [])
    if pairs:
        mapping = mapping.updated(pairs)
    cfg.mapping = mapping

    # ── remaining CLI overrides ────────────────────────────────────
    extra_opts = overrides.pop("annotation_options", None) or {}
    cfg.options.update(extra_opts)
    for key, value in overrides.items():
        if value is None:
            continue
        if not hasattr(cfg, key):
            raise ConfigError(f"unknown override '{key}'")
        if key in ("basecalled_path", "annotated_path", "workdir"):
            value = resolve_path(value, Path.cwd())
        setattr(cfg, key, value)

    if len(mapping):
        cfg.options.setdefault("limit_barcodes_to", sorted(mapping))
        L.info("Barcodes limited to %s", ", ".join(sorted(mapping)))

    return cfg.validate()


# ── typed change requests ──────────────────────────────────────────────
@dataclass(frozen=True)
class FilterUpdate:
    filters: FilterSpec


@dataclass(frozen=True)
class MappingUpdate:
    pairs: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class TitleUpdate:
    title: str


@dataclass(frozen=True)
class ReferenceDisplayUpdate:
    names: tuple[str, ...]


Change = Union[FilterUpdate, MappingUpdate, TitleUpdate, ReferenceDisplayUpdate]


def _pairs(raw: Any) -> Iterable[tuple[str, str]]:
    if isinstance(raw, Mapping):
        return [(str(k), str(v or "")) for k, v in raw.items()]
    if isinstance(raw, (list, tuple)):
        out = []
        for item in raw:
            if isinstance(item, Mapping):
                out.append((str(item.get("barcode", "")), str(item.get("name", "") or "")))
            elif isinstance(item, str):
                out.extend(BarcodeMapping.parse_assignments([item]))
            else:
                raise ConfigError(f"cannot read barcode assignment {item!r}")
        return out
    raise ConfigError(f"barcodeToSamples must be a mapping or a list, got {type(raw).__name__}")


def changes_from_dict(raw: Mapping[str, Any]) -> list[Change]:
    """
    Turn a plain change-set such as
    ``{"filters": {"maxReadLength": 3000}, "barcodeToSamples": {"NB01": "S1"}}``
    into typed requests, in a fixed order. Unknown keys are logged and skipped.
    """
    changes: list[Change] = []
    for key in raw:
        if key not in ("filters", "barcodeToSamples", "title", "referencesToDisplay"):
            L.warning("ignoring unknown change '%s'", key)
    if "filters" in raw:
        changes.append(FilterUpdate(FilterSpec.from_dict(raw["filters"])))
    if "barcodeToSamples" in raw:
        changes.append(MappingUpdate(tuple(_pairs(raw["barcodeToSamples"]))))
    if "title" in raw:
        changes.append(TitleUpdate(str(raw["title"] or "")))
    if "referencesToDisplay" in raw:
        names = raw["referencesToDisplay"] or []
        if isinstance(names, str):
            names = [names]
        changes.append(ReferenceDisplayUpdate(tuple(str(n) for n in names)))
    return changes
