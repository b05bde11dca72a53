# src/readwatch/models.py
"""
Plain value types shared by the ingestor, datastore and config layer.

Everything here is immutable: a ReadRecord is created once by the ingestor
and kept for the lifetime of the run so aggregates can be rebuilt from
scratch whenever filters or the barcode mapping change.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

import pandas as pd

from readwatch.exceptions import ConfigError

L = logging.getLogger(__name__)

UNMAPPED_LABEL = "unmapped"
UNASSIGNED_LABEL = "unassigned"

READ_SUFFIXES = (".fastq", ".fq", ".fastq.gz", ".fq.gz")
ANNOTATION_SUFFIXES = (".csv", ".tsv")

__all__ = [
    "UNMAPPED_LABEL",
    "UNASSIGNED_LABEL",
    "READ_SUFFIXES",
    "ANNOTATION_SUFFIXES",
    "batch_key",
    "ReadRecord",
    "ParseWarning",
    "FilterSpec",
    "BarcodeMapping",
    "ReferencePanelEntry",
]


def batch_key(path: str | Path,
              suffixes: Iterable[str] = READ_SUFFIXES + ANNOTATION_SUFFIXES) -> str:
    """
    Basename minus a recognised suffix: ``batch_7.fastq.gz`` and
    ``batch_7.csv`` are the same unit of work, ``batch_7``.
    """
    name = Path(path).name
    lower = name.lower()
    for suffix in sorted(suffixes, key=len, reverse=True):  # .fastq.gz before .gz
        if lower.endswith(suffix):
            return name[: -len(suffix)]
    return name


# ── read records ───────────────────────────────────────────────────────
@dataclass(frozen=True)
class ReadRecord:
    read_id: str
    barcode: str
    reference: str
    start: int
    mapped_length: int
    read_length: int
    timestamp: float

    @property
    def is_mapped(self) -> bool:
        return self.reference != UNMAPPED_LABEL


@dataclass(frozen=True)
class ParseWarning:
    """One skipped row. ``row`` is the 1-based data row, None if untokenisable."""
    row: int | None
    reason: str
    read_id: str | None = None
    source: str = ""

    def __str__(self) -> str:
        where = f"row {self.row}" if self.row is not None else "unparsable row"
        ident = f" ({self.read_id})" if self.read_id else ""
        return f"{self.source}: {where}{ident}: {self.reason}"


# ── filters ────────────────────────────────────────────────────────────
_FILTER_KEYS = {
    "minReadLength": "min_read_length",
    "maxReadLength": "max_read_length",
    "min_read_length": "min_read_length",
    "max_read_length": "max_read_length",
}


@dataclass(frozen=True)
class FilterSpec:
    """Predicates applied at aggregation time; bounds are inclusive."""
    min_read_length: int | None = None
    max_read_length: int | None = None

    def accepts(self, record: ReadRecord) -> bool:
        if self.min_read_length is not None and record.read_length < self.min_read_length:
            return False
        if self.max_read_length is not None and record.read_length > self.max_read_length:
            return False
        return True

    @classmethod
    def from_dict(cls, raw: Mapping[str, object] | None) -> "FilterSpec":
        """
        Build a FilterSpec from a key/value change-set. Both the dashboard keys
        (``maxReadLength``) and snake_case keys are understood; a value of
        None clears that predicate.
        """
        kwargs: dict[str, int | None] = {}
        for key, value in (raw or {}).items():
            try:
                field = _FILTER_KEYS[key]
            except KeyError as e:
                valid = ", ".join(sorted(_FILTER_KEYS))
                raise ConfigError(f"unknown filter '{key}'. Valid filters: {valid}") from e
            if value is None or value == "":
                kwargs[field] = None
                continue
            try:
                kwargs[field] = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"filter '{key}' needs an integer, got {value!r}") from e
        spec = cls(**kwargs)
        if (spec.min_read_length is not None and spec.max_read_length is not None
                and spec.min_read_length > spec.max_read_length):
            raise ConfigError(
                f"minReadLength ({spec.min_read_length}) is larger than "
                f"maxReadLength ({spec.max_read_length})")
        return spec

    def to_dict(self) -> dict[str, int]:
        out = {}
        if self.min_read_length is not None:
            out["minReadLength"] = self.min_read_length
        if self.max_read_length is not None:
            out["maxReadLength"] = self.max_read_length
        return out


# ── barcode → sample mapping ───────────────────────────────────────────
class BarcodeMapping(Mapping[str, str]):
    """
    Immutable barcode → sample table, the single source of truth for sample
    membership. Samples only exist through their barcodes, so a sample left
    with no barcodes disappears on its own.
    """

    __slots__ = ("_table",)

    def __init__(self, table: Mapping[str, str] | None = None):
        self._table = MappingProxyType(dict(table or {}))

    # Mapping protocol
    def __getitem__(self, barcode: str) -> str:
        return self._table[barcode]

    def __iter__(self) -> Iterator[str]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, BarcodeMapping):
            return dict(self._table) == dict(other._table)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._table.items()))

    def __repr__(self) -> str:
        return f"BarcodeMapping({dict(self._table)!r})"

    def sample_for(self, barcode: str) -> str:
        return self._table.get(barcode, UNASSIGNED_LABEL)

    @property
    def samples(self) -> dict[str, list[str]]:
        """sample → barcodes, in first-seen order."""
        out: dict[str, list[str]] = {}
        for barcode, sample in self._table.items():
            out.setdefault(sample, []).append(barcode)
        return out

    def updated(self, pairs: Iterable[tuple[str, str]]) -> "BarcodeMapping":
        """Return a copy with each (barcode, sample) pair (re)assigned."""
        table = dict(self._table)
        for barcode, sample in pairs:
            barcode = str(barcode).strip()
            sample = str(sample).strip() or barcode
            if not barcode:
                raise ConfigError("empty barcode in barcode → sample update")
            if sample == UNASSIGNED_LABEL:
                # assigning to the reserved bucket is the same as unmapping
                table.pop(barcode, None)
                continue
            table[barcode] = sample
        return BarcodeMapping(table)

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, str]]) -> "BarcodeMapping":
        return cls().updated(pairs)

    @classmethod
    def from_samples(cls, samples: Iterable[Mapping[str, object]]) -> "BarcodeMapping":
        """From the YAML form ``[{name: S1, barcodes: [BC01, BC02]}, ...]``."""
        pairs = []
        for s in samples:
            name = s.get("name")
            if not name:
                raise ConfigError(f"sample without a name: {dict(s)!r}")
            for bc in s.get("barcodes") or []:
                pairs.append((bc, name))
        return cls.from_pairs(pairs)

    @classmethod
    def from_csv(cls, path: str | Path) -> "BarcodeMapping":
        """Read a ``barcode,sample`` CSV (one row per barcode)."""
        p = Path(path)
        try:
            df = pd.read_csv(p, dtype=str, keep_default_na=False)
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise ConfigError(f"unable to read barcode to sample file {p}: {e}") from e
        df = df.rename(columns=lambda c: c.strip().lower())
        missing = {"barcode", "sample"} - set(df.columns)
        if missing:
            raise ConfigError(f"{p.name} is missing column(s): {', '.join(sorted(missing))}")
        L.info("Reading sample to barcode mapping from %s", p)
        return cls.from_pairs(zip(df["barcode"], df["sample"]))

    @classmethod
    def parse_assignments(cls, raw: Iterable[str]) -> list[tuple[str, str]]:
        """``["BC01=alpha", "BC02"]`` → ``[("BC01", "alpha"), ("BC02", "BC02")]``"""
        pairs = []
        for item in raw:
            barcode, _, name = str(item).partition("=")
            pairs.append((barcode.strip(), name.strip() or barcode.strip()))
        return pairs


# ── reference panel ────────────────────────────────────────────────────
@dataclass(frozen=True)
class ReferencePanelEntry:
    name: str
    display: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "display": self.display}
