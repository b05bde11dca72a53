# src/readwatch/datastore.py
"""
readwatch.datastore
Owns every ReadRecord of the run and the aggregates derived from them.

Writers (ingest / set_filters / set_barcode_mapping) are serialised by one
lock. Readers never take it: each write ends by building a fresh, frozen
Snapshot and publishing it with a single reference assignment, so a reader
sees either the old state or the new one and never a half-finished
recompute.

New records only ever *extend* the running totals. A filter or mapping
change throws the totals away and rebuilds them from the retained records
in one traversal.
"""
from __future__ import annotations

import logging
import math
import numbers
import threading
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

import numpy as np

from readwatch.models import (
    UNMAPPED_LABEL,
    BarcodeMapping,
    FilterSpec,
    ReadRecord,
    ReferencePanelEntry,
)
from readwatch.notify import NotificationChannel, safe_notify

L = logging.getLogger(__name__)

__all__ = [
    "Datastore",
    "Snapshot",
    "SampleAggregate",
    "TemporalPoint",
    "Binning",
    "COMBINED_LABEL",
]

COMBINED_LABEL = "combined"


# ── binning rules ──────────────────────────────────────────────────────
@dataclass(frozen=True)
class Binning:
    genome_length: int
    num_coverage_bins: int = 1000
    temporal_resolution: float = 30.0
    read_length_resolution: int = 10

    def __post_init__(self):
        if self.genome_length <= 0:
            raise ValueError(f"genome_length must be > 0, got {self.genome_length}")
        if self.num_coverage_bins <= 0:
            raise ValueError("num_coverage_bins must be > 0")
        if self.temporal_resolution <= 0:
            raise ValueError("temporal_resolution must be > 0")
        if self.read_length_resolution <= 0:
            raise ValueError("read_length_resolution must be > 0")

    def coverage_span(self, start: int, length: int) -> tuple[int, int]:
        """
        Bins [lo, hi) whose interval intersects [start, start+length),
        clipped to the genome. Integer maths so bin edges are exact.
        """
        g, n = self.genome_length, self.num_coverage_bins
        s = max(0, start)
        e = min(g, start + length)
        if e <= s:
            return 0, 0
        lo = s * n // g
        hi = -(-(e * n) // g)  # ceil
        return lo, min(hi, n)

    def time_bin(self, timestamp: float) -> int:
        return int(timestamp // self.temporal_resolution)

    def length_bucket(self, read_length: int) -> int:
        res = self.read_length_resolution
        return (read_length // res) * res


# ── frozen views handed to readers ─────────────────────────────────────
@dataclass(frozen=True)
class TemporalPoint:
    time: float            # upper edge of the bin, seconds
    mapped_count: int      # cumulative
    processed_count: int   # cumulative

    def to_dict(self) -> dict:
        return {"time": self.time, "mappedCount": self.mapped_count,
                "processedCount": self.processed_count}


@dataclass(frozen=True)
class SampleAggregate:
    name: str
    processed_count: int
    mapped_count: int
    coverage: tuple[int, ...]
    temporal: tuple[TemporalPoint, ...]
    ref_matches: Mapping[str, int]
    read_lengths: tuple[tuple[int, int], ...]

    def to_dict(self) -> dict:
        return {
            "mappedCount": self.mapped_count,
            "processedCount": self.processed_count,
            "coverage": list(self.coverage),
            "temporal": [p.to_dict() for p in self.temporal],
            "refMatches": dict(self.ref_matches),
            "readLengths": [{"key": k, "value": v} for k, v in self.read_lengths],
        }

    def restricted_to(self, references: set[str]) -> "SampleAggregate":
        return SampleAggregate(
            name=self.name,
            processed_count=self.processed_count,
            mapped_count=self.mapped_count,
            coverage=self.coverage,
            temporal=self.temporal,
            ref_matches=MappingProxyType(
                {k: v for k, v in self.ref_matches.items() if k in references}),
            read_lengths=self.read_lengths,
        )


@dataclass(frozen=True)
class Snapshot:
    version: int
    combined: SampleAggregate
    per_sample: Mapping[str, SampleAggregate]
    reference_panel: tuple[ReferencePanelEntry, ...] = ()
    filters: FilterSpec = field(default_factory=FilterSpec)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "combinedData": self.combined.to_dict(),
            "dataPerSample": {k: v.to_dict() for k, v in self.per_sample.items()},
            "referencePanel": [e.to_dict() for e in self.reference_panel],
            "filters": self.filters.to_dict(),
        }

    def only_displayed(self) -> "Snapshot":
        """Copy whose per-reference counts keep displayed references only."""
        shown = {e.name for e in self.reference_panel if e.display}
        return Snapshot(
            version=self.version,
            combined=self.combined.restricted_to(shown),
            per_sample=MappingProxyType(
                {k: v.restricted_to(shown) for k, v in self.per_sample.items()}),
            reference_panel=self.reference_panel,
            filters=self.filters,
        )


# ── running totals (writer side only) ──────────────────────────────────
class _Accumulator:
    """Mutable per-sample totals; only touched while holding the write lock."""

    __slots__ = ("processed", "mapped", "coverage", "time_processed",
                 "time_mapped", "ref_matches", "read_lengths")

    def __init__(self, n_bins: int):
        self.processed = 0
        self.mapped = 0
        self.coverage = np.zeros(n_bins, dtype=np.int64)
        # per-bin, non-cumulative, so late arrivals are O(1)
        self.time_processed: Counter[int] = Counter()
        self.time_mapped: Counter[int] = Counter()
        self.ref_matches: Counter[str] = Counter()
        self.read_lengths: Counter[int] = Counter()

    def add(self, rec: ReadRecord, bins: Binning) -> None:
        t = bins.time_bin(rec.timestamp)
        self.processed += 1
        self.time_processed[t] += 1
        self.ref_matches[rec.reference] += 1
        self.read_lengths[bins.length_bucket(rec.read_length)] += 1
        if rec.is_mapped:
            self.mapped += 1
            self.time_mapped[t] += 1
            lo, hi = bins.coverage_span(rec.start, rec.mapped_length)
            if hi > lo:
                self.coverage[lo:hi] += 1

    def freeze(self, name: str, bins: Binning) -> SampleAggregate:
        # observed bins only; a stray early timestamp must not span the epoch
        temporal = []
        cum_p = cum_m = 0
        for b in sorted(self.time_processed):
            cum_p += self.time_processed[b]
            cum_m += self.time_mapped.get(b, 0)
            temporal.append(TemporalPoint(
                time=(b + 1) * bins.temporal_resolution,
                mapped_count=cum_m,
                processed_count=cum_p,
            ))
        return SampleAggregate(
            name=name,
            processed_count=self.processed,
            mapped_count=self.mapped,
            coverage=tuple(self.coverage.tolist()),
            temporal=tuple(temporal),
            ref_matches=MappingProxyType(dict(self.ref_matches.most_common())),
            read_lengths=tuple(sorted(self.read_lengths.items())),
        )


# ── the store ──────────────────────────────────────────────────────────
class Datastore:
    """
    Single serialisation point for read data.

    Parameters
    ----------
    genome_length
        Length of the coordinate reference, split into ``num_coverage_bins``.
    channel
        Optional NotificationChannel, told about every published snapshot.
    """

    def __init__(
        self,
        *,
        genome_length: int,
        num_coverage_bins: int = 1000,
        temporal_resolution: float = 30.0,
        read_length_resolution: int = 10,
        filters: FilterSpec | None = None,
        mapping: BarcodeMapping | None = None,
        channel: NotificationChannel | None = None,
    ):
        self._bins = Binning(
            genome_length=int(genome_length),
            num_coverage_bins=int(num_coverage_bins),
            temporal_resolution=float(temporal_resolution),
            read_length_resolution=int(read_length_resolution),
        )
        self._channel = channel

        self._lock = threading.Lock()          # one writer at a time
        self._pending_lock = threading.Lock()  # guards _pending only
        self._pending: dict[str, object] = {}

        self._records: list[ReadRecord] = []
        self._filters = filters or FilterSpec()
        self._mapping = mapping or BarcodeMapping()
        self._panel: dict[str, bool] = {UNMAPPED_LABEL: True}

        self._acc: dict[str, _Accumulator] = {}
        self._combined = _Accumulator(self._bins.num_coverage_bins)
        self._frozen: dict[str, SampleAggregate] = {}

        self._version = 0
        self._snapshot: Snapshot | None = None

    # ── read side ─────────────────────────────────────────────────
    def snapshot(self, *, displayed_only: bool = False) -> Snapshot | None:
        """Latest published snapshot, or None while nothing has been ingested."""
        snap = self._snapshot  # one read of the published reference
        if snap is None or not displayed_only:
            return snap
        return snap.only_displayed()

    @property
    def binning(self) -> Binning:
        return self._bins

    @property
    def filters(self) -> FilterSpec:
        return self._filters

    @property
    def mapping(self) -> BarcodeMapping:
        return self._mapping

    @property
    def record_count(self) -> int:
        return len(self._records)

    def reference_panel(self) -> tuple[ReferencePanelEntry, ...]:
        with self._lock:
            return self._panel_tuple()

    # ── write side ────────────────────────────────────────────────
    def ingest(self, records: Iterable[ReadRecord]) -> int:
        """
        Append records and extend the running totals under the current
        filters and mapping. Returns how many records were appended.

        Records that cannot be binned (non-finite time, negative or
        non-integer lengths) are dropped with a warning before anything
        is touched, so they never reach a later recompute.
        """
        records = self._admissible(records)
        if not records:
            return 0

        with self._lock:
            self._records.extend(records)
            touched: set[str] = set()
            new_refs: list[str] = []
            for rec in records:
                if rec.is_mapped and self._mark_seen(rec.reference):
                    new_refs.append(rec.reference)
                self._attribute(rec, touched)
            if new_refs:
                L.info("new references seen: %s", ", ".join(new_refs))
            snap = self._publish(touched)
            L.debug("ingested %d records (total %d, snapshot v%d)",
                    len(records), len(self._records), snap.version)
        self._emit(snap)
        return len(records)

    def set_filters(self, spec: FilterSpec) -> None:
        """Replace the filters wholesale and rebuild every aggregate."""
        with self._pending_lock:
            self._pending["filters"] = spec
        self._apply_pending()

    def set_barcode_mapping(self, mapping: BarcodeMapping) -> None:
        """Replace the barcode → sample mapping and rebuild every aggregate."""
        with self._pending_lock:
            self._pending["mapping"] = mapping
        self._apply_pending()

    def mark_reference_seen(self, name: str) -> bool:
        """Add *name* to the reference panel. True if it was new."""
        with self._lock:
            added = self._mark_seen(name)
            snap = self._publish(set()) if added and self._snapshot is not None else None
        if snap is not None:
            self._emit(snap)
        return added

    def set_displayed_references(self, names: Iterable[str]) -> bool:
        """Turn the display toggle on for *names* and off for everything else."""
        wanted = set(names)
        with self._lock:
            changed = False
            for ref, shown in self._panel.items():
                if shown != (ref in wanted):
                    self._panel[ref] = ref in wanted
                    changed = True
            unknown = wanted - set(self._panel)
            if unknown:
                L.warning("ignoring display toggle for unseen reference(s): %s",
                          ", ".join(sorted(unknown)))
            snap = self._publish(set()) if changed and self._snapshot is not None else None
        if snap is not None:
            L.info("updated which references in the panel are displayed")
            self._emit(snap)
        return changed

    # ── internals (write lock held) ───────────────────────────────
    @staticmethod
    def _rejection(rec: ReadRecord) -> str | None:
        t = rec.timestamp
        if not isinstance(t, numbers.Real) or not math.isfinite(t):
            return f"timestamp {t!r} is not a finite number"
        for name in ("start", "mapped_length", "read_length"):
            v = getattr(rec, name)
            if not isinstance(v, numbers.Integral) or v < 0:
                return f"{name} {v!r} is not a non-negative integer"
        return None

    def _admissible(self, records: Iterable[ReadRecord]) -> list[ReadRecord]:
        """Drop records the binning rules cannot place. No lock needed."""
        kept = []
        for rec in records:
            reason = self._rejection(rec)
            if reason is None:
                kept.append(rec)
            else:
                L.warning("dropping read %s: %s", rec.read_id, reason)
        return kept

    def _apply_pending(self) -> bool:
        """
        Apply whatever filter/mapping change is pending with one recompute.
        Requests that pile up while another recompute runs are folded into
        the next pass; a writer that finds nothing pending does nothing.
        """
        with self._lock:
            with self._pending_lock:
                pending, self._pending = self._pending, {}
            if not pending:
                return False
            if "filters" in pending:
                self._filters = pending["filters"]
                L.info("read filters changed → %s", self._filters.to_dict() or "none")
            if "mapping" in pending:
                self._mapping = pending["mapping"]
                L.info("barcode → sample mapping changed (%d barcodes, %d samples)",
                       len(self._mapping), len(self._mapping.samples))
            self._recompute()
            snap = self._publish(None) if self._records else None
        if snap is not None:
            self._emit(snap)
        return True

    def _recompute(self) -> None:
        """Rebuild every histogram and count in a single pass over the records."""
        self._acc = {}
        self._frozen = {}
        self._combined = _Accumulator(self._bins.num_coverage_bins)
        touched: set[str] = set()
        for rec in self._records:
            self._attribute(rec, touched)
        L.debug("recomputed aggregates from %d records", len(self._records))

    def _attribute(self, rec: ReadRecord, touched: set[str]) -> bool:
        if not self._filters.accepts(rec):
            return False
        sample = self._mapping.sample_for(rec.barcode)
        acc = self._acc.get(sample)
        if acc is None:
            acc = self._acc[sample] = _Accumulator(self._bins.num_coverage_bins)
        acc.add(rec, self._bins)
        self._combined.add(rec, self._bins)
        touched.add(sample)
        return True

    def _mark_seen(self, name: str) -> bool:
        if not name or name in self._panel:
            return False
        self._panel[name] = False
        return True

    def _panel_tuple(self) -> tuple[ReferencePanelEntry, ...]:
        return tuple(ReferencePanelEntry(n, d) for n, d in self._panel.items())

    def _publish(self, touched: set[str] | None) -> Snapshot:
        """Freeze the changed samples and swap in a new Snapshot. None = all."""
        names = self._acc.keys() if touched is None else touched
        for name in names:
            self._frozen[name] = self._acc[name].freeze(name, self._bins)
        self._version += 1
        snap = Snapshot(
            version=self._version,
            combined=self._combined.freeze(COMBINED_LABEL, self._bins),
            per_sample=MappingProxyType(dict(self._frozen)),
            reference_panel=self._panel_tuple(),
            filters=self._filters,
        )
        self._snapshot = snap
        return snap

    def _emit(self, snap: Snapshot) -> None:
        if self._channel is None:
            return
        # a newer snapshot already went (or is going) out; it carries full state
        if self._snapshot is not None and self._snapshot.version > snap.version:
            return
        safe_notify(self._channel.notify_data, snap)
