# src/readwatch/annotation/ingestor.py
"""
Turn one batch of annotator output into ReadRecords.

Parsing is strict per row: a row that fails validation is skipped and
reported as a ParseWarning, the rest of the batch still goes through.
"""
from __future__ import annotations

import io
import logging
from pathlib import Path

from readwatch.models import UNMAPPED_LABEL, ParseWarning, ReadRecord
from readwatch.annotation._parse import (
    Source,
    coerce_types,
    guess_sep,
    read_annotation_table,
)
from readwatch.annotation.schema import row_failures

L = logging.getLogger(__name__)

__all__ = ["parse", "parse_file", "UNMAPPED_SENTINELS"]

# what annotators write when a read did not map anywhere
UNMAPPED_SENTINELS = frozenset({"", "*", "-", "none", "na", "unmapped"})


def _normalise_reference(ref: str) -> str:
    return UNMAPPED_LABEL if ref.strip().lower() in UNMAPPED_SENTINELS else ref.strip()


def parse(
    source: Source,
    *,
    name: str | None = None,
    sep: str | None = None,
) -> tuple[list[ReadRecord], list[ParseWarning]]:
    """
    Parse annotator output into (records, warnings).

    source may be a path or an open text buffer. The separator follows the
    file suffix (``.tsv`` → tab) unless *sep* is given. Records come back in
    input order, so the same input always gives the same output.
    """
    if name is None and not isinstance(source, io.IOBase):
        name = Path(source).name
    label = name or "<buffer>"
    sep = sep or guess_sep(name)

    raw, rejected = read_annotation_table(source, sep=sep)
    warnings = [
        ParseWarning(
            row=None,
            read_id=fields[0] if fields else None,
            reason=f"wrong field count ({len(fields)} fields)",
            source=label,
        )
        for fields in rejected
    ]

    # rows padded by the tokeniser came in short
    short = raw.isna().any(axis=1)
    for idx in raw.index[short]:
        warnings.append(ParseWarning(
            row=int(idx) + 1,
            read_id=raw.at[idx, "read_name"] or None,
            reason=f"wrong field count ({int(raw.loc[idx].notna().sum())} fields)",
            source=label,
        ))
    raw = raw.loc[~short]

    typed = coerce_types(raw)
    failures = row_failures(typed)
    for idx in sorted(failures):
        warnings.append(ParseWarning(
            row=idx + 1,
            read_id=typed.at[idx, "read_name"] or None,
            reason="; ".join(failures[idx]),
            source=label,
        ))
    good = typed.drop(index=list(failures))

    records = [
        ReadRecord(
            read_id=row.read_name,
            barcode=row.barcode,
            reference=_normalise_reference(row.best_reference),
            start=int(row.start_coord),
            mapped_length=int(row.mapped_len),
            read_length=int(row.read_len),
            timestamp=float(row.start_time),
        )
        for row in good.itertuples(index=False)
    ]

    if warnings:
        L.warning("%s: skipped %d malformed row(s)", label, len(warnings))
        for w in warnings:
            L.debug("%s", w)
    L.info("Parsed %d reads from %s", len(records), label)
    return records, warnings


def parse_file(path: str | Path) -> tuple[list[ReadRecord], list[ParseWarning]]:
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(p)
    return parse(p, name=p.name)
