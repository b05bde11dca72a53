# ------ src/readwatch/annotation/_parse.py -------------

from __future__ import annotations
import io
from pathlib import Path
from typing import Union

import pandas as pd

COLS = "read_name barcode best_reference start_coord mapped_len read_len start_time".split()
NUM_COLS = ["start_coord", "mapped_len", "read_len"]

Source = Union[str, Path, io.TextIOBase]


def guess_sep(name: str | None) -> str:
    """Tab for .tsv/.txt output, comma for everything else."""
    if name and Path(name).suffix.lower() in {".tsv", ".txt"}:
        return "\t"
    return ","


def read_annotation_table(source: Source, *, sep: str = ",") -> tuple[pd.DataFrame, list[list[str]]]:
    """
    Read annotator output as all-string columns.

    Returns the frame plus the rows the tokeniser rejected (too many
    fields); those never make it into the frame.
    """
    rejected: list[list[str]] = []

    def _bad_line(fields: list[str]):
        rejected.append(fields)
        return None  # drop the row, keep going

    try:
        df = pd.read_csv(
            source,
            sep=sep,
            dtype=str,
            na_filter=False,
            engine="python",  # on_bad_lines callable needs the python engine
            on_bad_lines=_bad_line,
            skip_blank_lines=True,
        )
    except pd.errors.EmptyDataError as e:
        raise ValueError("annotation output is empty (no header row)") from e

    # strip any '#' banner / padding from the header
    df = df.rename(columns=lambda c: str(c).lstrip("# ").strip())
    missing = [c for c in COLS if c not in df.columns]
    if missing:
        raise ValueError(f"annotation output is missing column(s): {', '.join(missing)}")

    return df[COLS].reset_index(drop=True), rejected


def to_epoch_seconds(col: pd.Series) -> pd.Series:
    """Numeric seconds pass through; ISO-8601 date-times become epoch seconds."""
    raw = col.where(col.notna(), "").astype(str).str.strip()
    secs = pd.to_numeric(raw, errors="coerce").astype(float)

    todo = secs.isna() & (raw != "")
    if todo.any():
        stamps = pd.to_datetime(raw[todo], errors="coerce", utc=True, format="ISO8601")
        secs.loc[todo] = (stamps - pd.Timestamp(0, tz="UTC")) / pd.Timedelta(seconds=1)
    return secs


def coerce_types(df: pd.DataFrame) -> pd.DataFrame:
    """Typed copy of the raw table; anything unparsable becomes NaN."""
    typed = pd.DataFrame(index=df.index)
    for col in ("read_name", "barcode", "best_reference"):
        typed[col] = df[col].fillna("").astype(str).str.strip()
    for col in NUM_COLS:
        typed[col] = pd.to_numeric(df[col].fillna("").astype(str).str.strip(),
                                   errors="coerce").astype(float)
    typed["start_time"] = to_epoch_seconds(df["start_time"])
    return typed
