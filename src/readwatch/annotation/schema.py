# --------- src/readwatch/annotation/schema.py ----------------

from __future__ import annotations
import numpy as np
import pandera as pa  # dataframe validation library
import pandas as pd   # pd.DataFrame in type hints

# sequencer barcode tags look like NB01, BC12, barcode05, RB01 or "none"
BARCODE_PATTERN = r"^[A-Za-z][A-Za-z0-9_.-]*$"

# inf passes ge(0) but cannot become an int coordinate or a time bin
finite = pa.Check(lambda s: np.isfinite(s), name="finite")

schema = pa.DataFrameSchema(
    {
     "read_name":      pa.Column(str, pa.Check.str_length(min_value=1)),
     "barcode":        pa.Column(str, pa.Check.str_matches(BARCODE_PATTERN)),
     "best_reference": pa.Column(str),  # empty = unmapped, which is fine
     "start_coord":    pa.Column(float, [pa.Check.ge(0), finite]),
     "mapped_len":     pa.Column(float, [pa.Check.ge(0), finite]),
     "read_len":       pa.Column(float, [pa.Check.ge(0), finite]),
     "start_time":     pa.Column(float, [pa.Check.ge(0), finite]),
    }
)


def row_failures(df: pd.DataFrame) -> dict[int, list[str]]:
    """
    Validate lazily and return {row index: [failure descriptions]}.
    An empty dict means every row passed.
    """
    try:
        schema.validate(df, lazy=True)
    except pa.errors.SchemaErrors as err:
        out: dict[int, list[str]] = {}
        cases = err.failure_cases.dropna(subset=["index"])
        for idx, column, check in zip(cases["index"], cases["column"], cases["check"]):
            out.setdefault(int(idx), []).append(f"{column}: {check}")
        return out
    return {}
