from .ingestor import parse, parse_file  # noqa: F401
from ._parse import COLS  # noqa: F401

__all__ = ["parse", "parse_file", "COLS"]
