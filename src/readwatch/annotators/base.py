# -----src/readwatch/annotators/base.py -------------------

from __future__ import annotations
from pathlib import Path
from typing import Protocol, Sequence


class BaseAnnotator(Protocol):
    """Anything that knows how to spell the external annotation command."""
    name: str
    workdir: Path | None

    def build_command(self,
                      input_path: Path,
                      output_path: Path,
                      *,
                      run_name: str,
    ) -> Sequence[str]: ...

    def output_is_valid(self, output_path: Path) -> bool: ...
