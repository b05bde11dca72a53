# src/readwatch/annotators/command.py ---------------

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Mapping, Sequence

import pandas as pd

from readwatch.annotation._parse import COLS, guess_sep

L = logging.getLogger(__name__)


def resolve_executable(prog: str) -> str:
    """Absolute path of *prog*, checked the same way for files and PATH names."""
    if Path(prog).exists():
        return prog
    found = shutil.which(prog)
    if found:
        return found
    raise FileNotFoundError(
        f"{prog} not found. Install it or set annotation.command in config.yaml."
    )


class CommandAnnotator:
    """
    Runs an external command once per read batch.

    The command is a template; ``{input}``, ``{output}``, ``{workdir}`` and
    ``{name}`` are filled per run. Named options are appended as
    ``key=value`` after *options_flag*, which is how snakemake takes them::

        snakemake --snakefile pipelines/annotate/Snakefile --cores 2 \\
            --config input_path=... output_path=... limit_barcodes_to=NB01,NB02
    """

    name = "command"

    def __init__(
        self,
        command: Sequence[str],
        *,
        options: Mapping[str, object] | None = None,
        options_flag: str | None = "--config",
        workdir: str | Path | None = None,
    ):
        if not command:
            raise ValueError("annotation command is empty")
        self.command = [str(c) for c in command]
        self.options = dict(options or {})
        self.options_flag = options_flag
        self.workdir = Path(workdir) if workdir else None

    def build_command(self, input_path: Path, output_path: Path, *, run_name: str) -> list[str]:
        fill = {
            "input": str(input_path),
            "output": str(output_path),
            "workdir": str(self.workdir or Path.cwd()),
            "name": run_name,
        }
        cmd = [part.format(**fill) for part in self.command]
        cmd[0] = resolve_executable(cmd[0])

        if self.options:
            if self.options_flag:
                cmd.append(self.options_flag)
            for key, value in self.options.items():
                value = ",".join(map(str, value)) if isinstance(value, (list, tuple)) else value
                if isinstance(value, str):
                    value = value.format(**fill)
                cmd.append(f"{key}={'' if value is None else value}")
        return cmd

    def output_is_valid(self, output_path: Path) -> bool:
        """Output exists and carries the expected header."""
        p = Path(output_path)
        if not p.is_file() or p.stat().st_size == 0:
            return False
        try:
            header = pd.read_csv(p, sep=guess_sep(p.name), nrows=0)
        except (OSError, ValueError) as e:  # ParserError is a ValueError
            L.warning("could not read header of %s: %s", p, e)
            return False
        cols = {str(c).lstrip("# ").strip() for c in header.columns}
        return set(COLS) <= cols

    def __repr__(self) -> str:
        return f"CommandAnnotator({' '.join(self.command)!r})"
