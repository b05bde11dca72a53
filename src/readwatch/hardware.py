from __future__ import annotations
import os
from math import floor

import psutil

# one annotation run (mapper + snakemake overhead) wants roughly this much
GB_PER_WORKER = 2.0
MAX_WORKERS = 8


def _total_mem_gb() -> float:
    """Return total system memory in gigabytes."""
    return psutil.virtual_memory().total / (1024 ** 3)


def recommend_workers() -> int:
    """Suggest a safe default for how many annotation runs go at once."""
    logical = os.cpu_count() or 1
    max_by_cpu = max(1, logical // 2)  # each run usually takes >1 thread
    max_by_mem = floor(_total_mem_gb() / GB_PER_WORKER)
    return max(1, min(max_by_cpu, max_by_mem, MAX_WORKERS))


def recommend_workers_cli() -> None:
    """CLI entry point: print ``recommend_workers()``."""
    print(recommend_workers())
