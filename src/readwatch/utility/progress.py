# src/readwatch/utility/progress.py

from __future__ import annotations
from contextlib import contextmanager
from tqdm import tqdm
from typing import Iterator
import threading, logging

_tls = threading.local()  # module-level, one per thread
L = logging.getLogger(__name__)


def current_bar() -> tqdm | None:
    """The innermost bar opened by stage_bar on this thread, if any."""
    return getattr(_tls, "current", None)


@contextmanager
def stage_bar(total: int, *, desc: str = "", unit: str = "", disable: bool | None = None) -> Iterator[tqdm]:
    """
    Context manager that yields a tqdm and remembers it in a thread-local so
    nested helpers (the startup scan inside the replay, say) can find their
    parent with current_bar() instead of having it passed in.
    disable=None lets tqdm switch itself off when stderr is not a terminal.
    """
    outer = current_bar()
    bar = tqdm(total=total, desc=desc, unit=unit, leave=False, ncols=80, disable=disable,
               bar_format=("{l_bar}{bar}| " "{n_fmt}/{total_fmt} " "[elapsed: {elapsed} < remaining: {remaining}]"),)
    _tls.current = bar  # make this bar the new "current one"

    try:
        yield bar
    finally:
        bar.close()
        _tls.current = outer  # restore previous parent (or None)
