# src/readwatch/notify.py
"""
The push side of the engine.

The transport itself (socket, websocket, whatever the dashboard uses) lives
outside this package; the engine only needs something with the two methods
of :class:`NotificationChannel`. Every message carries full state, so a
dropped one is repaired by the next.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from readwatch.exceptions import NotificationError

if TYPE_CHECKING:  # pragma: no cover
    from readwatch.datastore import Snapshot

L = logging.getLogger(__name__)

__all__ = ["NotificationChannel", "LogChannel", "safe_notify"]


class NotificationChannel(Protocol):
    """
    A transport raises NotificationError when a message could not be
    delivered (peer gone, socket closed). Anything else it raises is
    treated as a bug in the transport and logged with a traceback.
    """

    def notify_data(self, snapshot: "Snapshot") -> None: ...

    def notify_pipeline(
        self,
        uid: str,
        name: str,
        kind: str,
        timestamp: float,
        content: str,
    ) -> None: ...


class LogChannel:
    """Channel that only writes a one-line summary to the log."""

    def notify_data(self, snapshot: "Snapshot") -> None:
        combined = snapshot.combined
        if combined.temporal:
            L.info("new data (t=%ss, %d mapped, %d processed)",
                   f"{combined.temporal[-1].time:g}",
                   combined.mapped_count, combined.processed_count)
        else:
            L.info("new data (%d mapped, %d processed)",
                   combined.mapped_count, combined.processed_count)

    def notify_pipeline(self, uid, name, kind, timestamp, content) -> None:
        L.info("[pipeline %s %s] %s: %s", name, uid[:8], kind, content)


def safe_notify(fn, *args) -> bool:
    """
    Call one channel method; log and swallow any failure.
    Returns False when delivery failed.
    """
    where = getattr(fn, "__qualname__", fn)
    try:
        fn(*args)
    except NotificationError as e:
        L.warning("notification via %s not delivered: %s", where, e)
        return False
    except Exception:  # noqa: BLE001 - transport bugs never reach the engine
        L.exception("notification via %s failed", where)
        return False
    return True
