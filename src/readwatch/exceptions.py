# src/readwatch/exceptions.py
from __future__ import annotations

__all__ = [
    "ConfigError",
    "FilesystemError",
    "PipelineExecutionError",
    "NotificationError",
]


class ConfigError(ValueError):
    """Missing or invalid run setup. Fatal at startup only."""


class FilesystemError(OSError):
    """Base directory unreachable or unreadable."""


class PipelineExecutionError(RuntimeError):
    """The external annotation process failed for one run."""


class NotificationError(RuntimeError):
    """The push transport could not deliver a message."""
