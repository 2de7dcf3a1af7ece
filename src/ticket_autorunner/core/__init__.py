"""Core runtime primitives."""

from .concurrency import run_with_concurrency
from .exceptions import (
    AutorunnerError,
    CodeHostError,
    TrackerError,
    TransientError,
    WorkspaceError,
)
from .locks import BatchLock, BatchLockBusy

__all__ = [
    "AutorunnerError",
    "BatchLock",
    "BatchLockBusy",
    "CodeHostError",
    "TrackerError",
    "TransientError",
    "WorkspaceError",
    "run_with_concurrency",
]
