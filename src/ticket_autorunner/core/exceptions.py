"""Exception taxonomy shared by the pipeline and its adapters."""

from __future__ import annotations


class AutorunnerError(Exception):
    """Base class for ticket-autorunner errors."""


class TransientError(AutorunnerError):
    """A failure that may succeed when retried (rate limits, 5xx, resets)."""


class TrackerError(AutorunnerError):
    """Raised when a tracker API call fails."""


class WorkspaceError(AutorunnerError):
    """Raised when an isolated workspace cannot be created, pushed or removed."""


class CodeHostError(AutorunnerError):
    """Raised when a code-host (pull request) operation fails."""


__all__ = [
    "AutorunnerError",
    "CodeHostError",
    "TrackerError",
    "TransientError",
    "WorkspaceError",
]
