"""Role registry, dispatch, failure analysis and escalation proposals."""

from .dispatcher import DispatchResult, dispatch
from .failure_analysis import FailureAnalysis, FailureCategory, analyze_failure
from .registry import (
    RegistryError,
    ResolvedRole,
    RoleDefinition,
    RoleFound,
    RoleNotFoundError,
    RoleRegistry,
    RoleUnknown,
)

__all__ = [
    "DispatchResult",
    "FailureAnalysis",
    "FailureCategory",
    "RegistryError",
    "ResolvedRole",
    "RoleDefinition",
    "RoleFound",
    "RoleNotFoundError",
    "RoleRegistry",
    "RoleUnknown",
    "analyze_failure",
    "dispatch",
]
