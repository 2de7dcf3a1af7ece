from __future__ import annotations

import logging
from dataclasses import dataclass

from ..core.logging_utils import log_event
from ..tickets.models import Ticket
from .registry import RoleFound, RoleRegistry

logger = logging.getLogger("ticket_autorunner.agents.dispatcher")

ROLE_LABEL_PREFIX = "role:"
DEFAULT_ROLE = "worker"


@dataclass(frozen=True)
class DispatchResult:
    role: str
    reason: str


def role_label(role: str) -> str:
    return f"{ROLE_LABEL_PREFIX}{role}"


def dispatch(
    ticket: Ticket, registry: RoleRegistry, default_role: str = DEFAULT_ROLE
) -> DispatchResult:
    """Pick the role for a ticket from its first ``role:<name>`` label.

    Unknown roles fall back to ``default_role`` with a warning; a bad label
    never fails the run.
    """
    label = next(
        (name for name in ticket.labels if name.startswith(ROLE_LABEL_PREFIX)), None
    )
    if label is None:
        return DispatchResult(
            role=default_role,
            reason=f'No {ROLE_LABEL_PREFIX}* label found, falling back to "{default_role}"',
        )

    requested = label[len(ROLE_LABEL_PREFIX) :].strip()
    lookup = registry.lookup(requested)
    if isinstance(lookup, RoleFound):
        return DispatchResult(role=requested, reason=f'Matched label "{label}"')

    log_event(
        logger,
        logging.WARNING,
        "dispatch.unknown_role",
        ticket=ticket.identifier,
        label=label,
        requested=requested,
        fallback=default_role,
    )
    return DispatchResult(
        role=default_role,
        reason=(
            f'Unknown role "{requested}" from label "{label}", '
            f'falling back to "{default_role}"'
        ),
    )


__all__ = ["DEFAULT_ROLE", "DispatchResult", "ROLE_LABEL_PREFIX", "dispatch", "role_label"]
