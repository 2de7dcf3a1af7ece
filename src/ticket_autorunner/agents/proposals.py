"""Escalation proposals: durable requests to grant a ticket a wider role.

A proposal is created when an agent run is denied a capability. A human
approves it (which registers a new role) or rejects it. Records live as one
JSON file per id and are never deleted; the tracker labels and comments are a
best-effort projection of the record.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Optional

from ..core.config import TrackerConfig
from ..core.logging_utils import log_event
from ..core.time_utils import now_iso, parse_iso
from ..core.utils import atomic_write
from ..tickets import comments
from ..tickets.models import Ticket
from ..tickets.ports import Tracker
from .dispatcher import ROLE_LABEL_PREFIX, role_label
from .failure_analysis import FailureAnalysis
from .registry import RoleAudit, RoleDefinition, RoleRegistry

logger = logging.getLogger("ticket_autorunner.agents.proposals")

_PROPOSAL_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)


class ProposalError(Exception):
    """Base class for proposal failures."""


class InvalidProposalIdError(ProposalError):
    def __init__(self, proposal_id: str) -> None:
        super().__init__(f"Invalid proposal id: {proposal_id!r}")
        self.proposal_id = proposal_id


class ProposalNotFoundError(ProposalError):
    def __init__(self, proposal_id: str) -> None:
        super().__init__(f"Proposal not found: {proposal_id}")
        self.proposal_id = proposal_id


class ProposalStateError(ProposalError):
    """Raised when approving or rejecting a proposal that is no longer pending."""


class ProposalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class EscalationProposal:
    id: str
    ticket_identifier: str
    ticket_title: str
    base_role: str
    proposed_role: str
    proposed_capabilities: tuple[str, ...]
    proposed_max_turns: int
    proposed_max_budget_usd: float
    failure_analysis: FailureAnalysis
    status: ProposalStatus = ProposalStatus.PENDING
    created_at: str = field(default_factory=now_iso)
    resolved_at: Optional[str] = None
    rejection_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ticket_identifier": self.ticket_identifier,
            "ticket_title": self.ticket_title,
            "base_role": self.base_role,
            "proposed_role": self.proposed_role,
            "proposed_capabilities": list(self.proposed_capabilities),
            "proposed_max_turns": self.proposed_max_turns,
            "proposed_max_budget_usd": self.proposed_max_budget_usd,
            "failure_analysis": self.failure_analysis.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "rejection_reason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationProposal":
        return cls(
            id=str(data["id"]),
            ticket_identifier=str(data["ticket_identifier"]),
            ticket_title=str(data.get("ticket_title") or ""),
            base_role=str(data["base_role"]),
            proposed_role=str(data["proposed_role"]),
            proposed_capabilities=tuple(data.get("proposed_capabilities") or ()),
            proposed_max_turns=int(data["proposed_max_turns"]),
            proposed_max_budget_usd=float(data["proposed_max_budget_usd"]),
            failure_analysis=FailureAnalysis.from_dict(
                data.get("failure_analysis") or {}
            ),
            status=ProposalStatus(data.get("status", "pending")),
            created_at=str(data.get("created_at") or ""),
            resolved_at=data.get("resolved_at"),
            rejection_reason=data.get("rejection_reason"),
        )


def validate_proposal_id(proposal_id: str) -> str:
    """Return the id if it has the generated UUID shape, else raise."""
    if not isinstance(proposal_id, str) or not _PROPOSAL_ID_RE.match(proposal_id):
        raise InvalidProposalIdError(str(proposal_id))
    return proposal_id


def proposed_role_name(base_role: str, ticket_identifier: str) -> str:
    return f"{base_role}-{ticket_identifier.lower()}"


class ProposalStore:
    """One JSON document per proposal under ``directory``."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, proposal_id: str) -> Path:
        return self.directory / f"{validate_proposal_id(proposal_id)}.json"

    def save(self, proposal: EscalationProposal) -> None:
        payload = json.dumps(proposal.to_dict(), indent=2) + "\n"
        atomic_write(self.path_for(proposal.id), payload, durable=True)

    def load(self, proposal_id: str) -> EscalationProposal:
        path = self.path_for(proposal_id)
        if not path.exists():
            raise ProposalNotFoundError(proposal_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ProposalError(f"Failed to read proposal {proposal_id}: {exc}") from exc
        return EscalationProposal.from_dict(data)

    def all(self) -> list[EscalationProposal]:
        if not self.directory.exists():
            return []
        proposals: list[EscalationProposal] = []
        for path in sorted(self.directory.glob("*.json")):
            if not _PROPOSAL_ID_RE.match(path.stem):
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                proposals.append(EscalationProposal.from_dict(data))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "proposals.unreadable_record",
                    path=path,
                    exc=exc,
                )
        return proposals

    def list(self, status: Optional[ProposalStatus] = None) -> list[EscalationProposal]:
        """Proposals with ``status`` (all when ``None``), newest first."""
        proposals = [p for p in self.all() if status is None or p.status == status]
        proposals.sort(key=_created_sort_key, reverse=True)
        return proposals


def _created_sort_key(proposal: EscalationProposal) -> float:
    try:
        return parse_iso(proposal.created_at).timestamp()
    except ValueError:
        return 0.0


class ProposalService:
    def __init__(
        self,
        store: ProposalStore,
        registry: RoleRegistry,
        tracker: Tracker,
        config: TrackerConfig,
    ) -> None:
        self.store = store
        self.registry = registry
        self.tracker = tracker
        self.config = config

    async def _best_effort(self, action: str, ticket: str, call: Awaitable[Any]) -> bool:
        try:
            await call
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "proposals.side_effect_failed",
                action=action,
                ticket=ticket,
                exc=exc,
            )
            return False
        return True

    def find_pending(
        self, ticket_identifier: str, base_role: str
    ) -> Optional[EscalationProposal]:
        for proposal in self.list(ProposalStatus.PENDING):
            if (
                proposal.ticket_identifier == ticket_identifier
                and proposal.base_role == base_role
            ):
                return proposal
        return None

    async def create(
        self, ticket: Ticket, base_role: str, analysis: FailureAnalysis
    ) -> EscalationProposal:
        # Lookup and write happen without an intervening await so concurrent
        # callers in the same loop cannot both miss the existing record.
        existing = self.find_pending(ticket.identifier, base_role)
        if existing is not None:
            log_event(
                logger,
                logging.INFO,
                "proposals.reused",
                ticket=ticket.identifier,
                proposal_id=existing.id,
            )
            return existing

        base = self.registry.resolve(base_role)
        capabilities: list[str] = list(base.capabilities)
        for capability in analysis.suggested_capabilities:
            if capability not in capabilities:
                capabilities.append(capability)

        proposal = EscalationProposal(
            id=str(uuid.uuid4()),
            ticket_identifier=ticket.identifier,
            ticket_title=ticket.title,
            base_role=base_role,
            proposed_role=proposed_role_name(base_role, ticket.identifier),
            proposed_capabilities=tuple(capabilities),
            proposed_max_turns=base.max_turns,
            proposed_max_budget_usd=base.max_budget_usd,
            failure_analysis=analysis,
        )
        self.store.save(proposal)
        log_event(
            logger,
            logging.INFO,
            "proposals.created",
            ticket=ticket.identifier,
            proposal_id=proposal.id,
            base_role=base_role,
            missing=list(analysis.missing_capabilities),
        )

        labels = [name for name in ticket.labels if name != self.config.ready_label]
        if self.config.needs_approval_label not in labels:
            labels.append(self.config.needs_approval_label)
        await self._best_effort(
            "set_labels", ticket.identifier, self.tracker.set_labels(ticket, labels)
        )
        await self._best_effort(
            "add_comment",
            ticket.identifier,
            self.tracker.add_comment(
                ticket,
                comments.escalation_needed(
                    base_role=base_role,
                    missing_capabilities=analysis.missing_capabilities,
                    proposal_id=proposal.id,
                ),
            ),
        )
        return proposal

    def list(self, status: Optional[ProposalStatus] = None) -> list[EscalationProposal]:
        return self.store.list(status)

    def get(self, proposal_id: str) -> EscalationProposal:
        return self.store.load(proposal_id)

    def _require_pending(self, proposal: EscalationProposal, action: str) -> None:
        if proposal.status != ProposalStatus.PENDING:
            raise ProposalStateError(
                f"Proposal {proposal.id} is already {proposal.status.value}. "
                f"Cannot {action}."
            )

    async def approve(self, proposal_id: str) -> EscalationProposal:
        proposal = self.get(proposal_id)
        self._require_pending(proposal, "approve")

        resolved_at = now_iso()
        self.registry.add(
            proposal.proposed_role,
            RoleDefinition(
                description=(
                    f"Auto-generated for {proposal.ticket_identifier}: "
                    f"{proposal.ticket_title}"
                ),
                capabilities=proposal.proposed_capabilities,
                max_turns=proposal.proposed_max_turns,
                max_budget_usd=proposal.proposed_max_budget_usd,
                audit=RoleAudit(
                    created_by=f"proposal:{proposal.id}",
                    created_at=resolved_at,
                    reason=(
                        f'Approved escalation from "{proposal.base_role}" '
                        f"for {proposal.ticket_identifier}"
                    ),
                ),
            ),
        )
        approved = replace(
            proposal, status=ProposalStatus.APPROVED, resolved_at=resolved_at
        )
        self.store.save(approved)
        log_event(
            logger,
            logging.INFO,
            "proposals.approved",
            proposal_id=proposal.id,
            role=proposal.proposed_role,
        )

        await self._best_effort(
            "requeue", proposal.ticket_identifier, self._requeue(approved)
        )
        return approved

    async def _requeue(self, proposal: EscalationProposal) -> None:
        ticket = await self.tracker.fetch_ticket(proposal.ticket_identifier)
        # Dispatch takes the first role label, so the old one must go.
        labels = [
            name
            for name in ticket.labels
            if name != self.config.needs_approval_label
            and not name.startswith(ROLE_LABEL_PREFIX)
        ]
        if self.config.ready_label not in labels:
            labels.append(self.config.ready_label)
        labels.append(role_label(proposal.proposed_role))
        await self.tracker.set_labels(ticket, labels)
        await self.tracker.add_comment(
            ticket,
            comments.proposal_approved(
                proposal_id=proposal.id, proposed_role=proposal.proposed_role
            ),
        )

    async def reject(self, proposal_id: str, reason: str) -> EscalationProposal:
        if not reason or not reason.strip():
            raise ProposalError("A rejection reason is required")
        proposal = self.get(proposal_id)
        self._require_pending(proposal, "reject")

        rejected = replace(
            proposal,
            status=ProposalStatus.REJECTED,
            rejection_reason=reason.strip(),
            resolved_at=now_iso(),
        )
        self.store.save(rejected)
        log_event(
            logger,
            logging.INFO,
            "proposals.rejected",
            proposal_id=proposal.id,
            reason=rejected.rejection_reason,
        )

        await self._best_effort(
            "add_comment", proposal.ticket_identifier, self._notify_rejected(rejected)
        )
        return rejected

    async def _notify_rejected(self, proposal: EscalationProposal) -> None:
        ticket = await self.tracker.fetch_ticket(proposal.ticket_identifier)
        await self.tracker.add_comment(
            ticket,
            comments.proposal_rejected(
                proposal_id=proposal.id, reason=proposal.rejection_reason or ""
            ),
        )


__all__ = [
    "EscalationProposal",
    "InvalidProposalIdError",
    "ProposalError",
    "ProposalNotFoundError",
    "ProposalService",
    "ProposalStateError",
    "ProposalStatus",
    "ProposalStore",
    "proposed_role_name",
    "validate_proposal_id",
]
