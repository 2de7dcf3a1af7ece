"""Ports the pipeline depends on.

Each external collaborator is reached only through one of these protocols so
that adapters (Linear, git worktrees, the claude CLI, gh) can be swapped for
in-memory fakes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol, Sequence

from ..core.config import ProjectConfig
from .models import (
    AgentRunResult,
    BlockingRelation,
    PullRequest,
    RunAttempt,
    Ticket,
    ValidationResult,
)


class Tracker(Protocol):
    async def fetch_ticket(self, identifier: str) -> Ticket: ...

    async def fetch_tickets(
        self, *, label: str, state: str, project: Optional[str] = None
    ) -> list[Ticket]: ...

    async def fetch_blocking_relations(self, ticket: Ticket) -> list[BlockingRelation]: ...

    async def transition(self, ticket: Ticket, state_name: str) -> None: ...

    async def add_comment(self, ticket: Ticket, body: str) -> None: ...

    async def set_labels(self, ticket: Ticket, labels: Sequence[str]) -> None: ...

    async def create_child_issue(
        self, parent: Ticket, *, title: str, description: str, labels: Sequence[str]
    ) -> str: ...

    async def update_description(self, ticket: Ticket, description: str) -> None: ...


class Workspace(Protocol):
    def branch_name(self, ticket_id: str) -> str: ...

    async def create_workspace(
        self, repo_path: Path, ticket_id: str, base_branch: str
    ) -> Path: ...

    async def remove_workspace(
        self, repo_path: Path, ticket_id: str, *, delete_remote_branch: bool = False
    ) -> None: ...

    async def push(self, workspace_path: Path, branch: str) -> None: ...

    async def has_new_commits(self, workspace_path: Path, base_branch: str) -> bool: ...


class AgentExecutor(Protocol):
    async def execute(
        self,
        *,
        prompt: str,
        cwd: Path,
        capabilities: Sequence[str],
        max_turns: int,
        max_budget_usd: float,
        timeout_seconds: float,
        model: str,
        context: str,
    ) -> AgentRunResult: ...


class CodeHost(Protocol):
    async def create_pr(
        self,
        workspace_path: Path,
        *,
        ticket: Ticket,
        branch: str,
        base_branch: str,
        labels: Sequence[str],
    ) -> PullRequest: ...

    async def add_pr_label(self, pr_url: str, label: str) -> None: ...

    async def add_pr_comment(self, pr_url: str, body: str) -> None: ...


class OutputValidator(Protocol):
    async def validate(
        self,
        workspace_path: Path,
        base_branch: str,
        project: ProjectConfig,
        ticket_id: str,
    ) -> ValidationResult: ...


class AttemptLog(Protocol):
    def record(self, ticket: Ticket, attempt: RunAttempt) -> Optional[Path]: ...


__all__ = [
    "AgentExecutor",
    "AttemptLog",
    "CodeHost",
    "OutputValidator",
    "Tracker",
    "Workspace",
]
