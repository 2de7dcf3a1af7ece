from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class Ticket:
    """A tracker issue, flattened to the fields the pipeline needs."""

    id: str
    identifier: str  # e.g. "ENG-123"
    title: str
    description: Optional[str]
    team_key: str
    state_name: str
    team_id: Optional[str] = None
    state_type: Optional[str] = None
    project_name: Optional[str] = None
    labels: tuple[str, ...] = ()
    comments: tuple[str, ...] = ()
    url: str = ""

    def has_label(self, name: str) -> bool:
        return name in self.labels


@dataclass(frozen=True)
class BlockingRelation:
    identifier: str
    state_name: str
    done: bool


@dataclass(frozen=True)
class AgentRunResult:
    succeeded: bool
    stdout: str
    stderr: str
    exit_indicator: Optional[str]  # exit code, "timeout", or None if never started
    duration_seconds: float
    timed_out: bool = False


@dataclass(frozen=True)
class RunAttempt:
    ordinal: int
    stdout: str
    stderr: str
    succeeded: bool
    duration_seconds: float
    exit_indicator: Optional[str]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReviewIssue:
    severity: str  # "critical" | "major" | "minor" | "nit"
    file: str
    description: str


@dataclass(frozen=True)
class ReviewVerdict:
    approved: bool
    summary: str
    issues: tuple[ReviewIssue, ...] = ()
    tests_pass: bool = False
    lint_pass: bool = False
    build_pass: bool = False

    @classmethod
    def unavailable(cls, summary: str) -> "ReviewVerdict":
        return cls(approved=False, summary=summary)

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "summary": self.summary,
            "issues": [
                {"severity": i.severity, "file": i.file, "description": i.description}
                for i in self.issues
            ],
            "tests_pass": self.tests_pass,
            "lint_pass": self.lint_pass,
            "build_pass": self.build_pass,
        }


@dataclass(frozen=True)
class PullRequest:
    url: str
    number: Optional[int] = None


class FailureKind(str, Enum):
    FATAL_PRECONDITION = "fatal_precondition"
    INFRASTRUCTURE = "infrastructure"
    CAPABILITY_DENIED = "capability_denied"
    VALIDATION_FAILURE = "validation_failure"
    EXECUTION_FAILURE = "execution_failure"


@dataclass(frozen=True)
class PipelineResult:
    ticket_id: str
    success: bool
    duration_seconds: float
    attempts: int
    pr_url: Optional[str] = None
    review_verdict: Optional[ReviewVerdict] = None
    error: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    proposal_id: Optional[str] = None

    def summary_line(self, limit: int = 500) -> str:
        if self.success:
            return f"{self.ticket_id}: ok" + (f" ({self.pr_url})" if self.pr_url else "")
        kind = self.failure_kind.value if self.failure_kind else "failure"
        detail = (self.error or "").replace("\n", " ")
        if len(detail) > limit:
            detail = detail[:limit] + "..."
        return f"{self.ticket_id}: {kind}: {detail}"


@dataclass(frozen=True)
class RunOptions:
    model: Optional[str] = None
    max_turns: Optional[int] = None
    max_budget_usd: Optional[float] = None
    max_attempts: Optional[int] = None
    dry_run: bool = False


@dataclass(frozen=True)
class DrainOptions:
    label: Optional[str] = None
    project: Optional[str] = None
    limit: Optional[int] = None
    concurrency: Optional[int] = None
    dry_run: bool = False
    run_options: RunOptions = field(default_factory=RunOptions)
