"""Markdown bodies for tracker comments.

Each builder returns a string; posting is the tracker adapter's job.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from ..core.time_utils import human_timestamp
from ..core.utils import truncate
from .models import ReviewIssue, ReviewVerdict

ERROR_DETAIL_LIMIT = 2000
CLI_NAME = "ticket-autorunner"


def _table(rows: Iterable[tuple[str, object]]) -> list[str]:
    lines = ["| | |", "|---|---|"]
    lines.extend(f"| **{key}** | {value} |" for key, value in rows)
    return lines


def start_work(
    *,
    identifier: str,
    title: str,
    role: str,
    model: str,
    max_turns: int,
    max_attempts: int,
) -> str:
    return "\n".join(
        [
            "## Agent Starting Work",
            "",
            *_table(
                [
                    ("Issue", f"{identifier}: {title}"),
                    ("Role", f"`{role}`"),
                    ("Model", f"`{model}`"),
                    ("Max turns", max_turns),
                    ("Max attempts", max_attempts),
                    ("Started", human_timestamp()),
                ]
            ),
        ]
    )


def pr_created(*, pr_url: str, branch: str) -> str:
    return "\n".join(
        [
            "## PR Created",
            "",
            f"**Link:** [{pr_url}]({pr_url})",
            "",
            *_table([("Branch", f"`{branch}`")]),
        ]
    )


def agent_failed(*, attempts: int, max_attempts: int, errors: str) -> str:
    return "\n".join(
        [
            "## Agent Failed",
            "",
            f"All {max_attempts} attempt(s) exhausted.",
            "",
            "### Errors",
            "",
            "```",
            truncate(errors, ERROR_DETAIL_LIMIT),
            "```",
            "",
            *_table(
                [
                    ("Attempts", f"{attempts}/{max_attempts}"),
                    ("Time", human_timestamp()),
                ]
            ),
            "",
            "### Next Steps",
            "",
            "- Review the errors above and update the ticket description with more context",
            "- Check if the issue requires capabilities not available to the agent",
            "- Re-queue by moving the ticket back to **Todo** with the ready label",
        ]
    )


def _check(passed: bool) -> str:
    return "pass" if passed else "fail"


def review_passed(*, verdict: ReviewVerdict, pr_url: str) -> str:
    return "\n".join(
        [
            "## Review Passed",
            "",
            verdict.summary,
            "",
            "| Check | Status |",
            "|-------|--------|",
            f"| Tests | {_check(verdict.tests_pass)} |",
            f"| Lint | {_check(verdict.lint_pass)} |",
            f"| Build | {_check(verdict.build_pass)} |",
            "",
            f"**PR:** [{pr_url}]({pr_url})",
        ]
    )


def rollback(*, error: str, attempts: int, state_name: str) -> str:
    return "\n".join(
        [
            f"## Agent Failed, Rolled Back to {state_name}",
            "",
            "### Error",
            "",
            "```",
            truncate(error, ERROR_DETAIL_LIMIT),
            "```",
            "",
            *_table([("Attempts", attempts), ("Time", human_timestamp())]),
            "",
            "### Next Steps",
            "",
            "- Review the error and update the ticket with additional context",
            "- If the error is a permission issue, check the role's capabilities",
            "- Re-queue by adding the ready label",
        ]
    )


def escalation_needed(
    *, base_role: str, missing_capabilities: Sequence[str], proposal_id: str
) -> str:
    missing = [f"- `{capability}`" for capability in missing_capabilities] or [
        "- (not identified; see the attempt log)"
    ]
    return "\n".join(
        [
            "## Agent Permission Escalation Needed",
            "",
            f"Role `{base_role}` failed with missing capabilities:",
            *missing,
            "",
            f"**Proposal ID:** `{proposal_id}`",
            "",
            "### Actions",
            "",
            "**Approve:**",
            "```bash",
            f"{CLI_NAME} proposals approve {proposal_id}",
            "```",
            "",
            "**Reject:**",
            "```bash",
            f'{CLI_NAME} proposals reject {proposal_id} --reason "..."',
            "```",
        ]
    )


def proposal_approved(*, proposal_id: str, proposed_role: str) -> str:
    return "\n".join(
        [
            "## Proposal Approved",
            "",
            f"Proposal `{proposal_id}` approved.",
            f"New role `{proposed_role}` added to the registry.",
            "",
            "Ticket re-queued for processing.",
        ]
    )


def proposal_rejected(*, proposal_id: str, reason: str) -> str:
    return "\n".join(
        [
            "## Proposal Rejected",
            "",
            f"Proposal `{proposal_id}` rejected.",
            "",
            f"**Reason:** {reason}",
        ]
    )


def format_issues(issues: Sequence[ReviewIssue]) -> list[str]:
    if not issues:
        return ["- No itemized issues were reported."]
    return [
        f"- **{issue.severity}** `{issue.file or 'n/a'}`: {issue.description}"
        for issue in issues
    ]


def follow_up_description(
    *, parent_identifier: str, pr_url: str, verdict: ReviewVerdict
) -> str:
    return "\n".join(
        [
            f"Review of {pr_url} for {parent_identifier} did not approve the change.",
            "",
            "### Summary",
            "",
            verdict.summary,
            "",
            "### Issues",
            "",
            *format_issues(verdict.issues),
        ]
    )


def review_follow_up(*, follow_up_identifier: str, verdict: ReviewVerdict) -> str:
    return "\n".join(
        [
            "## Review: Changes Requested",
            "",
            verdict.summary,
            "",
            *format_issues(verdict.issues),
            "",
            f"Follow-up ticket: {follow_up_identifier}",
        ]
    )


__all__ = [
    "agent_failed",
    "escalation_needed",
    "follow_up_description",
    "format_issues",
    "pr_created",
    "proposal_approved",
    "proposal_rejected",
    "review_follow_up",
    "review_passed",
    "rollback",
    "start_work",
]
