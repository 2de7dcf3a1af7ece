"""Pull request operations through the ``gh`` CLI."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Sequence

from ...core.exceptions import CodeHostError
from ...core.logging_utils import log_event
from ...core.process import run_process
from ...tickets.models import PullRequest, Ticket

logger = logging.getLogger("ticket_autorunner.integrations.github")

GH_TIMEOUT_SECONDS = 60

_PR_URL_RE = re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/(\d+)")


class GitHubError(CodeHostError):
    def __init__(self, message: str, *, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


def parse_pr_url(output: str) -> PullRequest:
    match = _PR_URL_RE.search(output or "")
    if match is None:
        preview = (output or "").strip()[:200]
        raise GitHubError(f"gh did not report a pull request URL: {preview}")
    return PullRequest(url=match.group(0), number=int(match.group(1)))


def pr_body(ticket: Ticket) -> str:
    heading = f"Implements {ticket.identifier}"
    if ticket.url:
        heading = f"Implements [{ticket.identifier}]({ticket.url})"
    lines = [
        heading,
        "",
        "## Ticket",
        "",
        f"**{ticket.identifier}: {ticket.title}**",
        "",
        ticket.description or "No description provided.",
        "",
        "---",
        "Opened automatically by ticket-autorunner.",
    ]
    return "\n".join(lines)


class GitHubService:
    def __init__(
        self, binary: str = "gh", *, timeout_seconds: float = GH_TIMEOUT_SECONDS
    ) -> None:
        self._binary = binary
        self._timeout_seconds = timeout_seconds

    async def _gh(self, args: Sequence[str], cwd: Path) -> str:
        try:
            result = await run_process(
                [self._binary, *args], cwd, timeout_seconds=self._timeout_seconds
            )
        except OSError as exc:
            raise GitHubError(f"Failed to run {self._binary}: {exc}") from exc
        command = f"{self._binary} {' '.join(args[:2])}"
        if result.timed_out:
            raise GitHubError(
                f"{command} timed out after {self._timeout_seconds:g}s"
            )
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()[:500]
            raise GitHubError(
                f"{command} failed: {detail}",
                returncode=result.returncode,
            )
        return result.stdout

    async def create_pr(
        self,
        workspace_path: Path,
        *,
        ticket: Ticket,
        branch: str,
        base_branch: str,
        labels: Sequence[str],
    ) -> PullRequest:
        args = [
            "pr",
            "create",
            "--base",
            base_branch,
            "--head",
            branch,
            "--title",
            f"{ticket.identifier}: {ticket.title}",
            "--body",
            pr_body(ticket),
        ]
        for label in labels:
            args.extend(["--label", label])
        try:
            output = await self._gh(args, workspace_path)
        except GitHubError as exc:
            if not labels or "label" not in str(exc).lower():
                raise
            # Missing repository labels should not block the PR itself.
            log_event(
                logger,
                logging.WARNING,
                "github.pr_labels_rejected",
                ticket=ticket.identifier,
                labels=list(labels),
                exc=exc,
            )
            output = await self._gh(args[: args.index("--body") + 2], workspace_path)
        pr = parse_pr_url(output)
        log_event(
            logger,
            logging.INFO,
            "github.pr_created",
            ticket=ticket.identifier,
            pr_url=pr.url,
        )
        return pr

    async def add_pr_label(self, pr_url: str, label: str) -> None:
        await self._gh(["pr", "edit", pr_url, "--add-label", label], Path.cwd())

    async def add_pr_comment(self, pr_url: str, body: str) -> None:
        await self._gh(["pr", "comment", pr_url, "--body", body], Path.cwd())


__all__ = ["GitHubError", "GitHubService", "parse_pr_url", "pr_body"]
