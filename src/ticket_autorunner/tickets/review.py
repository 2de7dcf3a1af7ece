"""Read-only review sub-run and verdict parsing."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from ..agents.prompts import build_review_prompt
from ..agents.registry import RoleRegistry
from ..core.config import AutorunnerConfig, ConfigError, ProjectConfig
from ..core.logging_utils import log_event
from .models import ReviewIssue, ReviewVerdict, Ticket
from .ports import AgentExecutor

logger = logging.getLogger("ticket_autorunner.tickets.review")

_VERDICT_RE = re.compile(r"\{[\s\S]*\"approved\"[\s\S]*\}")
_PR_URL_RE = re.compile(r"github\.com/([^/]+)/([^/]+)/pull/(\d+)")

_SEVERITIES = ("critical", "major", "minor", "nit")


def _unwrap_result(output: str) -> str:
    try:
        envelope = json.loads(output)
    except (TypeError, ValueError):
        return output
    if isinstance(envelope, dict) and isinstance(envelope.get("result"), str):
        return envelope["result"]
    return output


def _flag(data: dict[str, Any], *keys: str) -> bool:
    for key in keys:
        if key in data:
            return data[key] is True
    return False


def _issues(raw: Any) -> tuple[ReviewIssue, ...]:
    if not isinstance(raw, list):
        return ()
    issues: list[ReviewIssue] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        severity = str(item.get("severity") or "minor").lower()
        if severity not in _SEVERITIES:
            severity = "minor"
        issues.append(
            ReviewIssue(
                severity=severity,
                file=str(item.get("file") or ""),
                description=str(item.get("description") or ""),
            )
        )
    return tuple(issues)


def parse_review_verdict(output: str, *, context: str = "review") -> ReviewVerdict:
    """Extract the verdict object from review-agent output.

    Accepts the ``claude --output-format json`` envelope or raw text; anything
    unparseable degrades to a not-approved verdict.
    """
    text = _unwrap_result(output or "")
    match = _VERDICT_RE.search(text)
    if match is None:
        log_event(logger, logging.WARNING, "review.no_verdict", context=context)
        return ReviewVerdict.unavailable(
            "Review agent did not produce a structured verdict."
        )
    try:
        data = json.loads(match.group(0))
    except ValueError as exc:
        log_event(
            logger, logging.WARNING, "review.malformed_verdict", context=context, exc=exc
        )
        return ReviewVerdict.unavailable("Review verdict JSON was malformed.")
    if not isinstance(data, dict):
        return ReviewVerdict.unavailable("Review verdict JSON was malformed.")
    return ReviewVerdict(
        approved=data.get("approved") is True,
        summary=str(data.get("summary") or ""),
        issues=_issues(data.get("issues")),
        tests_pass=_flag(data, "tests_pass", "testsPass"),
        lint_pass=_flag(data, "lint_pass", "lintPass"),
        build_pass=_flag(data, "build_pass", "buildPass", "tscPass"),
    )


async def run_review(
    *,
    executor: AgentExecutor,
    registry: RoleRegistry,
    config: AutorunnerConfig,
    project: ProjectConfig,
    pr_url: str,
    cwd: Path,
    context: str,
    ticket: Optional[Ticket] = None,
) -> ReviewVerdict:
    """Run the review role against ``pr_url``; never raises on agent failure."""
    defaults = config.defaults
    role = registry.resolve(
        defaults.review_role,
        max_turns=defaults.review_max_turns,
        max_budget_usd=defaults.review_max_budget_usd,
    )
    result = await executor.execute(
        prompt=build_review_prompt(pr_url, project, ticket=ticket),
        cwd=cwd,
        capabilities=role.capabilities,
        max_turns=role.max_turns,
        max_budget_usd=role.max_budget_usd,
        timeout_seconds=defaults.agent_timeout_seconds,
        model=defaults.review_model,
        context=context,
    )
    if not result.succeeded and not result.stdout.strip():
        log_event(
            logger,
            logging.WARNING,
            "review.agent_failed",
            context=context,
            exit=result.exit_indicator,
        )
        return ReviewVerdict.unavailable(
            f"Review agent failed (exit {result.exit_indicator})."
        )
    verdict = parse_review_verdict(result.stdout, context=context)
    log_event(
        logger,
        logging.INFO,
        "review.verdict",
        context=context,
        approved=verdict.approved,
        issues=len(verdict.issues),
    )
    return verdict


def project_for_pr(config: AutorunnerConfig, pr_url: str) -> ProjectConfig:
    match = _PR_URL_RE.search(pr_url)
    if match is None:
        raise ConfigError(f"Invalid PR URL: {pr_url}")
    repo = match.group(2)
    for project in config.projects.values():
        if project.repo_path.name == repo or repo in str(project.repo_path):
            return project
    raise ConfigError(
        f'No project config found for repo "{repo}". '
        "Configure it in ticket-autorunner.yml or pass --project."
    )


async def review_pull_request(
    pr_url: str,
    *,
    config: AutorunnerConfig,
    registry: RoleRegistry,
    executor: AgentExecutor,
    project: Optional[ProjectConfig] = None,
) -> ReviewVerdict:
    target = project or project_for_pr(config, pr_url)
    match = _PR_URL_RE.search(pr_url)
    context = f"review-{match.group(3)}" if match else "review"
    log_event(logger, logging.INFO, "review.start", pr_url=pr_url, project=target.name)
    return await run_review(
        executor=executor,
        registry=registry,
        config=config,
        project=target,
        pr_url=pr_url,
        cwd=target.repo_path,
        context=context,
    )


__all__ = [
    "parse_review_verdict",
    "project_for_pr",
    "review_pull_request",
    "run_review",
]
