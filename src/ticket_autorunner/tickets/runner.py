"""Per-ticket pipeline: fetch, sandboxed agent run, validation, PR, review.

Every external call has one explicit policy:

* fatal: the run stops and returns a failed ``PipelineResult``;
* best-effort: failures are logged and the run continues (``_best_effort``);
* bounded retry with fallback: the PR link comment.

Cleanup and rollback are owned by ``run``'s ``finally`` block and nothing else.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Optional, TypeVar

from ..agents import prompts
from ..agents.dispatcher import DispatchResult, dispatch
from ..agents.failure_analysis import FailureCategory, analyze_failure
from ..agents.proposals import ProposalService
from ..agents.registry import RegistryError, ResolvedRole, RoleRegistry
from ..core.config import AutorunnerConfig, ConfigError, ProjectConfig
from ..core.logging_utils import log_event
from ..core.retry import bounded_retry
from . import comments
from .models import (
    AgentRunResult,
    FailureKind,
    PipelineResult,
    PullRequest,
    ReviewVerdict,
    RunAttempt,
    RunOptions,
    Ticket,
)
from .ports import AgentExecutor, AttemptLog, CodeHost, OutputValidator, Tracker, Workspace
from .review import run_review

logger = logging.getLogger("ticket_autorunner.tickets.runner")

T = TypeVar("T")

AGENT_ERROR_CHARS = 1000


@dataclass
class _RunState:
    """Mutable bookkeeping for one run; read by the teardown in ``run``."""

    identifier: str
    started: float
    ticket: Optional[Ticket] = None
    project: Optional[ProjectConfig] = None
    role: Optional[ResolvedRole] = None
    model: str = ""
    max_attempts: int = 1
    transitioned: bool = False
    workspace_requested: bool = False
    workspace_path: Optional[Path] = None
    branch: str = ""
    attempts: int = 0
    last_error: str = ""
    succeeded: bool = False

    def elapsed(self) -> float:
        return time.monotonic() - self.started


class PipelineRunner:
    def __init__(
        self,
        *,
        config: AutorunnerConfig,
        registry: RoleRegistry,
        tracker: Tracker,
        workspace: Workspace,
        executor: AgentExecutor,
        code_host: CodeHost,
        validator: OutputValidator,
        attempt_log: AttemptLog,
        proposals: ProposalService,
    ) -> None:
        self.config = config
        self.registry = registry
        self.tracker = tracker
        self.workspace = workspace
        self.executor = executor
        self.code_host = code_host
        self.validator = validator
        self.attempt_log = attempt_log
        self.proposals = proposals

    async def run(
        self, identifier: str, options: Optional[RunOptions] = None
    ) -> PipelineResult:
        options = options or RunOptions()
        defaults = self.config.defaults
        state = _RunState(
            identifier=identifier,
            started=time.monotonic(),
            model=options.model or defaults.model,
            max_attempts=max(1, options.max_attempts or defaults.max_attempts),
        )
        log_event(
            logger,
            logging.INFO,
            "pipeline.start",
            ticket=identifier,
            model=state.model,
            max_attempts=state.max_attempts,
            dry_run=options.dry_run,
        )

        try:
            ticket = await self.tracker.fetch_ticket(identifier)
        except Exception as exc:
            return self._fail(
                state, FailureKind.FATAL_PRECONDITION, f"Failed to fetch ticket: {exc}"
            )
        state.ticket = ticket
        log_event(
            logger,
            logging.INFO,
            "pipeline.fetched",
            ticket=identifier,
            title=ticket.title,
            state=ticket.state_name,
            project=ticket.project_name,
        )

        if options.dry_run:
            log_event(logger, logging.INFO, "pipeline.dry_run", ticket=identifier)
            return PipelineResult(
                ticket_id=identifier,
                success=True,
                duration_seconds=state.elapsed(),
                attempts=0,
            )

        precondition_error = await self._check_preconditions(state, ticket)
        if precondition_error is not None:
            return self._fail(state, FailureKind.FATAL_PRECONDITION, precondition_error)

        # Dispatch is a pure lookup, so an unusable role set fails here before
        # any tracker mutation.
        try:
            selection = dispatch(ticket, self.registry, defaults.default_role)
            state.role = self.registry.resolve(
                selection.role,
                max_turns=options.max_turns or defaults.max_turns,
                max_budget_usd=options.max_budget_usd or defaults.max_budget_usd,
            )
        except RegistryError as exc:
            return self._fail(
                state, FailureKind.FATAL_PRECONDITION, f"Role resolution failed: {exc}"
            )
        self._log_dispatch(ticket, selection, state.role)

        state.transitioned = await self._best_effort(
            ticket,
            "transition_in_progress",
            self.tracker.transition(ticket, self.config.tracker.in_progress_state),
        )
        await self._best_effort(
            ticket,
            "start_comment",
            self.tracker.add_comment(
                ticket,
                comments.start_work(
                    identifier=ticket.identifier,
                    title=ticket.title,
                    role=state.role.name,
                    model=state.model,
                    max_turns=state.role.max_turns,
                    max_attempts=state.max_attempts,
                ),
            ),
        )

        result: Optional[PipelineResult] = None
        try:
            try:
                result = await self._run_stages(state, ticket)
            except Exception as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "pipeline.unexpected_error",
                    ticket=identifier,
                    exc=exc,
                )
                result = self._fail(
                    state, FailureKind.INFRASTRUCTURE, f"Unexpected error: {exc}"
                )
            state.succeeded = result.success
            return result
        finally:
            await self._cleanup(state)
            if not state.succeeded and state.transitioned:
                await self._rollback(state, ticket)

    async def _check_preconditions(
        self, state: _RunState, ticket: Ticket
    ) -> Optional[str]:
        tracker_cfg = self.config.tracker
        if ticket.state_name not in tracker_cfg.ready_states:
            return (
                f'Ticket is in "{ticket.state_name}" state, expected one of: '
                f"{', '.join(tracker_cfg.ready_states)}"
            )
        if ticket.has_label(tracker_cfg.needs_approval_label):
            return (
                f'Ticket carries "{tracker_cfg.needs_approval_label}"; '
                "an escalation proposal is awaiting a decision"
            )
        try:
            blockers = await self.tracker.fetch_blocking_relations(ticket)
        except Exception as exc:
            return f"Failed to check blocking relations: {exc}"
        open_blockers = [b for b in blockers if not b.done]
        if open_blockers:
            listed = ", ".join(f"{b.identifier} ({b.state_name})" for b in open_blockers)
            return f"Blocked by unfinished ticket(s): {listed}"
        if not ticket.project_name:
            return "Ticket has no project assigned. Assign it to a Linear project."
        try:
            state.project = self.config.project(ticket.project_name)
        except ConfigError as exc:
            return str(exc)
        return None

    def _log_dispatch(
        self, ticket: Ticket, selection: DispatchResult, role: ResolvedRole
    ) -> None:
        log_event(
            logger,
            logging.INFO,
            "pipeline.dispatched",
            ticket=ticket.identifier,
            role=role.name,
            reason=selection.reason,
            max_turns=role.max_turns,
            max_budget_usd=role.max_budget_usd,
        )

    async def _run_stages(self, state: _RunState, ticket: Ticket) -> PipelineResult:
        project = state.project
        assert project is not None

        state.workspace_requested = True
        try:
            state.workspace_path = await self.workspace.create_workspace(
                project.repo_path, ticket.identifier, project.default_branch
            )
        except Exception as exc:
            return self._fail(
                state, FailureKind.INFRASTRUCTURE, f"Failed to create workspace: {exc}"
            )
        state.branch = self.workspace.branch_name(ticket.identifier)
        workspace_path = state.workspace_path

        failure = await self._attempt_loop(state, ticket, project, workspace_path)
        if failure is not None:
            return failure

        try:
            has_commits = await self.workspace.has_new_commits(
                workspace_path, project.default_branch
            )
        except Exception as exc:
            return self._fail(
                state, FailureKind.INFRASTRUCTURE, f"Failed to check commits: {exc}"
            )
        if not has_commits:
            return self._fail(
                state, FailureKind.VALIDATION_FAILURE, "No commits produced by agent"
            )

        try:
            await self.workspace.push(workspace_path, state.branch)
        except Exception as exc:
            return self._fail(state, FailureKind.INFRASTRUCTURE, f"Push failed: {exc}")

        try:
            pr = await self.code_host.create_pr(
                workspace_path,
                ticket=ticket,
                branch=state.branch,
                base_branch=project.default_branch,
                labels=self.config.github.pr_labels,
            )
        except Exception as exc:
            return self._fail(
                state, FailureKind.INFRASTRUCTURE, f"PR creation failed: {exc}"
            )
        log_event(
            logger,
            logging.INFO,
            "pipeline.pr_created",
            ticket=ticket.identifier,
            pr_url=pr.url,
        )

        await self._link_pr(ticket, pr, state.branch)

        try:
            verdict = await run_review(
                executor=self.executor,
                registry=self.registry,
                config=self.config,
                project=project,
                pr_url=pr.url,
                cwd=workspace_path,
                context=f"{ticket.identifier}-review",
                ticket=ticket,
            )
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "pipeline.review_failed",
                ticket=ticket.identifier,
                exc=exc,
            )
            verdict = ReviewVerdict.unavailable(f"Review could not be completed: {exc}")

        await self._act_on_verdict(ticket, pr, verdict)

        log_event(
            logger,
            logging.INFO,
            "pipeline.succeeded",
            ticket=ticket.identifier,
            attempts=state.attempts,
            pr_url=pr.url,
            approved=verdict.approved,
        )
        return PipelineResult(
            ticket_id=ticket.identifier,
            success=True,
            duration_seconds=state.elapsed(),
            attempts=state.attempts,
            pr_url=pr.url,
            review_verdict=verdict,
        )

    async def _attempt_loop(
        self,
        state: _RunState,
        ticket: Ticket,
        project: ProjectConfig,
        workspace_path: Path,
    ) -> Optional[PipelineResult]:
        """Run the agent until validation passes; return a failure or ``None``."""
        role = state.role
        assert role is not None

        for ordinal in range(1, state.max_attempts + 1):
            state.attempts = ordinal
            log_event(
                logger,
                logging.INFO,
                "pipeline.attempt",
                ticket=ticket.identifier,
                attempt=ordinal,
                max_attempts=state.max_attempts,
            )
            run = await self.executor.execute(
                prompt=prompts.build_worker_prompt(
                    ticket, project, previous_error=state.last_error, attempt=ordinal
                ),
                cwd=workspace_path,
                capabilities=role.capabilities,
                max_turns=role.max_turns,
                max_budget_usd=role.max_budget_usd,
                timeout_seconds=self.config.defaults.agent_timeout_seconds,
                model=state.model,
                context=ticket.identifier,
            )
            self.attempt_log.record(
                ticket,
                RunAttempt(
                    ordinal=ordinal,
                    stdout=run.stdout,
                    stderr=run.stderr,
                    succeeded=run.succeeded,
                    duration_seconds=run.duration_seconds,
                    exit_indicator=run.exit_indicator,
                ),
            )

            if not run.succeeded:
                analysis = analyze_failure(run.stdout, run.stderr)
                state.last_error = _describe_agent_failure(run, analysis.category)
                log_event(
                    logger,
                    logging.ERROR,
                    "pipeline.agent_failed",
                    ticket=ticket.identifier,
                    attempt=ordinal,
                    category=analysis.category.value,
                    confidence=analysis.confidence,
                )
                if analysis.category == FailureCategory.CAPABILITY_DENIED:
                    proposal_id: Optional[str] = None
                    try:
                        proposal = await self.proposals.create(ticket, role.name, analysis)
                        proposal_id = proposal.id
                    except Exception as exc:
                        log_event(
                            logger,
                            logging.ERROR,
                            "pipeline.proposal_failed",
                            ticket=ticket.identifier,
                            exc=exc,
                        )
                    missing = ", ".join(analysis.missing_capabilities) or "unidentified"
                    return self._fail(
                        state,
                        FailureKind.CAPABILITY_DENIED,
                        f'Role "{role.name}" was denied a capability ({missing})',
                        proposal_id=proposal_id,
                    )
                if ordinal < state.max_attempts:
                    continue
                await self._post_agent_failed(state, ticket)
                return self._fail(
                    state,
                    FailureKind.EXECUTION_FAILURE,
                    f"Agent failed after {ordinal} attempt(s): {state.last_error}",
                )

            try:
                validation = await self.validator.validate(
                    workspace_path, project.default_branch, project, ticket.identifier
                )
            except Exception as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "pipeline.validation_error",
                    ticket=ticket.identifier,
                    exc=exc,
                )
                state.last_error = f"Validation could not run: {exc}"
                validation = None

            if validation is not None:
                if validation.warnings:
                    log_event(
                        logger,
                        logging.WARNING,
                        "pipeline.validation_warnings",
                        ticket=ticket.identifier,
                        warnings=list(validation.warnings),
                    )
                if validation.valid:
                    log_event(
                        logger,
                        logging.INFO,
                        "pipeline.validation_passed",
                        ticket=ticket.identifier,
                    )
                    return None
                state.last_error = "\n".join(validation.errors)
                log_event(
                    logger,
                    logging.ERROR,
                    "pipeline.validation_failed",
                    ticket=ticket.identifier,
                    attempt=ordinal,
                    errors=list(validation.errors),
                )

            if ordinal >= state.max_attempts:
                await self._post_agent_failed(state, ticket)
                return self._fail(
                    state,
                    FailureKind.VALIDATION_FAILURE,
                    f"Validation failed after {ordinal} attempt(s): {state.last_error}",
                )
        return None

    async def _post_agent_failed(self, state: _RunState, ticket: Ticket) -> None:
        await self._best_effort(
            ticket,
            "failure_comment",
            self.tracker.add_comment(
                ticket,
                comments.agent_failed(
                    attempts=state.attempts,
                    max_attempts=state.max_attempts,
                    errors=state.last_error,
                ),
            ),
        )

    async def _link_pr(self, ticket: Ticket, pr: PullRequest, branch: str) -> None:
        defaults = self.config.defaults
        body = comments.pr_created(pr_url=pr.url, branch=branch)
        try:
            async for attempt in bounded_retry(
                defaults.pr_link_attempts,
                defaults.pr_link_retry_delay_seconds,
                logger=logger,
            ):
                with attempt:
                    await self.tracker.add_comment(ticket, body)
            return
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "pipeline.pr_link_comment_failed",
                ticket=ticket.identifier,
                attempts=defaults.pr_link_attempts,
                exc=exc,
            )
        existing = (ticket.description or "").rstrip()
        description = f"{existing}\n\nPR: {pr.url}" if existing else f"PR: {pr.url}"
        linked = await self._best_effort(
            ticket,
            "pr_link_description",
            self.tracker.update_description(ticket, description),
        )
        if not linked:
            log_event(
                logger,
                logging.ERROR,
                "pipeline.pr_link_lost",
                ticket=ticket.identifier,
                pr_url=pr.url,
            )

    async def _act_on_verdict(
        self, ticket: Ticket, pr: PullRequest, verdict: ReviewVerdict
    ) -> None:
        if verdict.approved:
            label = self.config.github.review_approved_label
            if label:
                await self._best_effort(
                    ticket, "pr_label", self.code_host.add_pr_label(pr.url, label)
                )
            await self._best_effort(
                ticket,
                "transition_in_review",
                self.tracker.transition(ticket, self.config.tracker.in_review_state),
            )
            await self._best_effort(
                ticket,
                "review_comment",
                self.tracker.add_comment(
                    ticket, comments.review_passed(verdict=verdict, pr_url=pr.url)
                ),
            )
            return

        try:
            follow_up = await self.tracker.create_child_issue(
                ticket,
                title=f"Fix review feedback: {ticket.identifier}",
                description=comments.follow_up_description(
                    parent_identifier=ticket.identifier, pr_url=pr.url, verdict=verdict
                ),
                labels=self.config.tracker.follow_up_labels,
            )
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "pipeline.side_effect_failed",
                ticket=ticket.identifier,
                action="follow_up_ticket",
                exc=exc,
            )
            return
        log_event(
            logger,
            logging.INFO,
            "pipeline.follow_up_created",
            ticket=ticket.identifier,
            follow_up=follow_up,
        )
        await self._best_effort(
            ticket,
            "pr_comment",
            self.code_host.add_pr_comment(
                pr.url,
                comments.review_follow_up(follow_up_identifier=follow_up, verdict=verdict),
            ),
        )

    async def _cleanup(self, state: _RunState) -> None:
        if not state.workspace_requested or state.project is None:
            return
        try:
            await self.workspace.remove_workspace(
                state.project.repo_path,
                state.identifier,
                delete_remote_branch=not state.succeeded,
            )
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "pipeline.cleanup_failed",
                ticket=state.identifier,
                exc=exc,
            )

    async def _rollback(self, state: _RunState, ticket: Ticket) -> None:
        todo_state = self.config.tracker.todo_state
        await self._best_effort(
            ticket, "rollback_transition", self.tracker.transition(ticket, todo_state)
        )
        await self._best_effort(
            ticket,
            "rollback_comment",
            self.tracker.add_comment(
                ticket,
                comments.rollback(
                    error=state.last_error or "unknown error",
                    attempts=state.attempts,
                    state_name=todo_state,
                ),
            ),
        )
        log_event(
            logger,
            logging.INFO,
            "pipeline.rolled_back",
            ticket=ticket.identifier,
            state=todo_state,
        )

    async def _best_effort(self, ticket: Ticket, action: str, call: Awaitable[T]) -> bool:
        try:
            await call
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "pipeline.side_effect_failed",
                ticket=ticket.identifier,
                action=action,
                exc=exc,
            )
            return False
        return True

    def _fail(
        self,
        state: _RunState,
        kind: FailureKind,
        error: str,
        *,
        proposal_id: Optional[str] = None,
    ) -> PipelineResult:
        state.last_error = error
        log_event(
            logger,
            logging.ERROR,
            "pipeline.failed",
            ticket=state.identifier,
            failure_kind=kind.value,
            error=error,
        )
        return PipelineResult(
            ticket_id=state.identifier,
            success=False,
            duration_seconds=state.elapsed(),
            attempts=state.attempts,
            error=error,
            failure_kind=kind,
            proposal_id=proposal_id,
        )


def _describe_agent_failure(run: AgentRunResult, category: FailureCategory) -> str:
    if run.timed_out:
        return run.stderr or "Agent timed out"
    detail = (run.stderr or run.stdout or "").strip()[:AGENT_ERROR_CHARS]
    return f"Agent exited with {run.exit_indicator} ({category.value}). stderr: {detail}"


__all__ = ["PipelineRunner"]
