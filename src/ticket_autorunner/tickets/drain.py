"""Batch driver: run every ready ticket through the pipeline.

Only one drain may run at a time per state directory; the gate is a TTL lock
file. Tickets are processed by a bounded worker pool and results come back in
selection order.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..core.concurrency import run_with_concurrency
from ..core.config import AutorunnerConfig
from ..core.locks import BatchLock, BatchLockBusy
from ..core.logging_utils import log_event
from .models import DrainOptions, FailureKind, PipelineResult, Ticket
from .ports import Tracker
from .runner import PipelineRunner

logger = logging.getLogger("ticket_autorunner.tickets.drain")


class BatchDriver:
    def __init__(
        self,
        *,
        config: AutorunnerConfig,
        tracker: Tracker,
        runner: PipelineRunner,
        lock: Optional[BatchLock] = None,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.runner = runner
        self.lock = lock or BatchLock(
            config.lock_path, ttl_seconds=config.defaults.lock_ttl_seconds
        )

    async def drain(self, options: Optional[DrainOptions] = None) -> list[PipelineResult]:
        options = options or DrainOptions()
        try:
            self.lock.acquire()
        except BatchLockBusy as exc:
            log_event(logger, logging.WARNING, "drain.lock_held", detail=str(exc))
            return []
        try:
            return await self._drain_locked(options)
        finally:
            self.lock.release()

    async def _drain_locked(self, options: DrainOptions) -> list[PipelineResult]:
        label = options.label or self.config.tracker.ready_label
        limit = options.limit or self.config.defaults.batch_limit
        concurrency = options.concurrency or self.config.defaults.batch_concurrency
        project_names = [options.project] if options.project else list(self.config.projects)

        await self._report_stale(label, project_names)
        selected = await self._select(label, project_names, limit)

        if options.dry_run:
            results = []
            for ticket in selected:
                log_event(
                    logger,
                    logging.INFO,
                    "drain.dry_run_ticket",
                    ticket=ticket.identifier,
                    title=ticket.title,
                    project=ticket.project_name,
                    labels=list(ticket.labels),
                    url=ticket.url,
                )
                results.append(
                    PipelineResult(
                        ticket_id=ticket.identifier,
                        success=True,
                        duration_seconds=0.0,
                        attempts=0,
                    )
                )
            self._log_summary(results, dry_run=True)
            return results

        log_event(
            logger,
            logging.INFO,
            "drain.processing",
            count=len(selected),
            concurrency=concurrency,
        )

        async def process(ticket: Ticket) -> PipelineResult:
            try:
                result = await self.runner.run(ticket.identifier, options.run_options)
            except Exception as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "drain.unexpected_error",
                    ticket=ticket.identifier,
                    exc=exc,
                )
                return PipelineResult(
                    ticket_id=ticket.identifier,
                    success=False,
                    duration_seconds=0.0,
                    attempts=0,
                    error=f"Unexpected error: {exc}",
                    failure_kind=FailureKind.INFRASTRUCTURE,
                )
            log_event(
                logger,
                logging.INFO if result.success else logging.ERROR,
                "drain.ticket_finished",
                ticket=ticket.identifier,
                success=result.success,
                pr_url=result.pr_url,
                error=result.error,
            )
            return result

        slots = await run_with_concurrency(selected, concurrency, process)
        results = [
            slot
            if slot is not None
            else PipelineResult(
                ticket_id=ticket.identifier,
                success=False,
                duration_seconds=0.0,
                attempts=0,
                error="Worker stopped before producing a result",
                failure_kind=FailureKind.INFRASTRUCTURE,
            )
            for ticket, slot in zip(selected, slots)
        ]
        self._log_summary(results, dry_run=False)
        return results

    async def _report_stale(self, label: str, project_names: list[str]) -> None:
        in_progress = self.config.tracker.in_progress_state
        for project in project_names:
            try:
                stale = await self.tracker.fetch_tickets(
                    label=label, state=in_progress, project=project
                )
            except Exception as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "drain.stale_check_failed",
                    project=project,
                    exc=exc,
                )
                continue
            for ticket in stale:
                log_event(
                    logger,
                    logging.WARNING,
                    "drain.stale_ticket",
                    ticket=ticket.identifier,
                    title=ticket.title,
                    state=in_progress,
                    url=ticket.url,
                    hint="may need manual attention",
                )

    async def _select(
        self, label: str, project_names: list[str], limit: int
    ) -> list[Ticket]:
        tracker_cfg = self.config.tracker
        selected: list[Ticket] = []
        for project in project_names:
            if len(selected) >= limit:
                log_event(logger, logging.INFO, "drain.limit_reached", limit=limit)
                break
            try:
                tickets = await self.tracker.fetch_tickets(
                    label=label, state=tracker_cfg.todo_state, project=project
                )
            except Exception as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "drain.fetch_failed",
                    project=project,
                    exc=exc,
                )
                continue
            log_event(
                logger, logging.INFO, "drain.fetched", project=project, count=len(tickets)
            )
            for ticket in tickets:
                if len(selected) >= limit:
                    break
                if await self._skip_reason(ticket) is None:
                    selected.append(ticket)
        return selected

    async def _skip_reason(self, ticket: Ticket) -> Optional[str]:
        """Batch-level filter; the pipeline re-checks both conditions."""
        reason: Optional[str] = None
        if ticket.has_label(self.config.tracker.needs_approval_label):
            reason = "awaiting escalation approval"
        else:
            try:
                blockers = await self.tracker.fetch_blocking_relations(ticket)
            except Exception as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "drain.blocker_check_failed",
                    ticket=ticket.identifier,
                    exc=exc,
                )
                blockers = []
            open_blockers = [b.identifier for b in blockers if not b.done]
            if open_blockers:
                reason = f"blocked by {', '.join(open_blockers)}"
        if reason is not None:
            log_event(
                logger, logging.INFO, "drain.skipped", ticket=ticket.identifier, reason=reason
            )
        return reason

    def _log_summary(self, results: list[PipelineResult], *, dry_run: bool) -> None:
        succeeded = sum(1 for r in results if r.success)
        log_event(
            logger,
            logging.INFO,
            "drain.complete",
            dry_run=dry_run,
            succeeded=succeeded,
            failed=len(results) - succeeded,
            total=len(results),
        )


__all__ = ["BatchDriver"]
