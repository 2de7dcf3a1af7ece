"""Bounded-concurrency worker pool that preserves input order."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from .logging_utils import log_event

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger("ticket_autorunner.core.concurrency")


async def run_with_concurrency(
    items: Sequence[T],
    concurrency: int,
    fn: Callable[[T], Awaitable[R]],
) -> list[Optional[R]]:
    """Run ``fn`` over ``items`` with at most ``concurrency`` jobs in flight.

    Results are written into a list pre-sized to ``len(items)`` at each item's
    original index, so the output order is the input order regardless of
    completion order. ``concurrency <= 1`` processes items strictly in order.

    If ``fn`` raises, the worker that ran it logs the error and stops taking
    new items; the remaining workers carry on and the failed slot stays
    ``None``. Callers that need every item attempted should catch inside
    ``fn`` and return a failure value instead.
    """
    results: list[Optional[R]] = [None] * len(items)
    if not items:
        return results

    next_index = 0

    async def worker(worker_id: int) -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1
            try:
                results[index] = await fn(items[index])
            except Exception as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "worker_pool.job_failed",
                    worker=worker_id,
                    index=index,
                    exc=exc,
                )
                raise

    worker_count = max(1, min(concurrency, len(items)))
    await asyncio.gather(
        *(worker(worker_id) for worker_id in range(worker_count)),
        return_exceptions=True,
    )
    return results


__all__ = ["run_with_concurrency"]
