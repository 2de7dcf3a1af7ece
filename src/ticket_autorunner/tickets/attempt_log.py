from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from ..core.logging_utils import log_event
from ..core.time_utils import now_iso
from ..core.utils import atomic_write, truncate
from .models import RunAttempt, Ticket

logger = logging.getLogger("ticket_autorunner.tickets.attempt_log")

STDOUT_LIMIT = 50_000
STDERR_LIMIT = 5_000


class JsonAttemptLog:
    """Writes one ``<TICKET>-attempt<N>.json`` transcript per agent attempt."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, ticket_identifier: str, ordinal: int) -> Path:
        return self.directory / f"{ticket_identifier}-attempt{ordinal}.json"

    def record(self, ticket: Ticket, attempt: RunAttempt) -> Optional[Path]:
        path = self.path_for(ticket.identifier, attempt.ordinal)
        payload = {
            "ticket": {"identifier": ticket.identifier, "title": ticket.title},
            "attempt": attempt.ordinal,
            "succeeded": attempt.succeeded,
            "exit": attempt.exit_indicator,
            "duration_seconds": round(attempt.duration_seconds, 3),
            "stdout": truncate(attempt.stdout, STDOUT_LIMIT),
            "stderr": truncate(attempt.stderr, STDERR_LIMIT),
            "timestamp": now_iso(),
        }
        try:
            atomic_write(path, json.dumps(payload, indent=2) + "\n")
        except OSError as exc:
            log_event(
                logger,
                logging.WARNING,
                "attempt_log.write_failed",
                ticket=ticket.identifier,
                path=path,
                exc=exc,
            )
            return None
        return path


__all__ = ["JsonAttemptLog", "STDERR_LIMIT", "STDOUT_LIMIT"]
