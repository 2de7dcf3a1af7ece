from __future__ import annotations

import json
from pathlib import Path

from ticket_autorunner.tickets.attempt_log import (
    STDERR_LIMIT,
    STDOUT_LIMIT,
    JsonAttemptLog,
)
from ticket_autorunner.tickets.models import RunAttempt


def _attempt(ordinal: int, **overrides) -> RunAttempt:
    values = dict(
        ordinal=ordinal,
        stdout="ok",
        stderr="",
        succeeded=True,
        duration_seconds=1.23456,
        exit_indicator="0",
    )
    values.update(overrides)
    return RunAttempt(**values)


def test_writes_one_file_per_attempt(tmp_path: Path, ticket_factory) -> None:
    log = JsonAttemptLog(tmp_path / "logs")
    ticket = ticket_factory("ENG-7")

    first = log.record(ticket, _attempt(1, succeeded=False, exit_indicator="1"))
    second = log.record(ticket, _attempt(2))

    assert first == tmp_path / "logs" / "ENG-7-attempt1.json"
    assert second == tmp_path / "logs" / "ENG-7-attempt2.json"
    payload = json.loads(first.read_text(encoding="utf-8"))
    assert payload["ticket"] == {"identifier": "ENG-7", "title": "Ticket ENG-7"}
    assert payload["attempt"] == 1
    assert payload["succeeded"] is False
    assert payload["exit"] == "1"
    assert payload["duration_seconds"] == 1.235
    assert payload["timestamp"].endswith("Z")


def test_output_is_truncated(tmp_path: Path, ticket_factory) -> None:
    log = JsonAttemptLog(tmp_path)
    path = log.record(
        ticket_factory("ENG-8"),
        _attempt(1, stdout="o" * (STDOUT_LIMIT + 10), stderr="e" * (STDERR_LIMIT * 2)),
    )

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert len(payload["stdout"]) == STDOUT_LIMIT
    assert len(payload["stderr"]) == STDERR_LIMIT


def test_write_failure_is_not_fatal(tmp_path: Path, ticket_factory) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    log = JsonAttemptLog(blocker)

    assert log.record(ticket_factory("ENG-9"), _attempt(1)) is None
