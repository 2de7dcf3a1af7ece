from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from ticket_autorunner.agents.failure_analysis import analyze_failure
from ticket_autorunner.core.locks import BatchLock
from ticket_autorunner.integrations.wiring import Runtime
from ticket_autorunner.surfaces.cli import cli
from ticket_autorunner.surfaces.cli.commands import utils
from ticket_autorunner.tickets.drain import BatchDriver

cli_runner = CliRunner()


@pytest.fixture(autouse=True)
def log_setups(monkeypatch):
    """Keep log lines out of the captured command output."""
    calls: list[tuple] = []
    def record(log_dir, verbose=False):
        calls.append((log_dir, verbose))

    monkeypatch.setattr(utils, "setup_logging", record)
    return calls


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    repo = tmp_path / "repos" / "web"
    repo.mkdir(parents=True, exist_ok=True)
    path = tmp_path / "ticket-autorunner.yml"
    data = {
        "state_dir": str(tmp_path / "state"),
        "projects": {
            "web": {
                "repo_path": str(repo),
                "test_command": "npm test",
                "lint_command": "npm run lint",
            }
        },
    }
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture()
def fake_runtime(
    monkeypatch, config, registry, tracker, executor, proposal_service, runner
):
    runtime = Runtime(
        config=config,
        registry=registry,
        tracker=tracker,
        executor=executor,
        proposals=proposal_service,
        runner=runner,
        driver=BatchDriver(
            config=config,
            tracker=tracker,
            runner=runner,
            lock=BatchLock(config.lock_path, ttl_seconds=60),
        ),
    )
    monkeypatch.setattr(utils, "build_runtime", lambda _config: runtime)
    return runtime


def _invoke(*args: str, config: Path | None = None):
    argv = list(args)
    if config is not None:
        argv += ["--config", str(config)]
    return cli_runner.invoke(cli.app, argv)


def _seed_proposal(proposal_service, tracker, ticket_factory):
    ticket = ticket_factory("ENG-7")
    tracker.add(ticket)
    analysis = analyze_failure("", 'tool "WebFetch" is not allowed')
    return asyncio.run(proposal_service.create(ticket, "worker", analysis))


def test_version() -> None:
    result = _invoke("--version")
    assert result.exit_code == 0
    assert result.output.startswith("ticket-autorunner ")


def test_missing_config_exits_nonzero(tmp_path: Path) -> None:
    result = _invoke("roles", "list", "--config", str(tmp_path / "missing.yml"))
    assert result.exit_code == 1


def test_roles_list_and_show(config_file: Path) -> None:
    listed = _invoke("roles", "list", config=config_file)
    assert listed.exit_code == 0
    assert "docs (extends worker):" in listed.output
    assert "reviewer:" in listed.output

    as_json = _invoke("roles", "list", "--json", config=config_file)
    names = [role["name"] for role in json.loads(as_json.stdout)["roles"]]
    assert {"worker", "reviewer", "docs", "tester"} <= set(names)

    shown = _invoke("roles", "show", "docs", config=config_file)
    payload = json.loads(shown.stdout)
    assert payload["extends"] == "worker"
    assert payload["max_turns"] == 30

    unknown = _invoke("roles", "show", "nobody", config=config_file)
    assert unknown.exit_code == 1


def test_proposals_list_and_show(
    config_file: Path, proposal_service, tracker, ticket_factory
) -> None:
    empty = _invoke("proposals", "list", config=config_file)
    assert empty.exit_code == 0
    assert "No proposals." in empty.output

    proposal = _seed_proposal(proposal_service, tracker, ticket_factory)

    listed = _invoke("proposals", "list", config=config_file)
    assert proposal.id in listed.output
    assert "worker -> worker-eng-7" in listed.output
    assert "WebFetch" in listed.output

    approved_only = _invoke(
        "proposals", "list", "--status", "approved", config=config_file
    )
    assert "No proposals." in approved_only.output

    shown = _invoke("proposals", "show", proposal.id, config=config_file)
    assert json.loads(shown.stdout)["ticket_identifier"] == "ENG-7"

    bad = _invoke("proposals", "show", "../etc/passwd", config=config_file)
    assert bad.exit_code == 1


def test_proposals_approve_and_reject(
    config_file: Path, fake_runtime, proposal_service, tracker, ticket_factory
) -> None:
    proposal = _seed_proposal(proposal_service, tracker, ticket_factory)

    no_reason = _invoke("proposals", "reject", proposal.id, config=config_file)
    assert no_reason.exit_code != 0

    approved = _invoke("proposals", "approve", proposal.id, config=config_file)
    assert approved.exit_code == 0, approved.output
    assert "role worker-eng-7 registered" in approved.output
    assert "agent-ready" in tracker.tickets["ENG-7"].labels

    again = _invoke(
        "proposals", "reject", proposal.id, "--reason", "late", config=config_file
    )
    assert again.exit_code == 1


def test_run_reports_success(
    config_file: Path, fake_runtime, tracker, ticket_factory, log_setups
) -> None:
    tracker.add(ticket_factory("ENG-1"))

    result = _invoke("run", "eng-1", "-v", config=config_file)

    assert result.exit_code == 0, result.output
    assert "ENG-1: ok (https://github.com/acme/web/pull/1)" in result.output
    [(log_dir, verbose)] = log_setups
    assert verbose and log_dir == fake_runtime.config.logs_dir
    assert tracker.closed


def test_run_failure_exits_nonzero(config_file: Path, fake_runtime) -> None:
    result = _invoke("run", "ENG-404", config=config_file)

    assert result.exit_code == 1
    assert "ENG-404: fatal_precondition" in result.output


def test_drain_summarises_results(
    config_file: Path, fake_runtime, tracker, ticket_factory
) -> None:
    tracker.add(ticket_factory("ENG-1"))
    tracker.add(ticket_factory("ENG-2"))

    result = _invoke("drain", "--dry-run", config=config_file)

    assert result.exit_code == 0, result.output
    assert "2 ticket(s): 2 succeeded, 0 failed" in result.output
    assert tracker.mutations == []


def test_drain_rejects_unknown_project(config_file: Path, fake_runtime) -> None:
    result = _invoke("drain", "--project", "mobile", config=config_file)
    assert result.exit_code == 1
    assert "Unknown project: mobile" in result.output
