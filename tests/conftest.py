"""Test harness configuration.

This repo uses a `src/` layout; make sure tests import the in-repo code even
when an older `ticket_autorunner` is installed. In-memory fakes for every
pipeline port live here as fixtures.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional, Sequence

import pytest

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 60


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_path = str(repo_root / "src")
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Apply a default per-test timeout to non-integration tests."""
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


APPROVED_REVIEW = (
    '{"approved": true, "summary": "Looks good", "issues": [], '
    '"tests_pass": true, "lint_pass": true, "build_pass": true}'
)
REJECTED_REVIEW = (
    '{"approved": false, "summary": "Needs work", "issues": '
    '[{"severity": "major", "file": "app.py", "description": "Missing null check"}], '
    '"tests_pass": true, "lint_pass": false, "build_pass": true}'
)


def make_ticket(identifier: str = "ENG-1", **overrides: Any):
    from ticket_autorunner.tickets.models import Ticket

    base = Ticket(
        id=f"id-{identifier}",
        identifier=identifier,
        title=f"Ticket {identifier}",
        description="Do the thing.",
        team_key=identifier.split("-")[0],
        team_id="team-1",
        state_name="Todo",
        state_type="unstarted",
        project_name="web",
        labels=("agent-ready",),
        url=f"https://linear.app/acme/issue/{identifier}",
    )
    return replace(base, **overrides)


def agent_result(
    succeeded: bool = True,
    stdout: str = "done",
    stderr: str = "",
    exit_indicator: Optional[str] = None,
    timed_out: bool = False,
):
    from ticket_autorunner.tickets.models import AgentRunResult

    return AgentRunResult(
        succeeded=succeeded,
        stdout=stdout,
        stderr=stderr,
        exit_indicator=exit_indicator or ("0" if succeeded else "1"),
        duration_seconds=0.01,
        timed_out=timed_out,
    )


class FakeTracker:
    """Records every call; mutations are listed in ``mutations``."""

    MUTATING = {
        "transition",
        "add_comment",
        "set_labels",
        "create_child_issue",
        "update_description",
    }

    def __init__(self) -> None:
        self.tickets: dict[str, Any] = {}
        self.blockers: dict[str, list[Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.failing: set[str] = set()
        self.comment_failures = 0
        self.closed = False
        self.child_counter = 100

    def add(self, ticket) -> None:
        self.tickets[ticket.identifier] = ticket

    @property
    def mutations(self) -> list[tuple[str, Any]]:
        return [call for call in self.calls if call[0] in self.MUTATING]

    def comments_for(self, identifier: str) -> list[str]:
        return [
            args[1]
            for name, args in self.calls
            if name == "add_comment" and args[0] == identifier
        ]

    def _check(self, name: str) -> None:
        from ticket_autorunner.core.exceptions import TrackerError

        if name in self.failing:
            raise TrackerError(f"{name} unavailable")

    async def fetch_ticket(self, identifier: str):
        self.calls.append(("fetch_ticket", identifier))
        self._check("fetch_ticket")
        from ticket_autorunner.core.exceptions import TrackerError

        if identifier not in self.tickets:
            raise TrackerError(f"Ticket not found: {identifier}")
        return self.tickets[identifier]

    async def fetch_tickets(self, *, label: str, state: str, project=None):
        self.calls.append(("fetch_tickets", (label, state, project)))
        self._check("fetch_tickets")
        return [
            t
            for t in self.tickets.values()
            if label in t.labels
            and t.state_name == state
            and (project is None or t.project_name == project)
        ]

    async def fetch_blocking_relations(self, ticket):
        self.calls.append(("fetch_blocking_relations", ticket.identifier))
        self._check("fetch_blocking_relations")
        return list(self.blockers.get(ticket.identifier, []))

    async def transition(self, ticket, state_name: str) -> None:
        self.calls.append(("transition", (ticket.identifier, state_name)))
        self._check("transition")
        current = self.tickets.get(ticket.identifier, ticket)
        self.tickets[ticket.identifier] = replace(current, state_name=state_name)

    async def add_comment(self, ticket, body: str) -> None:
        self.calls.append(("add_comment", (ticket.identifier, body)))
        self._check("add_comment")
        if self.comment_failures > 0:
            self.comment_failures -= 1
            from ticket_autorunner.core.exceptions import TrackerError

            raise TrackerError("comment rejected")

    async def set_labels(self, ticket, labels: Sequence[str]) -> None:
        self.calls.append(("set_labels", (ticket.identifier, list(labels))))
        self._check("set_labels")
        current = self.tickets.get(ticket.identifier, ticket)
        self.tickets[ticket.identifier] = replace(current, labels=tuple(labels))

    async def create_child_issue(self, parent, *, title, description, labels) -> str:
        self.calls.append(("create_child_issue", (parent.identifier, title, list(labels))))
        self._check("create_child_issue")
        self.child_counter += 1
        return f"{parent.team_key}-{self.child_counter}"

    async def update_description(self, ticket, description: str) -> None:
        self.calls.append(("update_description", (ticket.identifier, description)))
        self._check("update_description")

    async def close(self) -> None:
        self.closed = True


class FakeWorkspace:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.created: list[str] = []
        self.removed: list[tuple[str, bool]] = []
        self.pushed: list[str] = []
        self.has_commits = True
        self.fail_create = False

    def branch_name(self, ticket_id: str) -> str:
        return f"ticket-autorunner/{ticket_id.lower()}"

    async def create_workspace(self, repo_path: Path, ticket_id: str, base_branch: str):
        from ticket_autorunner.core.exceptions import WorkspaceError

        if self.fail_create:
            raise WorkspaceError("worktree add failed")
        path = self.root / ticket_id
        path.mkdir(parents=True, exist_ok=True)
        self.created.append(ticket_id)
        return path

    async def remove_workspace(
        self, repo_path: Path, ticket_id: str, *, delete_remote_branch: bool = False
    ) -> None:
        self.removed.append((ticket_id, delete_remote_branch))

    async def push(self, workspace_path: Path, branch: str) -> None:
        self.pushed.append(branch)

    async def has_new_commits(self, workspace_path: Path, base_branch: str) -> bool:
        return self.has_commits


class FakeExecutor:
    """Replays scripted worker results; review runs get ``review_output``."""

    def __init__(self) -> None:
        self.results: list[Any] = []
        self.review_output = APPROVED_REVIEW
        self.calls: list[dict[str, Any]] = []

    @property
    def worker_calls(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if "review" not in c["context"]]

    async def execute(self, **kwargs: Any):
        self.calls.append(kwargs)
        if "review" in kwargs["context"]:
            return agent_result(stdout=self.review_output)
        if self.results:
            return self.results.pop(0)
        return agent_result()


class FakeCodeHost:
    def __init__(self) -> None:
        self.prs: list[str] = []
        self.labels: list[tuple[str, str]] = []
        self.comments: list[tuple[str, str]] = []

    async def create_pr(self, workspace_path, *, ticket, branch, base_branch, labels):
        from ticket_autorunner.tickets.models import PullRequest

        number = len(self.prs) + 1
        url = f"https://github.com/acme/web/pull/{number}"
        self.prs.append(url)
        return PullRequest(url=url, number=number)

    async def add_pr_label(self, pr_url: str, label: str) -> None:
        self.labels.append((pr_url, label))

    async def add_pr_comment(self, pr_url: str, body: str) -> None:
        self.comments.append((pr_url, body))


class FakeValidator:
    def __init__(self) -> None:
        self.results: list[Any] = []
        self.calls = 0

    async def validate(self, workspace_path, base_branch, project, ticket_id):
        from ticket_autorunner.tickets.models import ValidationResult

        self.calls += 1
        if self.results:
            return self.results.pop(0)
        return ValidationResult(valid=True)


@dataclass
class FakeAttemptLog:
    records: list[tuple[str, Any]] = field(default_factory=list)

    def record(self, ticket, attempt):
        self.records.append((ticket.identifier, attempt))
        return None


@pytest.fixture()
def config(tmp_path: Path):
    from ticket_autorunner.core.config import parse_config

    repo = tmp_path / "repos" / "web"
    repo.mkdir(parents=True, exist_ok=True)
    return parse_config(
        {
            "state_dir": str(tmp_path / "state"),
            "projects": {
                "web": {
                    "repo_path": str(repo),
                    "default_branch": "main",
                    "test_command": "npm test",
                    "lint_command": "npm run lint",
                }
            },
            "defaults": {"pr_link_attempts": 2, "pr_link_retry_delay_seconds": 0},
        },
        root=tmp_path,
    )


@pytest.fixture()
def registry(config):
    from ticket_autorunner.agents.registry import RoleRegistry

    reg = RoleRegistry(config.roles_path)
    reg.load()
    return reg


@pytest.fixture()
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture()
def workspace(tmp_path: Path) -> FakeWorkspace:
    return FakeWorkspace(tmp_path / "worktrees")


@pytest.fixture()
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture()
def code_host() -> FakeCodeHost:
    return FakeCodeHost()


@pytest.fixture()
def validator() -> FakeValidator:
    return FakeValidator()


@pytest.fixture()
def attempt_log() -> FakeAttemptLog:
    return FakeAttemptLog()


@pytest.fixture()
def proposal_service(config, registry, tracker):
    from ticket_autorunner.agents.proposals import ProposalService, ProposalStore

    return ProposalService(
        ProposalStore(config.proposals_dir), registry, tracker, config.tracker
    )


@pytest.fixture()
def runner(
    config,
    registry,
    tracker,
    workspace,
    executor,
    code_host,
    validator,
    attempt_log,
    proposal_service,
):
    from ticket_autorunner.tickets.runner import PipelineRunner

    return PipelineRunner(
        config=config,
        registry=registry,
        tracker=tracker,
        workspace=workspace,
        executor=executor,
        code_host=code_host,
        validator=validator,
        attempt_log=attempt_log,
        proposals=proposal_service,
    )


@pytest.fixture()
def ticket_factory():
    return make_ticket


@pytest.fixture()
def agent_result_factory():
    return agent_result
