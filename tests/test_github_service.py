from __future__ import annotations

import stat
from pathlib import Path

import pytest

from ticket_autorunner.integrations.github.service import (
    GitHubError,
    GitHubService,
    parse_pr_url,
    pr_body,
)


def _fake_gh(tmp_path: Path, body: str) -> str:
    """A ``gh`` stand-in that records its last argv and counts its calls."""
    path = tmp_path / "gh"
    record = (
        f'printf "%s\\n" "$@" > "{tmp_path}/last_args"\n'
        f'echo "$#" >> "{tmp_path}/calls"\n'
    )
    path.write_text("#!/bin/sh\n" + record + body + "\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


def _last_args(tmp_path: Path) -> list[str]:
    raw = (tmp_path / "last_args").read_text(encoding="utf-8")
    return raw.splitlines()


def _call_count(tmp_path: Path) -> int:
    return len((tmp_path / "calls").read_text(encoding="utf-8").splitlines())


def test_parse_pr_url_finds_url_in_noise() -> None:
    pr = parse_pr_url("Creating pull request...\nhttps://github.com/acme/web/pull/42\n")
    assert pr.url == "https://github.com/acme/web/pull/42"
    assert pr.number == 42
    with pytest.raises(GitHubError):
        parse_pr_url("something went sideways")


def test_pr_body_links_ticket(ticket_factory) -> None:
    body = pr_body(ticket_factory("ENG-3"))
    assert body.startswith("Implements [ENG-3](https://linear.app/acme/issue/ENG-3)")
    assert "**ENG-3: Ticket ENG-3**" in body
    assert "Do the thing." in body


@pytest.mark.asyncio
async def test_create_pr_passes_branch_and_labels(tmp_path: Path, ticket_factory) -> None:
    gh = _fake_gh(tmp_path, "echo https://github.com/acme/web/pull/7")
    service = GitHubService(gh)

    pr = await service.create_pr(
        tmp_path,
        ticket=ticket_factory("ENG-3"),
        branch="ticket-autorunner/eng-3",
        base_branch="main",
        labels=["agent-generated"],
    )

    assert pr.number == 7
    args = _last_args(tmp_path)
    assert args[:4] == ["pr", "create", "--base", "main"]
    assert args[4:6] == ["--head", "ticket-autorunner/eng-3"]
    assert args[args.index("--title") + 1] == "ENG-3: Ticket ENG-3"
    assert args[-2:] == ["--label", "agent-generated"]


@pytest.mark.asyncio
async def test_rejected_label_retries_without_labels(
    tmp_path: Path, ticket_factory
) -> None:
    script = (
        'case "$*" in\n'
        '  *--label*)\n'
        '    echo "could not add label: agent-generated not found" >&2\n'
        "    exit 1;;\n"
        "esac\n"
        "echo https://github.com/acme/web/pull/8"
    )
    service = GitHubService(_fake_gh(tmp_path, script))

    pr = await service.create_pr(
        tmp_path,
        ticket=ticket_factory("ENG-4"),
        branch="b",
        base_branch="main",
        labels=["agent-generated"],
    )

    assert pr.number == 8
    assert _call_count(tmp_path) == 2
    assert "--label" not in _last_args(tmp_path)


@pytest.mark.asyncio
async def test_other_failures_propagate(tmp_path: Path, ticket_factory) -> None:
    service = GitHubService(_fake_gh(tmp_path, "echo 'no upstream' >&2; exit 4"))

    with pytest.raises(GitHubError, match="no upstream") as excinfo:
        await service.create_pr(
            tmp_path,
            ticket=ticket_factory("ENG-5"),
            branch="b",
            base_branch="main",
            labels=[],
        )
    assert excinfo.value.returncode == 4
    assert _call_count(tmp_path) == 1


@pytest.mark.asyncio
async def test_pr_comment_and_label(tmp_path: Path) -> None:
    service = GitHubService(_fake_gh(tmp_path, "true"))
    url = "https://github.com/acme/web/pull/9"

    await service.add_pr_comment(url, "Review feedback")
    assert _last_args(tmp_path) == ["pr", "comment", url, "--body", "Review feedback"]

    await service.add_pr_label(url, "agent-approved")
    assert _last_args(tmp_path) == ["pr", "edit", url, "--add-label", "agent-approved"]
