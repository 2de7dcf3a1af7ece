"""Per-ticket git worktrees inside the target repository."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from ..core.exceptions import WorkspaceError
from ..core.git_utils import GitError, run_git, validate_branch_name
from ..core.logging_utils import log_event

logger = logging.getLogger("ticket_autorunner.workspace.worktrees")

WORKTREE_DIRNAME = ".ticket-autorunner-worktrees"
BRANCH_PREFIX = "ticket-autorunner/"

FETCH_TIMEOUT_SECONDS = 60
PUSH_TIMEOUT_SECONDS = 60


def resolve_git_dir(repo_path: Path) -> Path:
    """Return the directory git commands run in.

    Supports a plain checkout (``repo/.git``) and a hub layout where the main
    checkout lives at ``repo/main``.
    """
    if (repo_path / ".git").exists():
        return repo_path
    hub_main = repo_path / "main"
    if (hub_main / ".git").exists():
        return hub_main
    raise WorkspaceError(
        f"No git repository found at {repo_path} (checked .git and main/.git)"
    )


class GitWorktreeManager:
    def branch_name(self, ticket_id: str) -> str:
        return validate_branch_name(f"{BRANCH_PREFIX}{ticket_id.lower()}")

    def worktree_path(self, repo_path: Path, ticket_id: str) -> Path:
        return repo_path / WORKTREE_DIRNAME / ticket_id

    def _create(self, repo_path: Path, ticket_id: str, base_branch: str) -> Path:
        try:
            validate_branch_name(base_branch)
            branch = self.branch_name(ticket_id)
        except GitError as exc:
            raise WorkspaceError(str(exc)) from exc
        git_dir = resolve_git_dir(repo_path)
        path = self.worktree_path(repo_path, ticket_id)
        if path.exists():
            log_event(
                logger,
                logging.WARNING,
                "worktree.exists",
                ticket=ticket_id,
                path=path,
            )
            self._remove(repo_path, ticket_id, delete_remote_branch=False)
        try:
            run_git(["fetch", "origin"], git_dir, timeout_seconds=FETCH_TIMEOUT_SECONDS)
            run_git(
                ["worktree", "add", "-b", branch, str(path), f"origin/{base_branch}"],
                git_dir,
            )
        except GitError as exc:
            raise WorkspaceError(f"Failed to create worktree: {exc}") from exc
        log_event(
            logger,
            logging.INFO,
            "worktree.created",
            ticket=ticket_id,
            path=path,
            branch=branch,
        )
        return path

    async def create_workspace(
        self, repo_path: Path, ticket_id: str, base_branch: str
    ) -> Path:
        return await asyncio.to_thread(self._create, repo_path, ticket_id, base_branch)

    def _remove(
        self, repo_path: Path, ticket_id: str, *, delete_remote_branch: bool
    ) -> None:
        git_dir = resolve_git_dir(repo_path)
        path = self.worktree_path(repo_path, ticket_id)
        branch = self.branch_name(ticket_id)
        steps: list[tuple[str, list[str]]] = [
            ("worktree_remove", ["worktree", "remove", str(path), "--force"]),
            ("branch_delete", ["branch", "-D", branch]),
        ]
        if delete_remote_branch:
            steps.append(("remote_branch_delete", ["push", "origin", "--delete", branch]))
        for step, args in steps:
            # Each piece may already be gone.
            result = run_git(args, git_dir, check=False)
            if result.returncode != 0:
                log_event(
                    logger,
                    logging.DEBUG,
                    "worktree.cleanup_step_skipped",
                    ticket=ticket_id,
                    step=step,
                    stderr=(result.stderr or "").strip()[:200],
                )
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
            run_git(["worktree", "prune"], git_dir, check=False)
        log_event(
            logger,
            logging.INFO,
            "worktree.removed",
            ticket=ticket_id,
            remote_deleted=delete_remote_branch,
        )

    async def remove_workspace(
        self, repo_path: Path, ticket_id: str, *, delete_remote_branch: bool = False
    ) -> None:
        await asyncio.to_thread(
            self._remove, repo_path, ticket_id, delete_remote_branch=delete_remote_branch
        )

    def _push(self, workspace_path: Path, branch: str) -> None:
        validate_branch_name(branch)
        try:
            run_git(
                ["push", "-u", "origin", branch],
                workspace_path,
                timeout_seconds=PUSH_TIMEOUT_SECONDS,
            )
        except GitError as exc:
            raise WorkspaceError(f"Failed to push {branch}: {exc}") from exc
        log_event(logger, logging.INFO, "worktree.pushed", branch=branch)

    async def push(self, workspace_path: Path, branch: str) -> None:
        await asyncio.to_thread(self._push, workspace_path, branch)

    def _has_new_commits(self, workspace_path: Path, base_branch: str) -> bool:
        validate_branch_name(base_branch)
        try:
            result = run_git(
                ["log", f"origin/{base_branch}..HEAD", "--oneline"], workspace_path
            )
        except GitError as exc:
            raise WorkspaceError(f"Failed to check commits: {exc}") from exc
        return bool(result.stdout.strip())

    async def has_new_commits(self, workspace_path: Path, base_branch: str) -> bool:
        return await asyncio.to_thread(self._has_new_commits, workspace_path, base_branch)


__all__ = ["BRANCH_PREFIX", "GitWorktreeManager", "WORKTREE_DIRNAME", "resolve_git_dir"]
