from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Optional, Sequence

DEFAULT_GIT_TIMEOUT_SECONDS = 30

_BRANCH_NAME_RE = re.compile(r"^[A-Za-z0-9._\-/]+$")


class GitError(Exception):
    """Raised when git cannot be run or a checked command fails."""

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def validate_branch_name(name: str) -> str:
    """Reject branch names with characters outside a conservative allowlist."""
    if not name or not _BRANCH_NAME_RE.match(name) or ".." in name:
        raise GitError(
            f"Invalid branch name: {name!r}. Must match {_BRANCH_NAME_RE.pattern}"
        )
    return name


def run_git(
    args: Sequence[str],
    cwd: Path,
    *,
    check: bool = True,
    timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS,
) -> subprocess.CompletedProcess[str]:
    """Run ``git`` with an argument vector (never through a shell)."""
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise GitError("git binary not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise GitError(
            f"git {' '.join(args[:2])} timed out after {timeout_seconds}s"
        ) from exc
    if check and proc.returncode != 0:
        detail = (proc.stderr or proc.stdout or "").strip() or f"exit {proc.returncode}"
        raise GitError(
            f"git {' '.join(args[:2])} failed: {detail}",
            returncode=proc.returncode,
            stderr=proc.stderr,
        )
    return proc


__all__ = ["DEFAULT_GIT_TIMEOUT_SECONDS", "GitError", "run_git", "validate_branch_name"]
