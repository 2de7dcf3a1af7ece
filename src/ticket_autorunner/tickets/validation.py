from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ..core.config import ProjectConfig, ValidationConfig
from ..core.logging_utils import log_event
from ..core.process import ProcessResult, run_process
from .models import ValidationResult
from .ports import Workspace

logger = logging.getLogger("ticket_autorunner.tickets.validation")

OUTPUT_EXCERPT_CHARS = 500


def _excerpt(result: ProcessResult) -> str:
    text = (result.stdout or "").strip() or (result.stderr or "").strip()
    return text[-OUTPUT_EXCERPT_CHARS:] if text else f"exit {result.returncode}"


class CommandValidator:
    """Checks an agent's worktree: new commits, tests, lint, optional build.

    Test and build failures are errors; lint failures are warnings only.
    """

    def __init__(self, config: ValidationConfig, workspace: Workspace) -> None:
        self._config = config
        self._workspace = workspace

    async def _run_check(
        self, command: str, cwd: Path, timeout_seconds: float
    ) -> Optional[str]:
        """Run a configured shell command; return a failure detail or ``None``."""
        try:
            result = await run_process(
                ["/bin/sh", "-c", command], cwd, timeout_seconds=timeout_seconds
            )
        except OSError as exc:
            return f"could not run `{command}`: {exc}"
        if result.timed_out:
            return f"`{command}` timed out after {timeout_seconds:g}s"
        if result.returncode != 0:
            return _excerpt(result)
        return None

    async def validate(
        self,
        workspace_path: Path,
        base_branch: str,
        project: ProjectConfig,
        ticket_id: str,
    ) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []

        try:
            if not await self._workspace.has_new_commits(workspace_path, base_branch):
                errors.append("No new commits found. Agent did not commit any changes.")
        except Exception as exc:
            errors.append(f"Failed to check commits: {str(exc)[:200]}")

        failure = await self._run_check(
            project.test_command, workspace_path, self._config.test_timeout_seconds
        )
        if failure is not None:
            errors.append(f"Tests failed: {failure}")

        failure = await self._run_check(
            project.lint_command, workspace_path, self._config.lint_timeout_seconds
        )
        if failure is not None:
            warnings.append(f"Lint issues: {failure}")

        if project.build_command:
            failure = await self._run_check(
                project.build_command, workspace_path, self._config.build_timeout_seconds
            )
            if failure is not None:
                errors.append(f"Build failed: {failure}")

        log_event(
            logger,
            logging.INFO if not errors else logging.WARNING,
            "validation.finished",
            ticket=ticket_id,
            errors=len(errors),
            warnings=len(warnings),
        )
        return ValidationResult(
            valid=not errors, errors=tuple(errors), warnings=tuple(warnings)
        )


__all__ = ["CommandValidator"]
