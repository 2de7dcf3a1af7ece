"""Run the ``claude`` CLI headlessly under a role's capability list."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Sequence

from ..core.config import AgentConfig
from ..core.logging_utils import log_event
from ..core.process import run_process
from ..tickets.models import AgentRunResult

logger = logging.getLogger("ticket_autorunner.agents.executor")


def build_claude_argv(
    config: AgentConfig,
    *,
    model: str,
    max_turns: int,
    max_budget_usd: float,
    capabilities: Sequence[str],
) -> list[str]:
    argv = [
        config.binary,
        "-p",
        "--model",
        model,
        "--max-turns",
        str(max_turns),
        "--max-budget-usd",
        f"{max_budget_usd:g}",
        "--output-format",
        "json",
        *config.extra_args,
    ]
    if capabilities:
        argv.extend(["--allowedTools", *capabilities])
    return argv


def reports_error(stdout: str) -> bool:
    """True when the JSON envelope says the run ended in error (e.g. max turns)."""
    try:
        payload = json.loads(stdout)
    except (TypeError, ValueError):
        return False
    return isinstance(payload, dict) and payload.get("is_error") is True


class ClaudeCliExecutor:
    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    async def execute(
        self,
        *,
        prompt: str,
        cwd: Path,
        capabilities: Sequence[str],
        max_turns: int,
        max_budget_usd: float,
        timeout_seconds: float,
        model: str,
        context: str,
    ) -> AgentRunResult:
        argv = build_claude_argv(
            self._config,
            model=model,
            max_turns=max_turns,
            max_budget_usd=max_budget_usd,
            capabilities=capabilities,
        )
        log_event(
            logger,
            logging.INFO,
            "agent.spawn",
            context=context,
            model=model,
            max_turns=max_turns,
            max_budget_usd=max_budget_usd,
            capabilities=len(capabilities),
        )
        started = time.monotonic()
        try:
            result = await run_process(
                argv, cwd, input_text=prompt, timeout_seconds=timeout_seconds
            )
        except OSError as exc:
            log_event(logger, logging.ERROR, "agent.spawn_failed", context=context, exc=exc)
            return AgentRunResult(
                succeeded=False,
                stdout="",
                stderr=f"Failed to launch {self._config.binary}: {exc}",
                exit_indicator=None,
                duration_seconds=time.monotonic() - started,
            )

        if result.timed_out:
            log_event(
                logger,
                logging.ERROR,
                "agent.timed_out",
                context=context,
                timeout_seconds=timeout_seconds,
            )
            return AgentRunResult(
                succeeded=False,
                stdout=result.stdout,
                stderr=f"Agent timed out after {timeout_seconds:g}s",
                exit_indicator="timeout",
                duration_seconds=result.duration_seconds,
                timed_out=True,
            )

        succeeded = result.returncode == 0 and not reports_error(result.stdout)
        log_event(
            logger,
            logging.INFO if succeeded else logging.ERROR,
            "agent.finished",
            context=context,
            exit_code=result.returncode,
            duration_seconds=round(result.duration_seconds, 1),
            stderr=result.stderr[:500] if not succeeded else None,
        )
        return AgentRunResult(
            succeeded=succeeded,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_indicator=str(result.returncode),
            duration_seconds=result.duration_seconds,
        )


__all__ = ["ClaudeCliExecutor", "build_claude_argv", "reports_error"]
