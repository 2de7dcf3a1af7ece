import asyncio
from pathlib import Path
from typing import Callable, Optional

import typer

from ....agents.executor import ClaudeCliExecutor
from ....agents.registry import RegistryError
from ....core.config import ConfigError
from ....integrations.wiring import build_registry
from ....tickets.review import review_pull_request


def register_review_commands(
    app: typer.Typer,
    *,
    require_config: Callable,
    raise_exit: Callable,
    echo_json: Callable,
) -> None:
    @app.command("review")
    def review(
        pr_url: str = typer.Argument(..., help="GitHub pull request URL"),
        project: Optional[str] = typer.Option(
            None, "--project", help="Project to review in (detected from the URL)"
        ),
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to ticket-autorunner.yml"
        ),
        verbose: bool = typer.Option(False, "--verbose", "-v"),
    ):
        """Review an existing pull request with the read-only review role."""
        config = require_config(config_path, verbose=verbose)
        try:
            registry = build_registry(config)
            target = config.project(project) if project else None
        except (ConfigError, RegistryError) as exc:
            raise_exit(str(exc), cause=exc)
        try:
            verdict = asyncio.run(
                review_pull_request(
                    pr_url,
                    config=config,
                    registry=registry,
                    executor=ClaudeCliExecutor(config.agent),
                    project=target,
                )
            )
        except (ConfigError, RegistryError) as exc:
            raise_exit(str(exc), cause=exc)
        echo_json(verdict.to_dict())
        if not verdict.approved:
            raise typer.Exit(code=1)
