from pathlib import Path
from typing import Callable, Optional

import typer

from ....tickets.models import DrainOptions, RunOptions

CONFIG_HELP = "Path to ticket-autorunner.yml"


def _run_options(
    model: Optional[str],
    max_turns: Optional[int],
    max_budget: Optional[float],
    max_attempts: Optional[int],
    dry_run: bool,
) -> RunOptions:
    return RunOptions(
        model=model,
        max_turns=max_turns,
        max_budget_usd=max_budget,
        max_attempts=max_attempts,
        dry_run=dry_run,
    )


def register_run_commands(
    app: typer.Typer,
    *,
    require_config: Callable,
    require_runtime: Callable,
    run_with_runtime: Callable,
    raise_exit: Callable,
) -> None:
    @app.command("run")
    def run_ticket(
        ticket_id: str = typer.Argument(..., help="Ticket identifier, e.g. ENG-123"),
        model: Optional[str] = typer.Option(None, "--model", help="Agent model"),
        max_turns: Optional[int] = typer.Option(
            None, "--max-turns", min=1, help="Cap on agent turns"
        ),
        max_budget: Optional[float] = typer.Option(
            None, "--max-budget", min=0.01, help="Cap on agent spend (USD)"
        ),
        max_attempts: Optional[int] = typer.Option(
            None, "--max-attempts", min=1, help="Agent attempts before giving up"
        ),
        dry_run: bool = typer.Option(
            False, "--dry-run", help="Fetch the ticket and stop"
        ),
        config_path: Optional[Path] = typer.Option(
            None, "--config", help=CONFIG_HELP
        ),
        verbose: bool = typer.Option(False, "--verbose", "-v"),
    ):
        """Run one ticket through the pipeline."""
        config = require_config(config_path, verbose=verbose)
        runtime = require_runtime(config)
        options = _run_options(model, max_turns, max_budget, max_attempts, dry_run)
        result = run_with_runtime(
            runtime, lambda rt: rt.runner.run(ticket_id.strip().upper(), options)
        )
        if not result.success:
            raise_exit(result.summary_line())
        typer.echo(result.summary_line())

    @app.command("drain")
    def drain(
        label: Optional[str] = typer.Option(
            None, "--label", help="Ready label (defaults to tracker.ready_label)"
        ),
        project: Optional[str] = typer.Option(
            None, "--project", help="Only drain this project"
        ),
        limit: Optional[int] = typer.Option(
            None, "--limit", min=1, help="Max tickets to process"
        ),
        concurrency: Optional[int] = typer.Option(
            None, "--concurrency", min=1, help="Tickets processed in parallel"
        ),
        model: Optional[str] = typer.Option(None, "--model", help="Agent model"),
        max_turns: Optional[int] = typer.Option(None, "--max-turns", min=1),
        max_budget: Optional[float] = typer.Option(None, "--max-budget", min=0.01),
        max_attempts: Optional[int] = typer.Option(None, "--max-attempts", min=1),
        dry_run: bool = typer.Option(
            False, "--dry-run", help="List the tickets that would run"
        ),
        config_path: Optional[Path] = typer.Option(
            None, "--config", help=CONFIG_HELP
        ),
        verbose: bool = typer.Option(False, "--verbose", "-v"),
    ):
        """Run every ready ticket."""
        config = require_config(config_path, verbose=verbose)
        if project is not None and project not in config.projects:
            raise_exit(f"Unknown project: {project}")
        runtime = require_runtime(config)
        options = DrainOptions(
            label=label,
            project=project,
            limit=limit,
            concurrency=concurrency,
            dry_run=dry_run,
            run_options=_run_options(
                model, max_turns, max_budget, max_attempts, dry_run
            ),
        )
        results = run_with_runtime(runtime, lambda rt: rt.driver.drain(options))
        for result in results:
            typer.echo(result.summary_line())
        failed = [r for r in results if not r.success]
        typer.echo(
            f"{len(results)} ticket(s): {len(results) - len(failed)} succeeded, "
            f"{len(failed)} failed"
        )
        if failed:
            raise typer.Exit(code=1)
