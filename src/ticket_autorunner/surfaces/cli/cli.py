import typer

from .commands.proposals import register_proposals_commands
from .commands.review import register_review_commands
from .commands.roles import register_roles_commands
from .commands.run import register_run_commands
from .commands.utils import (
    echo_json as _echo_json,
)
from .commands.utils import (
    get_version,
)
from .commands.utils import (
    raise_exit as _raise_exit,
)
from .commands.utils import (
    require_config as _require_config,
)
from .commands.utils import (
    require_runtime as _require_runtime,
)
from .commands.utils import (
    run_with_runtime as _run_with_runtime,
)

app = typer.Typer(add_completion=False)
roles_app = typer.Typer(add_completion=False, help="Inspect the role registry.")
proposals_app = typer.Typer(
    add_completion=False, help="Review capability escalation proposals."
)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"ticket-autorunner {get_version()}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    # Subcommands implement behavior; `--version` is handled eagerly.
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


register_run_commands(
    app,
    require_config=_require_config,
    require_runtime=_require_runtime,
    run_with_runtime=_run_with_runtime,
    raise_exit=_raise_exit,
)
register_review_commands(
    app,
    require_config=_require_config,
    raise_exit=_raise_exit,
    echo_json=_echo_json,
)
app.add_typer(roles_app, name="roles")
register_roles_commands(
    roles_app,
    require_config=_require_config,
    raise_exit=_raise_exit,
    echo_json=_echo_json,
)
app.add_typer(proposals_app, name="proposals")
register_proposals_commands(
    proposals_app,
    require_config=_require_config,
    require_runtime=_require_runtime,
    run_with_runtime=_run_with_runtime,
    raise_exit=_raise_exit,
    echo_json=_echo_json,
)


if __name__ == "__main__":
    main()
