from pathlib import Path
from typing import Callable, Optional

import typer

from ....agents.registry import RegistryError, ResolvedRole
from ....integrations.wiring import build_registry


def _role_payload(role: ResolvedRole) -> dict:
    return {
        "name": role.name,
        "description": role.description,
        "extends": role.extends,
        "capabilities": list(role.capabilities),
        "max_turns": role.max_turns,
        "max_budget_usd": role.max_budget_usd,
        "audit": role.audit.to_dict(),
    }


def register_roles_commands(
    roles_app: typer.Typer,
    *,
    require_config: Callable,
    raise_exit: Callable,
    echo_json: Callable,
) -> None:
    @roles_app.command("list")
    def roles_list(
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to ticket-autorunner.yml"
        ),
        output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
    ):
        """List registered roles."""
        config = require_config(config_path)
        try:
            roles = build_registry(config).list()
        except RegistryError as exc:
            raise_exit(str(exc), cause=exc)
        if output_json:
            echo_json({"roles": [_role_payload(role) for role in roles]})
            return
        for role in roles:
            parent = f" (extends {role.extends})" if role.extends else ""
            typer.echo(
                f"{role.name}{parent}: {len(role.capabilities)} capabilities, "
                f"{role.max_turns} turns, ${role.max_budget_usd:g}"
            )

    @roles_app.command("show")
    def roles_show(
        name: str = typer.Argument(..., help="Role name"),
        config_path: Optional[Path] = typer.Option(
            None, "--config", help="Path to ticket-autorunner.yml"
        ),
    ):
        """Show one role with its merged capabilities."""
        config = require_config(config_path)
        try:
            role = build_registry(config).resolve(name)
        except RegistryError as exc:
            raise_exit(str(exc), cause=exc)
        echo_json(_role_payload(role))
