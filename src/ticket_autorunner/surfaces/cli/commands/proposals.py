from pathlib import Path
from typing import Callable, Optional

import typer

from ....agents.proposals import (
    EscalationProposal,
    ProposalError,
    ProposalStatus,
    ProposalStore,
)
from ....agents.registry import RegistryError

CONFIG_HELP = "Path to ticket-autorunner.yml"


def _proposal_line(proposal: EscalationProposal) -> str:
    missing = ", ".join(proposal.failure_analysis.missing_capabilities) or "-"
    return (
        f"{proposal.id}  {proposal.status.value:<8}  {proposal.ticket_identifier}  "
        f"{proposal.base_role} -> {proposal.proposed_role}  missing: {missing}"
    )


def register_proposals_commands(
    proposals_app: typer.Typer,
    *,
    require_config: Callable,
    require_runtime: Callable,
    run_with_runtime: Callable,
    raise_exit: Callable,
    echo_json: Callable,
) -> None:
    @proposals_app.command("list")
    def proposals_list(
        status: Optional[ProposalStatus] = typer.Option(
            None, "--status", case_sensitive=False, help="Filter by status"
        ),
        config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_HELP),
        output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
    ):
        """List escalation proposals, newest first."""
        config = require_config(config_path)
        proposals = ProposalStore(config.proposals_dir).list(status)
        if output_json:
            echo_json({"proposals": [p.to_dict() for p in proposals]})
            return
        if not proposals:
            typer.echo("No proposals.")
            return
        for proposal in proposals:
            typer.echo(_proposal_line(proposal))

    @proposals_app.command("show")
    def proposals_show(
        proposal_id: str = typer.Argument(..., help="Proposal id"),
        config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_HELP),
    ):
        """Show one proposal."""
        config = require_config(config_path)
        try:
            proposal = ProposalStore(config.proposals_dir).load(proposal_id)
        except ProposalError as exc:
            raise_exit(str(exc), cause=exc)
        echo_json(proposal.to_dict())

    @proposals_app.command("approve")
    def proposals_approve(
        proposal_id: str = typer.Argument(..., help="Proposal id"),
        config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_HELP),
        verbose: bool = typer.Option(False, "--verbose", "-v"),
    ):
        """Approve a proposal: register its role and requeue the ticket."""
        config = require_config(config_path, verbose=verbose)
        runtime = require_runtime(config)
        try:
            proposal = run_with_runtime(
                runtime, lambda rt: rt.proposals.approve(proposal_id)
            )
        except (ProposalError, RegistryError) as exc:
            raise_exit(str(exc), cause=exc)
        typer.echo(
            f"Approved {proposal.id}: role {proposal.proposed_role} registered; "
            f"{proposal.ticket_identifier} requeued."
        )

    @proposals_app.command("reject")
    def proposals_reject(
        proposal_id: str = typer.Argument(..., help="Proposal id"),
        reason: str = typer.Option(..., "--reason", help="Why the proposal is rejected"),
        config_path: Optional[Path] = typer.Option(None, "--config", help=CONFIG_HELP),
        verbose: bool = typer.Option(False, "--verbose", "-v"),
    ):
        """Reject a proposal; the ticket stays parked."""
        config = require_config(config_path, verbose=verbose)
        runtime = require_runtime(config)
        try:
            proposal = run_with_runtime(
                runtime, lambda rt: rt.proposals.reject(proposal_id, reason)
            )
        except ProposalError as exc:
            raise_exit(str(exc), cause=exc)
        typer.echo(f"Rejected {proposal.id} ({proposal.ticket_identifier}).")
