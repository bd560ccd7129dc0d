# Copyright (c) Syntropy Systems
"""conclave new and revert commands."""
from __future__ import annotations

from typing import Optional

import typer

from conclave.cli.common import cli_errors, console, open_context, select_experiment
from conclave.cycle import create_experiment, revert_experiment


def new(
    hypothesis: str = typer.Argument(..., help="What the experiment sets out to show"),
    sub_type: Optional[str] = typer.Option(
        None,
        "--sub-type", "-s",
        help="Problem sub-type, used by the circuit breaker",
    ),
    depends_on: Optional[str] = typer.Option(
        None,
        "--depends-on",
        help="Slug of an experiment this one builds on",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Create even if the sub-type's circuit breaker has tripped",
    ),
) -> None:
    """Create an experiment and its branch."""
    with open_context() as ctx, cli_errors():
        experiment = create_experiment(
            ctx, hypothesis, sub_type=sub_type, depends_on=depends_on, force=force
        )
        console.print(f"[green]Created experiment[/green] {experiment.slug}")
        console.print(f"  [dim]branch:[/dim] {experiment.branch}")
        if experiment.sub_type:
            console.print(f"  [dim]sub-type:[/dim] {experiment.sub_type}")


def revert(
    slug: Optional[str] = typer.Argument(None, help="Experiment slug (default: latest active)"),
    reason: str = typer.Option(
        "Manually reverted",
        "--reason", "-r",
        help="Why the experiment is abandoned",
    ),
    structural: bool = typer.Option(
        False,
        "--structural",
        help="Record the dead-end as a hard constraint on future work",
    ),
) -> None:
    """Abandon an experiment as a dead-end."""
    with open_context() as ctx, cli_errors():
        experiment = select_experiment(ctx, slug)
        experiment = revert_experiment(ctx, experiment, reason, structural=structural)
        console.print(f"[yellow]Reverted {experiment.slug} to dead-end.[/yellow] Reason: {reason}")
