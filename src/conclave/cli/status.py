# Copyright (c) Syntropy Systems
"""conclave status command."""

import typer
from pydantic import TypeAdapter
from rich.table import Table

from conclave.breaker import breaker_states
from conclave.cli.common import STATUS_STYLES, console, open_context, styled
from conclave.cycle import compression_due
from conclave.db import count_finished_since_compression, list_experiments
from conclave.models.db import ExperimentRecord

_EXPERIMENTS_ADAPTER = TypeAdapter(list[ExperimentRecord])


def status(
    all_experiments: bool = typer.Option(
        False,
        "--all", "-a",
        help="Include merged and dead-ended experiments",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print experiments as JSON",
    ),
) -> None:
    """Show experiments, circuit breakers and compression state."""
    with open_context() as ctx:
        experiments = list_experiments(ctx.conn, active_only=not all_experiments)
        if as_json:
            typer.echo(_EXPERIMENTS_ADAPTER.dump_json(experiments, indent=2).decode("utf-8"))
            return

        threshold = ctx.config.cycle.circuit_breaker_threshold
        tripped = [b for b in breaker_states(ctx.conn, threshold) if b.tripped]
        finished = count_finished_since_compression(ctx.conn)
        due = compression_due(ctx)

    if ctx.config.project_name:
        console.print(f"[bold]{ctx.config.project_name}[/bold]")

    if not experiments:
        console.print("[dim]No active experiments[/dim]")
    else:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Slug")
        table.add_column("Status")
        table.add_column("Sub-type", style="dim")
        table.add_column("Hypothesis")
        table.add_column("Notes", style="dim")

        for experiment in experiments:
            notes = experiment.gate_rejection_reason or experiment.last_failure or ""
            table.add_row(
                experiment.slug,
                styled(experiment.status, STATUS_STYLES),
                experiment.sub_type or "-",
                experiment.hypothesis or "-",
                notes[:60] or "-",
            )
        console.print(table)

    for breaker in tripped:
        console.print(
            f"[red]Circuit breaker tripped:[/red] {breaker.sub_type} "
            f"({breaker.failures}/{breaker.threshold} failures)"
        )

    note = " [yellow](compression due)[/yellow]" if due else ""
    console.print(f"[dim]{finished} experiment(s) finished since last compression[/dim]{note}")
