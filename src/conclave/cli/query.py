# Copyright (c) Syntropy Systems
"""conclave dead-ends, decisions and breakers commands."""
from __future__ import annotations

from typing import Optional

import typer
from pydantic import TypeAdapter
from rich.table import Table

from conclave.breaker import breaker_states
from conclave.cli.common import console, open_context
from conclave.db import get_experiment, list_dead_ends, list_decisions
from conclave.models.base import JSONPrimitive
from conclave.models.db import DeadEndRecord, DecisionRecord

_DEAD_ENDS_ADAPTER = TypeAdapter(list[DeadEndRecord])
_DECISIONS_ADAPTER = TypeAdapter(list[DecisionRecord])
_BREAKERS_ADAPTER = TypeAdapter(list[dict[str, JSONPrimitive]])


def dead_ends(
    sub_type: Optional[str] = typer.Option(None, "--sub-type", "-s", help="Filter by sub-type"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """List recorded dead-ends."""
    with open_context() as ctx:
        records = list_dead_ends(ctx.conn, sub_type=sub_type)

    if as_json:
        typer.echo(_DEAD_ENDS_ADAPTER.dump_json(records, indent=2).decode("utf-8"))
        return
    if not records:
        console.print("[dim]No dead-ends recorded[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Category")
    table.add_column("Sub-type", style="dim")
    table.add_column("Approach")
    table.add_column("Why it failed")
    table.add_column("Constraint")

    for record in records:
        style = "red" if record.category == "structural" else "yellow"
        table.add_row(
            f"DE-{record.id}",
            f"[{style}]{record.category}[/{style}]",
            record.sub_type or "-",
            record.approach,
            record.why_failed,
            record.structural_constraint,
        )
    console.print(table)


def decisions(
    level: Optional[str] = typer.Option(
        None,
        "--level", "-l",
        help="Filter by evidence level (proof, test, strong_consensus, consensus, analogy, judgment)",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """List builder decisions and their evidence."""
    with open_context() as ctx:
        records = list_decisions(ctx.conn, evidence_level=level)
        slugs: dict[int, str] = {}
        for record in records:
            if record.experiment_id not in slugs:
                experiment = get_experiment(ctx.conn, record.experiment_id)
                slugs[record.experiment_id] = experiment.slug if experiment else "?"

    if as_json:
        typer.echo(_DECISIONS_ADAPTER.dump_json(records, indent=2).decode("utf-8"))
        return
    if not records:
        console.print("[dim]No decisions recorded[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Experiment")
    table.add_column("Level")
    table.add_column("Status")
    table.add_column("Decision")

    for record in records:
        table.add_row(
            str(record.id),
            slugs[record.experiment_id],
            record.evidence_level,
            record.status,
            record.description,
        )
    console.print(table)


def breakers(
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Show failure counts per sub-type against the breaker threshold."""
    with open_context() as ctx:
        states = breaker_states(ctx.conn, ctx.config.cycle.circuit_breaker_threshold)

    if as_json:
        rows = [
            {
                "sub_type": s.sub_type,
                "failures": s.failures,
                "threshold": s.threshold,
                "tripped": s.tripped,
            }
            for s in states
        ]
        typer.echo(_BREAKERS_ADAPTER.dump_json(rows, indent=2).decode("utf-8"))
        return
    if not states:
        console.print("[dim]No sub-type failures recorded[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Sub-type")
    table.add_column("Failures")
    table.add_column("State")
    for state in states:
        label = "[red]tripped[/red]" if state.tripped else "[green]closed[/green]"
        table.add_row(state.sub_type, f"{state.failures}/{state.threshold}", label)
    console.print(table)
