# Copyright (c) Syntropy Systems
"""conclave baseline, measure and compare commands."""
from __future__ import annotations

from typing import Optional

import typer
from pydantic import TypeAdapter
from rich.table import Table

from conclave.cli.common import cli_errors, console, open_context, select_experiment
from conclave.metrics import MetricComparison, capture_metrics, compare_metrics

_SLUG_HELP = "Experiment slug (default: latest active)"

_COMPARISONS_ADAPTER: TypeAdapter[list[MetricComparison]] = TypeAdapter(list[MetricComparison])


def _capture(slug: Optional[str], phase: str) -> None:
    with open_context() as ctx, cli_errors():
        experiment = select_experiment(ctx, slug)
        count = capture_metrics(ctx, experiment, phase, strict=True)
        if count:
            console.print(f"[green]Captured {count} {phase} metric(s)[/green] for {experiment.slug}")
        else:
            console.print(f"[yellow]The metrics command reported nothing for {experiment.slug}[/yellow]")


def baseline(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Capture metrics before the build."""
    _capture(slug, "before")


def measure(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Capture metrics after the build."""
    _capture(slug, "after")


def compare(
    slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Show tracked metrics before and after, flagging regressions."""
    with open_context() as ctx, cli_errors():
        experiment = select_experiment(ctx, slug)
        comparisons = compare_metrics(ctx.conn, experiment.id, ctx.config)

    if as_json:
        typer.echo(_COMPARISONS_ADAPTER.dump_json(comparisons, indent=2).decode("utf-8"))
        return
    if not comparisons:
        console.print(f"[dim]No tracked metrics in both phases for {experiment.slug}[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Fixture")
    table.add_column("Metric")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Delta", justify="right")
    table.add_column("")
    for c in comparisons:
        fixture = f"{c.fixture} [dim](gate)[/dim]" if c.gate else c.fixture
        verdict = "[red]REGRESSION[/red]" if c.regression else "[green]OK[/green]"
        table.add_row(fixture, c.metric, f"{c.before:g}", f"{c.after:g}", f"{c.delta:+g}", verdict)
    console.print(table)
