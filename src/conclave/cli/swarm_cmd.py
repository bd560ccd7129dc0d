# Copyright (c) Syntropy Systems
"""conclave swarm command."""
from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from conclave.cli.common import (
    GRADE_STYLES,
    STATUS_STYLES,
    cli_errors,
    console,
    install_shutdown_handler,
    open_context,
    styled,
)
from conclave.swarm.orchestrator import run_swarm


def swarm(
    goal: str = typer.Argument(..., help="What the parallel experiments should achieve"),
    parallel: Optional[int] = typer.Option(
        None,
        "--parallel", "-p",
        help="Number of parallel experiments (2 to swarm.max_parallel)",
    ),
) -> None:
    """Run several hypotheses in parallel worktrees and keep the best."""
    with open_context() as ctx, cli_errors():
        install_shutdown_handler(ctx)
        summary = run_swarm(ctx, goal, parallel)

    if summary.goal_met:
        console.print("[green]Planner reports the goal is already met.[/green]")
        return
    if not summary.results:
        console.print("[red]Error:[/red] No swarm workers could be started")
        raise typer.Exit(1)

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", style="dim")
    table.add_column("Experiment")
    table.add_column("Grade")
    table.add_column("Status")
    table.add_column("Steps")
    table.add_column("Cost")

    for result in summary.results:
        winner = " [bold green]*[/bold green]" if result is summary.winner else ""
        if result.error:
            status = f"[red]error[/red] {result.error[:50]}"
        else:
            status = styled(result.final_status, STATUS_STYLES)
        table.add_row(
            result.worktree.number,
            f"{result.slug}{winner}",
            styled(result.grade, GRADE_STYLES) if result.grade else "-",
            status,
            str(result.steps),
            f"${result.cost_usd:.2f}",
        )
    console.print(table)

    if summary.winner is not None:
        console.print(f"[green]Winner:[/green] {summary.winner.slug} ({summary.winner.grade})")
        if summary.merge_error:
            console.print(
                f"[red]Not merged:[/red] {summary.merge_error}\n"
                f"  Branch {summary.winner.worktree.branch} was kept for a manual merge."
            )
    else:
        console.print("[yellow]No experiment was good enough to merge[/yellow]")
    console.print(
        f"[dim]merged: {summary.merged_count}, dead-ends: {summary.dead_end_count}, "
        f"errors: {summary.error_count}, cost: ${summary.total_cost_usd:.2f}[/dim]"
    )
