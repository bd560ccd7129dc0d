# Copyright (c) Syntropy Systems
"""conclave audit, classify and reframe commands."""
from __future__ import annotations

from typing import Optional

import typer

from conclave.cli.common import cli_errors, console, open_context, select_experiment
from conclave.review import classify as run_classify
from conclave.review import reframe as run_reframe
from conclave.review import run_audit


def audit(
    objective: Optional[str] = typer.Argument(
        None, help="Objective to audit against (default: project.objective)"
    ),
) -> None:
    """Ask whether the problem classification still holds."""
    with open_context() as ctx, cli_errors():
        output = run_audit(ctx, objective)
    if output.verdict == "reclassify":
        console.print(
            f"[yellow]Re-classify from[/yellow] {output.reclassify_from or '(unnamed sub-type)'}"
        )
    else:
        console.print("[green]Classification confirmed, continue.[/green]")
    if output.reasoning:
        console.print(f"  {output.reasoning}")


def classify(
    domain: str = typer.Argument(..., help="Problem domain to split into sub-types"),
) -> None:
    """Classify the problem domain into sub-types."""
    with open_context() as ctx, cli_errors():
        output = run_classify(ctx, domain)
    for entry in output.sub_types:
        console.print(f"[bold]{entry.name}[/bold] {entry.description}")
        for constraint in entry.constraints:
            console.print(f"  [dim]-[/dim] {constraint}")


def reframe(
    slug: Optional[str] = typer.Argument(None, help="Experiment to reframe (default: the project)"),
) -> None:
    """Restate the problem independently of its classification."""
    with open_context() as ctx, cli_errors():
        experiment = select_experiment(ctx, slug) if slug else None
        output = run_reframe(ctx, experiment)
    console.print(output.decomposition)
    for divergence in output.divergences:
        console.print(f"  [yellow]diverges:[/yellow] {divergence}")
