# Copyright (c) Syntropy Systems
"""Lifecycle step commands: one agent step per invocation, or an automatic loop."""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Optional

import typer

from conclave.cli.common import (
    GRADE_STYLES,
    STATUS_STYLES,
    cli_errors,
    console,
    install_shutdown_handler,
    open_context,
    select_experiment,
    styled,
)
from conclave.cycle import (
    compression_due,
    do_compress,
    enforce_breaker,
    next_step,
    resolve_step,
    run_step,
)
from conclave.loop import describe, drive_experiment, run_goal
from conclave.state import ExperimentStatus, is_terminal

if TYPE_CHECKING:
    from conclave.loop import DriveResult
    from conclave.resolve import ResolutionOutcome

S = ExperimentStatus

_SLUG_HELP = "Experiment slug (default: latest active)"


def _run(slug: Optional[str], target: ExperimentStatus) -> None:
    with open_context() as ctx, cli_errors():
        experiment = select_experiment(ctx, slug)
        result = run_step(ctx, experiment, target)
        experiment = result.experiment
        console.print(f"{experiment.slug}: {styled(experiment.status, STATUS_STYLES)}")
        if experiment.gate_rejection_reason:
            console.print(f"[yellow]Gate rejected:[/yellow] {experiment.gate_rejection_reason}")


def gate(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Ask the gatekeeper whether to build the hypothesis."""
    _run(slug, S.GATED)


def build(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Run the builder and commit its changes."""
    _run(slug, S.BUILDING)


def challenge(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Run the adversary against the built change."""
    _run(slug, S.CHALLENGED)


def doubt(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Run the critic against the builder's decisions."""
    _run(slug, S.DOUBTED)


def scout(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Look for alternative approaches."""
    _run(slug, S.SCOUTED)


def verify(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Grade each component of the change."""
    _run(slug, S.VERIFIED)


def _print_resolution(slug: str, outcome: ResolutionOutcome) -> None:
    console.print(
        f"{slug}: grade {styled(outcome.grade, GRADE_STYLES)}, "
        f"status {styled(outcome.status.value, STATUS_STYLES)}"
    )
    for violation in outcome.gate_violations:
        console.print(
            f"  [red]gate regression[/red] {violation.fixture}/{violation.metric}: "
            f"{violation.before} -> {violation.after}"
        )
    if outcome.low_confidence:
        console.print("  [yellow]low confidence: grades came from fallback extraction[/yellow]")
    if outcome.breaker_tripped:
        console.print("  [red]circuit breaker tripped, policy review required[/red]")
    if outcome.merge_error:
        console.print(f"  [red]merge failed, experiment held:[/red] {outcome.merge_error}")


def resolve(slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP)) -> None:
    """Turn verification grades into merge, retry or abandon."""
    with open_context() as ctx, cli_errors():
        experiment = select_experiment(ctx, slug)
        _print_resolution(experiment.slug, resolve_step(ctx, experiment))


def compress() -> None:
    """Rewrite the synthesis document."""
    with open_context() as ctx, cli_errors():
        size = do_compress(ctx)
        console.print(f"[green]Synthesis compressed[/green] ({size} chars)")


def _print_drive(result: DriveResult) -> None:
    experiment = result.experiment
    console.print(
        f"{experiment.slug}: {styled(experiment.status, STATUS_STYLES)} "
        f"after {result.steps} step(s), stopped: {result.stopped}"
    )
    if result.resolution is not None:
        _print_resolution(experiment.slug, result.resolution)
    if result.failures:
        console.print(f"  [yellow]{len(result.failures)} failed attempt(s)[/yellow]")


def next_cmd(
    slug: Optional[str] = typer.Argument(None, help=_SLUG_HELP),
    auto: bool = typer.Option(
        False,
        "--auto",
        help="Keep stepping until terminal, paused or out of budget",
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the next step as JSON without running it",
    ),
) -> None:
    """Run the next step of an experiment."""
    with open_context() as ctx, cli_errors():
        experiment = select_experiment(ctx, slug)
        if as_json:
            typer.echo(json.dumps(describe(ctx, experiment)))
            return
        if is_terminal(experiment.status):
            console.print(f"Experiment {experiment.slug} is terminal ({experiment.status}).")
            return
        if compression_due(ctx):
            console.print("[yellow]Compression is due. Consider running: conclave compress[/yellow]")

        if auto:
            install_shutdown_handler(ctx)
            _print_drive(drive_experiment(ctx, experiment))
            return

        if enforce_breaker(ctx, experiment):
            console.print(
                f"[red]Circuit breaker tripped for sub-type '{experiment.sub_type}'.[/red] "
                f"{experiment.slug} is now a dead-end; see the purpose audit in docs/audits."
            )
            return

        target = next_step(ctx, experiment)
        console.print(f"{experiment.slug}: {experiment.status} -> {target.value}")
        result = run_step(ctx, experiment, target)
        if result.resolution is not None:
            _print_resolution(result.experiment.slug, result.resolution)
        else:
            console.print(f"{result.experiment.slug}: {styled(result.experiment.status, STATUS_STYLES)}")


def run(
    goal: str = typer.Argument(..., help="What the experiments should achieve"),
    max_experiments: Optional[int] = typer.Option(
        None,
        "--max-experiments", "-n",
        help="Stop after this many experiments (default: cycle.max_experiments)",
    ),
) -> None:
    """Plan and drive experiments until the goal is met."""
    with open_context() as ctx, cli_errors():
        install_shutdown_handler(ctx)
        goal_run = run_goal(ctx, goal, max_experiments)
        for result in goal_run.results:
            _print_drive(result)
        if goal_run.goal_met:
            console.print("[green]Goal met.[/green]")
        else:
            console.print(f"[yellow]Stopped:[/yellow] {goal_run.stopped}")
