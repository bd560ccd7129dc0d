# Copyright (c) Syntropy Systems
"""Autonomous drivers: run one experiment to completion, or chase a goal."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, cast

from conclave.agents.roles import CONTEXT_LIMITS
from conclave.agents.spawn import require_output, spawn_agent
from conclave.breaker import format_dead_ends
from conclave.cycle import (
    compression_due,
    create_experiment,
    do_compress,
    enforce_breaker,
    next_step,
    refresh,
    run_step,
)
from conclave.db import list_dead_ends, list_experiments, set_last_failure
from conclave.errors import CircuitBreakerTripped, ExtractionFailure, SubprocessFailure
from conclave.state import ExperimentStatus, is_terminal

if TYPE_CHECKING:
    from conclave.context import AppContext
    from conclave.models.agent import PlannerOutput
    from conclave.models.db import ExperimentRecord
    from conclave.resolve import ResolutionOutcome

logger = logging.getLogger(__name__)


@dataclass
class DriveResult:
    """Where an automatic drive stopped and why."""

    experiment: ExperimentRecord
    steps: int
    stopped: str
    resolution: Optional[ResolutionOutcome] = None
    failures: list[str] = field(default_factory=list)


def drive_experiment(
    ctx: AppContext,
    experiment: ExperimentRecord,
    max_steps: Optional[int] = None,
    db_only: bool = False,  # noqa: FBT001, FBT002
) -> DriveResult:
    """Step an experiment until it is terminal, paused, out of budget or shut down.

    stopped is one of: terminal, gate_rejected, circuit_breaker, merge_failed,
    shutdown, step_budget. ExtractionFailure and SubprocessFailure are
    recorded on the experiment and retried within the budget. A tripped
    sub-type breaker is checked before every step.
    """
    budget = max_steps if max_steps is not None else ctx.config.cycle.max_steps
    prefix = f"[{ctx.label}] " if ctx.label else ""
    steps = 0
    resolution: Optional[ResolutionOutcome] = None
    failures: list[str] = []

    while True:
        experiment = refresh(ctx, experiment)
        if is_terminal(experiment.status):
            stopped = "circuit_breaker" if resolution and resolution.breaker_tripped else "terminal"
            break
        if ctx.shutdown.is_set():
            stopped = "shutdown"
            break
        if enforce_breaker(ctx, experiment):
            experiment = refresh(ctx, experiment)
            stopped = "circuit_breaker"
            break
        if steps >= budget:
            logger.warning("%s%s: step budget of %d exhausted", prefix, experiment.slug, budget)
            stopped = "step_budget"
            break

        target = next_step(ctx, experiment)
        steps += 1
        logger.info("%s%s: %s -> %s", prefix, experiment.slug, experiment.status, target.value)
        try:
            result = run_step(ctx, experiment, target, db_only)
        except (ExtractionFailure, SubprocessFailure) as e:
            failures.append(str(e))
            set_last_failure(ctx.conn, experiment.id, str(e))
            logger.warning("%s%s: step failed, will retry: %s", prefix, experiment.slug, e)
            continue

        if result.resolution is not None and result.resolution.merge_error:
            failures.append(result.resolution.merge_error)
            resolution = result.resolution
            experiment = result.experiment
            stopped = "merge_failed"
            break
        if experiment.last_failure:
            set_last_failure(ctx.conn, experiment.id, None)
        if result.resolution is not None:
            resolution = result.resolution
        experiment = result.experiment
        if target is ExperimentStatus.GATED and experiment.gate_rejection_reason:
            stopped = "gate_rejected"
            break

    return DriveResult(experiment, steps, stopped, resolution, failures)


def plan_hypotheses(ctx: AppContext, goal: str, count: int = 1) -> PlannerOutput:
    """Ask the planner for up to count hypotheses toward goal."""
    history = "\n".join(
        f"- {e.slug} [{e.status}]: {e.hypothesis or '-'}" for e in list_experiments(ctx.conn)
    )
    dead_ends = format_dead_ends(list_dead_ends(ctx.conn))[: CONTEXT_LIMITS["dead_ends"]]
    prompt = (
        f"## Goal\n{goal}\n\n"
        f"## Project Objective\n{ctx.config.objective or '-'}\n\n"
        f"## Experiments So Far\n{history or 'None'}\n\n"
        f"## Dead-ends\n{dead_ends or 'None'}\n\n"
    )
    if count > 1:
        prompt += (
            f"Propose {count} hypotheses. Each must attack the problem through a distinct "
            "mechanism. Set goal_met to true if the goal is already achieved."
        )
    else:
        prompt += (
            "Propose the single most promising next hypothesis. "
            "Set goal_met to true if the goal is already achieved."
        )
    return cast("PlannerOutput", require_output("planner", spawn_agent(ctx, "planner", prompt)))


@dataclass
class GoalRun:
    goal_met: bool = False
    results: list[DriveResult] = field(default_factory=list)
    stopped: str = ""


def run_goal(ctx: AppContext, goal: str, max_experiments: Optional[int] = None) -> GoalRun:
    """Plan, create and drive experiments until the planner reports the goal met."""
    limit = max_experiments if max_experiments is not None else ctx.config.cycle.max_experiments
    run = GoalRun()

    for _ in range(limit):
        if ctx.shutdown.is_set():
            run.stopped = "shutdown"
            return run
        try:
            plan = plan_hypotheses(ctx, goal)
        except (ExtractionFailure, SubprocessFailure) as e:
            logger.error("Planning failed: %s", e)
            run.stopped = "planning_failed"
            return run
        if plan.goal_met:
            logger.info("Planner reports the goal is met")
            run.goal_met = True
            run.stopped = "goal_met"
            return run
        if not plan.hypotheses:
            logger.error("Planner proposed no hypothesis")
            run.stopped = "planning_failed"
            return run

        try:
            experiment = create_experiment(ctx, plan.hypotheses[0])
        except CircuitBreakerTripped as e:
            logger.error("%s", e)
            run.stopped = "circuit_breaker"
            return run

        result = drive_experiment(ctx, experiment)
        run.results.append(result)
        if result.stopped in ("shutdown", "gate_rejected", "merge_failed"):
            run.stopped = result.stopped
            return run
        if compression_due(ctx):
            do_compress(ctx)

    run.stopped = "max_experiments"
    return run


def describe(ctx: AppContext, experiment: ExperimentRecord) -> dict[str, object]:
    """Machine-readable view of an experiment and its next step."""
    experiment = refresh(ctx, experiment)
    terminal = is_terminal(experiment.status)
    return {
        "slug": experiment.slug,
        "status": experiment.status,
        "next": None if terminal else next_step(ctx, experiment).value,
        "last_failure": experiment.last_failure,
        "gate_rejection_reason": experiment.gate_rejection_reason,
    }
