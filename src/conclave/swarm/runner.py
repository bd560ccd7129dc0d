# Copyright (c) Syntropy Systems
"""One swarm worker: an experiment driven start to finish in its own worktree."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from conclave.breaker import record_dead_end
from conclave.cycle import create_experiment, refresh
from conclave.db import transaction
from conclave.loop import drive_experiment
from conclave.state import ExperimentStatus, admin_transition_and_persist, is_terminal

if TYPE_CHECKING:
    from conclave.context import AppContext
    from conclave.models.db import ExperimentRecord
    from conclave.swarm.worktree import Worktree

logger = logging.getLogger(__name__)

ContextFactory = Callable[["Worktree"], "AppContext"]


@dataclass
class WorkerResult:
    """Outcome of one worker. error is set when the worker itself crashed."""

    worktree: Worktree
    final_status: str
    grade: Optional[str] = None
    cost_usd: float = 0.0
    steps: int = 0
    error: Optional[str] = None

    @property
    def slug(self) -> str:
        return self.worktree.slug

    @property
    def ok(self) -> bool:
        return self.error is None


def _fail(ctx: AppContext, experiment: ExperimentRecord, error: Exception) -> ExperimentRecord:
    """Dead-end an experiment whose step raised something unrecoverable."""
    experiment = refresh(ctx, experiment)
    if is_terminal(experiment.status):
        return experiment
    with transaction(ctx.conn):
        record_dead_end(
            ctx.conn,
            experiment,
            experiment.hypothesis or experiment.slug,
            f"Process failure: {error}",
            "Worker crashed before reaching a verdict",
            category="procedural",
        )
        admin_transition_and_persist(
            ctx.conn, experiment, ExperimentStatus.DEAD_END, "error_recovery"
        )
    return refresh(ctx, experiment)


def run_worker(ctx_factory: ContextFactory, worktree: Worktree) -> WorkerResult:
    """Create, bootstrap and drive one experiment inside worktree.

    Resolution is store-only; branches are merged by the coordinator. The
    drive is bounded by cycle.max_steps.
    """
    ctx = ctx_factory(worktree)
    label = ctx.label or worktree.number
    try:
        experiment = create_experiment(
            ctx,
            worktree.hypothesis,
            slug=worktree.slug,
            branch=worktree.branch,
            create_branch=False,
        )
        with transaction(ctx.conn):
            admin_transition_and_persist(
                ctx.conn, experiment, ExperimentStatus.REFRAMED, "bootstrap"
            )
        experiment = refresh(ctx, experiment)

        grade: Optional[str] = None
        steps = 0
        try:
            drive = drive_experiment(ctx, experiment, ctx.config.cycle.max_steps, db_only=True)
        except Exception as e:  # noqa: BLE001
            logger.error("[%s] %s failed: %s", label, worktree.slug, e)
            experiment = _fail(ctx, experiment, e)
        else:
            experiment = drive.experiment
            steps = drive.steps
            if drive.resolution is not None:
                grade = drive.resolution.grade

        logger.info("[%s] %s finished as %s (%s)", label, worktree.slug, experiment.status, grade or "-")
        return WorkerResult(
            worktree=worktree,
            final_status=experiment.status,
            grade=grade,
            cost_usd=ctx.agents.total_cost_usd,
            steps=steps,
        )
    finally:
        ctx.close()
