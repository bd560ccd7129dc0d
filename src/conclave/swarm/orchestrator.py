# Copyright (c) Syntropy Systems
"""Swarm coordinator: plan, fan out across worktrees, aggregate, merge."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from conclave.context import AppContext
from conclave.cycle import slugify
from conclave.db import (
    add_swarm_member,
    create_swarm_run,
    get_experiment_by_slug,
    transaction,
    update_swarm_member,
    update_swarm_run,
)
from conclave.errors import ConclaveError, DirtyWorkingTree, ExtractionFailure, SubprocessFailure
from conclave.loop import plan_hypotheses
from conclave.resolve import resolve
from conclave.state import ExperimentStatus
from conclave.swarm.aggregate import aggregate, select_winner
from conclave.swarm.runner import WorkerResult, run_worker
from conclave.swarm.worktree import (
    cleanup_worktree,
    create_worktree,
    initialize_worktree,
    remove_orphaned_worktrees,
)

if TYPE_CHECKING:
    from conclave.swarm.runner import ContextFactory
    from conclave.swarm.worktree import Worktree

logger = logging.getLogger(__name__)

MIN_PARALLEL = 2
MIN_HYPOTHESIS_CHARS = 10


@dataclass
class SwarmSummary:
    goal: str
    parallel: int
    run_id: int
    results: list[WorkerResult] = field(default_factory=list)
    winner: Optional[WorkerResult] = None
    merged_count: int = 0
    dead_end_count: int = 0
    error_count: int = 0
    total_cost_usd: float = 0.0
    goal_met: bool = False
    merge_error: Optional[str] = None


def clamp_parallel(ctx: AppContext, requested: Optional[int]) -> int:
    """Worker count within [2, swarm.max_parallel]."""
    count = requested if requested is not None else ctx.config.swarm.default_parallel
    return max(MIN_PARALLEL, min(count, ctx.config.swarm.max_parallel))


def derive_hypotheses(ctx: AppContext, goal: str, count: int) -> list[str]:
    """Up to count distinct hypotheses for goal, or [] if it is already met.

    Falls back to the goal itself when the planner gives nothing usable.
    """
    try:
        plan = plan_hypotheses(ctx, goal, count)
    except (ExtractionFailure, SubprocessFailure) as e:
        logger.warning("Planner failed, using the goal as the only hypothesis: %s", e)
        return [goal]

    if plan.goal_met:
        return []

    hypotheses: list[str] = []
    for text in plan.hypotheses:
        text = text.strip()
        if len(text) > MIN_HYPOTHESIS_CHARS and text not in hypotheses:
            hypotheses.append(text)
    if not hypotheses:
        logger.warning("Planner proposed nothing usable, using the goal as the only hypothesis")
        return [goal]
    return hypotheses[:count]


def _batch_slugs(ctx: AppContext, hypotheses: list[str]) -> list[str]:
    """Slugs unique against the canonical store and within the batch."""
    taken: set[str] = set()
    slugs: list[str] = []
    for hypothesis in hypotheses:
        base = slugify(hypothesis)
        slug, n = base, 2
        while slug in taken or get_experiment_by_slug(ctx.conn, slug) is not None:
            slug = f"{base}-{n}"
            n += 1
        taken.add(slug)
        slugs.append(slug)
    return slugs


def worker_context_factory(ctx: AppContext) -> ContextFactory:
    """Open an independent context rooted at each worktree."""

    def factory(worktree: Worktree) -> AppContext:
        return AppContext.open(
            worktree.path,
            config=ctx.config,
            shutdown=ctx.shutdown,
            label=f"swarm-{worktree.number}",
        )

    return factory


def _run_workers(factory: ContextFactory, worktrees: list[Worktree]) -> list[WorkerResult]:
    """Run every worker to completion; a crash becomes an error result."""
    results: list[WorkerResult] = []
    with ThreadPoolExecutor(max_workers=len(worktrees), thread_name_prefix="swarm") as pool:
        futures = [(wt, pool.submit(run_worker, factory, wt)) for wt in worktrees]
        for worktree, future in futures:
            try:
                results.append(future.result())
            except Exception as e:  # noqa: BLE001
                logger.error("Worker %s crashed: %s", worktree.slug, e)
                results.append(WorkerResult(worktree=worktree, final_status="error", error=str(e)))
    return results


def _merge_winner(ctx: AppContext, winner: WorkerResult) -> Optional[str]:
    """Resolve the imported winner on the canonical store, as for a single experiment.

    Returns why the winner was not merged, if it was not. After a failed
    merge the experiment stays at VERIFIED with the failure recorded.
    """
    experiment = get_experiment_by_slug(ctx.conn, winner.slug)
    if experiment is None:
        return f"Winner {winner.slug} is missing from the canonical store"
    try:
        outcome = resolve(ctx, experiment)
    except ConclaveError as e:
        logger.error("Could not resolve winner %s: %s", winner.slug, e)
        return str(e)
    if outcome.merge_error is None and outcome.status is not ExperimentStatus.MERGED:
        reason = f"Winner {winner.slug} resolved to {outcome.status.value} instead of merging"
        logger.warning("%s", reason)
        return reason
    return outcome.merge_error


def run_swarm(
    ctx: AppContext,
    goal: str,
    parallel: Optional[int] = None,
    ctx_factory: Optional[ContextFactory] = None,
) -> SwarmSummary:
    """Run up to parallel experiments on goal and keep the best one.

    Requires a clean working tree. Worktrees are always removed, even
    when workers or aggregation fail; a winner whose merge failed keeps
    its branch.
    """
    try:
        clean = ctx.git.is_clean()
    except SubprocessFailure as e:
        raise DirtyWorkingTree(str(e)) from e
    if not clean:
        raise DirtyWorkingTree

    count = clamp_parallel(ctx, parallel)
    with transaction(ctx.conn):
        run_id = create_swarm_run(ctx.conn, goal, count)
    summary = SwarmSummary(goal=goal, parallel=count, run_id=run_id)

    hypotheses = derive_hypotheses(ctx, goal, count)
    if not hypotheses:
        logger.info("Planner reports the goal is already met")
        summary.goal_met = True
        with transaction(ctx.conn):
            update_swarm_run(ctx.conn, run_id, "completed", 0.0, None)
        return summary

    remove_orphaned_worktrees(ctx.git, ctx.root)

    worktrees: list[Worktree] = []
    for index, (hypothesis, slug) in enumerate(zip(hypotheses, _batch_slugs(ctx, hypotheses))):
        number = f"{index + 1:03d}"
        try:
            worktree = create_worktree(ctx.git, ctx.root, slug, number, hypothesis)
        except SubprocessFailure as e:
            logger.warning("Could not create worktree for %s: %s", slug, e)
            continue
        worktrees.append(worktree)
        try:
            initialize_worktree(ctx.root, worktree)
        except OSError as e:
            logger.warning("Could not initialize worktree %s: %s", worktree.path, e)
            cleanup_worktree(ctx.git, worktree)
            worktrees.pop()
            continue
        with transaction(ctx.conn):
            add_swarm_member(ctx.conn, run_id, slug, str(worktree.path))

    if not worktrees:
        logger.error("No worktrees could be created")
        with transaction(ctx.conn):
            update_swarm_run(ctx.conn, run_id, "failed", 0.0, None)
        return summary

    factory = ctx_factory or worker_context_factory(ctx)
    logger.info("Running %d swarm worker(s)", len(worktrees))
    try:
        summary.results = _run_workers(factory, worktrees)
        summary.total_cost_usd = sum(r.cost_usd for r in summary.results)
        summary.error_count = sum(1 for r in summary.results if not r.ok)

        with transaction(ctx.conn):
            for result in summary.results:
                update_swarm_member(
                    ctx.conn,
                    run_id,
                    result.slug,
                    result.final_status,
                    result.grade,
                    result.cost_usd,
                    result.error,
                )

        winner = select_winner(summary.results)
        imported = aggregate(ctx.conn, summary.results, winner)
        summary.error_count += len(imported.failed)
        if winner is not None and winner.slug in imported.imported:
            summary.winner = winner
            summary.merge_error = _merge_winner(ctx, winner)

        for slug in imported.imported:
            experiment = get_experiment_by_slug(ctx.conn, slug)
            if experiment is None:
                continue
            if experiment.status == ExperimentStatus.MERGED.value:
                summary.merged_count += 1
            elif experiment.status == ExperimentStatus.DEAD_END.value:
                summary.dead_end_count += 1

        status = "failed" if summary.error_count == len(summary.results) else "completed"
        with transaction(ctx.conn):
            update_swarm_run(
                ctx.conn,
                run_id,
                status,
                summary.total_cost_usd,
                summary.winner.slug if summary.winner else None,
            )
    finally:
        for worktree in worktrees:
            held = (
                summary.merge_error is not None
                and summary.winner is not None
                and worktree is summary.winner.worktree
            )
            cleanup_worktree(ctx.git, worktree, keep_branch=held)

    logger.info(
        "Swarm finished: %d merged, %d dead-ended, %d errored, $%.2f",
        summary.merged_count,
        summary.dead_end_count,
        summary.error_count,
        summary.total_cost_usd,
    )
    return summary
