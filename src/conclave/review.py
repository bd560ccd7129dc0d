# Copyright (c) Syntropy Systems
"""Project-level reviews: classification, reframing and the purpose audit.

These run outside a single experiment's lifecycle. The audit is also run
automatically whenever a sub-type circuit breaker trips.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, cast

from conclave.agents.roles import ARTIFACT_DIRS, CONTEXT_LIMITS, synthesis_path, truncate_context
from conclave.agents.spawn import require_output, spawn_agent
from conclave.breaker import breaker_states, format_dead_ends
from conclave.db import get_experiment, list_dead_ends, list_experiments, transaction
from conclave.errors import ExtractionFailure, SubprocessFailure
from conclave.state import ExperimentStatus, transition_and_persist

if TYPE_CHECKING:
    from pathlib import Path

    from conclave.context import AppContext
    from conclave.models.agent import AuditorOutput, ClassifierOutput, ReframerOutput
    from conclave.models.db import ExperimentRecord

logger = logging.getLogger(__name__)

AUDIT_QUESTIONS = (
    "1. Does the current classification still describe the problem we are solving?\n"
    "2. Are the tripped sub-types failing because the approaches are wrong, or because "
    "the sub-type itself is wrong?\n"
    "3. Do the dead-ends share a cause the classification does not name?\n"
    "4. Should work continue under the current classification?\n\n"
    "Conclude with 'classification confirmed' or 're-classify from <sub-type>'."
)


def classification_dir(root: Path) -> Path:
    return root / ARTIFACT_DIRS["classifier"]


def read_classification(ctx: AppContext) -> str:
    """Every classification document, newest name last, capped for prompts."""
    directory = classification_dir(ctx.root)
    if not directory.is_dir():
        return ""
    parts = [
        f"### {path.name}\n{path.read_text().strip()}"
        for path in sorted(directory.glob("*.md"))
        if not path.name.startswith("_")
    ]
    return truncate_context("\n\n".join(parts), CONTEXT_LIMITS["classification"])


def _synthesis(ctx: AppContext, name: str, limit_key: str) -> str:
    path = synthesis_path(ctx.root, name)
    if not path.exists():
        return ""
    return truncate_context(path.read_text(), CONTEXT_LIMITS[limit_key])


def _dead_ends(ctx: AppContext) -> str:
    return truncate_context(format_dead_ends(list_dead_ends(ctx.conn)), CONTEXT_LIMITS["dead_ends"])


def _commit(ctx: AppContext, message: str) -> None:
    try:
        ctx.git.commit_all(message)
    except SubprocessFailure as e:
        logger.warning("Could not commit %s: %s", message, e)


def audit_prompt(ctx: AppContext, objective: Optional[str] = None) -> str:
    experiments = "\n".join(
        f"- #{e.id} {e.slug}: {e.status}" + (f" ({e.sub_type})" if e.sub_type else "")
        for e in list_experiments(ctx.conn)
    )
    tripped = "\n".join(
        f"- {state.sub_type}: {state.failures} failures (threshold {state.threshold})"
        for state in breaker_states(ctx.conn, ctx.config.cycle.circuit_breaker_threshold)
        if state.tripped
    )
    return (
        f"## Objective\n{objective or ctx.config.objective or '-'}\n\n"
        f"## Classification\n{read_classification(ctx) or 'None recorded'}\n\n"
        f"## Current Synthesis\n{_synthesis(ctx, 'current.md', 'synthesis') or 'None'}\n\n"
        f"## Dead-ends\n{_dead_ends(ctx) or 'None'}\n\n"
        f"## Experiments\n{experiments or 'None'}\n\n"
        f"## Tripped Circuit Breakers\n{tripped or 'None'}\n\n"
        f"{AUDIT_QUESTIONS}"
    )


def run_audit(
    ctx: AppContext,
    objective: Optional[str] = None,
    experiment: Optional[ExperimentRecord] = None,
) -> AuditorOutput:
    """Ask the auditor whether the problem classification still holds.

    Raises ExtractionFailure when no verdict can be read from the answer.
    """
    run = spawn_agent(ctx, "auditor", audit_prompt(ctx, objective), experiment)
    output = cast("AuditorOutput", require_output("auditor", run))
    if output.verdict == "reclassify":
        logger.warning(
            "Purpose audit: re-classify from %s. %s",
            output.reclassify_from or "an unnamed sub-type",
            output.reasoning,
        )
    else:
        logger.info("Purpose audit: classification confirmed")
    return output


def audit_after_trip(ctx: AppContext, experiment: ExperimentRecord) -> Optional[AuditorOutput]:
    """Run the purpose audit for a freshly tripped breaker. Failures are logged."""
    try:
        return run_audit(ctx, experiment=experiment)
    except (ExtractionFailure, SubprocessFailure) as e:
        logger.warning("Purpose audit failed, run 'conclave audit' by hand: %s", e)
        return None


def classify(ctx: AppContext, domain: str) -> ClassifierOutput:
    """Split domain into sub-types and commit the classification document."""
    prompt = (
        f"## Domain\n{domain}\n\n"
        f"## Objective\n{ctx.config.objective or '-'}\n\n"
        f"## Existing Classification\n{read_classification(ctx) or 'None'}\n\n"
        f"## Dead-ends\n{_dead_ends(ctx) or 'None'}\n\n"
        "Classify the domain into sub-types with their canonical forms and constraints."
    )
    run = spawn_agent(ctx, "classifier", prompt)
    output = cast("ClassifierOutput", require_output("classifier", run))
    logger.info("Classified %s into %d sub-type(s)", domain, len(output.sub_types))
    _commit(ctx, f"classify: {domain[:60]}")
    return output


def reframe(ctx: AppContext, experiment: Optional[ExperimentRecord] = None) -> ReframerOutput:
    """Restate the problem independently of its classification.

    An experiment still at CLASSIFIED moves to REFRAMED.
    """
    problem = ctx.config.objective or "-"
    if experiment is not None:
        problem += f"\n\nHypothesis under consideration: {experiment.hypothesis or experiment.slug}"
    prompt = (
        f"## Problem\n{problem}\n\n"
        f"## Classification\n{read_classification(ctx) or 'None recorded'}\n\n"
        f"## Current Synthesis\n{_synthesis(ctx, 'current.md', 'synthesis') or 'None'}\n\n"
        f"## Dead-ends\n{_dead_ends(ctx) or 'None'}\n\n"
        "Decompose the problem from first principles, then list where your decomposition "
        "diverges from the classification above."
    )
    run = spawn_agent(ctx, "reframer", prompt, experiment)
    output = cast("ReframerOutput", require_output("reframer", run))
    if output.divergences:
        logger.warning("Reframe found %d divergence(s) from the classification", len(output.divergences))

    if experiment is not None:
        current = get_experiment(ctx.conn, experiment.id) or experiment
        if current.status == ExperimentStatus.CLASSIFIED.value:
            with transaction(ctx.conn):
                transition_and_persist(ctx.conn, current, ExperimentStatus.REFRAMED)
            logger.info("%s: classified -> reframed", current.slug)
    _commit(ctx, f"reframe: {experiment.slug if experiment is not None else 'project'}")
    return output
