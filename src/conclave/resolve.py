# Copyright (c) Syntropy Systems
"""Resolution engine: verification grades and metrics into merge, retry or abandon."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from conclave.agents.roles import synthesis_path, truncate_context
from conclave.agents.spawn import spawn_agent
from conclave.breaker import record_dead_end
from conclave.db import (
    get_confirmed_doubts,
    get_verifications,
    increment_sub_type_failure,
    insert_verification,
    set_last_failure,
    store_builder_guidance,
    transaction,
)
from conclave.errors import EmptyVerificationSet, SubprocessFailure
from conclave.metrics import compare_metrics, gate_violations
from conclave.models.agent import SynthesiserOutput
from conclave.state import GRADE_ORDER, ExperimentStatus, transition, transition_and_persist

if TYPE_CHECKING:
    from collections.abc import Sequence

    from conclave.context import AppContext
    from conclave.metrics import MetricComparison
    from conclave.models.db import ExperimentRecord, VerificationRecord

logger = logging.getLogger(__name__)

GUIDANCE_MAX_CHARS = 12000
TRUNCATION_MARKER = "\n\n[Earlier iterations truncated]"

_ITERATION_NUMBER = re.compile(r"### Iteration (\d+)")
_ITERATION_SPLIT = re.compile(r"(?=^### Iteration \d+)", re.MULTILINE)
_DEAD_APPROACH = re.compile(r"\[DEAD-APPROACH\]\s*(.+?):\s*(.+)")

AUTO_DEFAULT_NOTE = "No structured verification output. Auto-defaulted to weak."

SYNTHESIS_TASK = (
    "Synthesise the verification report and confirmed doubts into specific, actionable "
    "guidance for the builder's next attempt. Be concrete: which decisions need revisiting, "
    "which assumptions broke, and what constraints the next approach must satisfy."
)


def worst_grade(grades: Sequence[str]) -> str:
    """Most severe grade present: rejected > weak > good > sound."""
    if not grades:
        raise EmptyVerificationSet
    present = set(grades)
    for grade in GRADE_ORDER:
        if grade in present:
            return grade
    msg = f"Unknown grade(s): {sorted(present)}"
    raise ValueError(msg)


def accumulate_guidance(
    existing: Optional[str], new: str, max_chars: int = GUIDANCE_MAX_CHARS
) -> str:
    """Prepend a new iteration section to the accumulated guidance.

    Iteration numbers continue from the highest one still present. When the
    text exceeds max_chars, whole sections are dropped oldest-first. A new
    section that is too long on its own is cut to fit.
    """
    numbers = [int(n) for n in _ITERATION_NUMBER.findall(existing or "")]
    iteration = max(numbers, default=0) + 1
    header = f"### Iteration {iteration} (latest)\n"
    budget = max(max_chars - len(header) - len(TRUNCATION_MARKER), 0)
    block = header + truncate_context(new, budget)
    if not existing:
        return block

    accumulated = f"{block}\n\n---\n\n{existing.replace(' (latest)', '')}"
    if len(accumulated) <= max_chars:
        return accumulated

    result = ""
    for section in _ITERATION_SPLIT.split(accumulated):
        if result and len(result) + len(section) > max_chars:
            result += TRUNCATION_MARKER
            break
        result += section
    return result


def parse_dead_approaches(text: str) -> list[tuple[str, str]]:
    """Find ``[DEAD-APPROACH] name: reason`` markers."""
    return [
        (match.group(1).strip(), match.group(2).strip())
        for match in _DEAD_APPROACH.finditer(text)
    ]


@dataclass
class ResolutionOutcome:
    """What resolution decided for one experiment."""

    grade: str
    status: ExperimentStatus
    merged: bool = False
    gate_violations: list[MetricComparison] = field(default_factory=list)
    low_confidence: bool = False
    dead_end_ids: list[int] = field(default_factory=list)
    breaker_tripped: bool = False
    merge_error: Optional[str] = None

    @property
    def cycled_back(self) -> bool:
        return self.status is ExperimentStatus.BUILDING


def _load_grades(ctx: AppContext, experiment: ExperimentRecord) -> list[VerificationRecord]:
    grades = get_verifications(ctx.conn, experiment.id)
    if grades:
        return grades
    logger.warning("No verification records for %s. Defaulting to weak.", experiment.slug)
    insert_verification(ctx.conn, experiment.id, "auto-default", "weak", notes=AUTO_DEFAULT_NOTE)
    return get_verifications(ctx.conn, experiment.id)


def _move(ctx: AppContext, experiment: ExperimentRecord, target: ExperimentStatus) -> None:
    """VERIFIED -> RESOLVED -> target, inside the caller's transaction."""
    if experiment.status != ExperimentStatus.RESOLVED.value:
        transition_and_persist(ctx.conn, experiment, ExperimentStatus.RESOLVED)
        experiment = experiment.model_copy(update={"status": ExperimentStatus.RESOLVED.value})
    transition_and_persist(ctx.conn, experiment, target)


def _tally(ctx: AppContext, experiment: ExperimentRecord, grade: str) -> None:
    if experiment.sub_type:
        increment_sub_type_failure(ctx.conn, experiment.sub_type, experiment.id, grade)


def merge_branch(ctx: AppContext, experiment: ExperimentRecord) -> Optional[str]:
    """Merge the experiment branch into trunk. Returns why it failed, if it did.

    A failed merge is backed out and recorded as the experiment's last
    failure; the experiment keeps its status so the merge can be retried.
    """
    branch = experiment.branch
    try:
        ctx.git.merge_into_trunk(branch, f"Merge experiment branch {branch}")
    except SubprocessFailure as e:
        try:
            ctx.git.abort_merge()
        except SubprocessFailure as abort_error:
            logger.debug("No merge to abort: %s", abort_error)
        reason = (
            f"Merge of {branch} into trunk failed: {e}. "
            f"Resolve it by hand or fix the branch, then run 'conclave resolve {experiment.slug}'."
        )
        set_last_failure(ctx.conn, experiment.id, reason)
        logger.error("Experiment %s held at %s. %s", experiment.slug, experiment.status, reason)
        return reason
    return None


def _revert(ctx: AppContext, branch: str) -> None:
    """Discard working changes and leave the branch. The branch is kept."""
    try:
        if ctx.git.current_branch() != branch:
            return
        ctx.git.discard_changes()
        ctx.git.checkout(ctx.git.trunk_branch())
    except SubprocessFailure as e:
        logger.warning("Could not switch away from %s, do it manually: %s", branch, e)


def append_fragility(ctx: AppContext, experiment: ExperimentRecord, gaps: list[str]) -> None:
    """Append one dated entry to the fragility map. Never rewrites old entries."""
    path = synthesis_path(ctx.root, "fragility.md")
    path.parent.mkdir(parents=True, exist_ok=True)
    date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    entry = f"\n## From experiment: {experiment.slug} ({date})\n" + "\n".join(gaps) + "\n"
    with path.open("a") as f:
        _ = f.write(entry)


def _synthesise(
    ctx: AppContext, experiment: ExperimentRecord, grades: list[VerificationRecord]
) -> tuple[str, str]:
    """Ask the synthesiser for guidance. Returns (guidance, raw output)."""
    report = "\n".join(
        f"- {g.component}: {g.grade}" + (f" ({g.notes})" if g.notes else "") for g in grades
    )
    doubts = "\n".join(
        f"- DOUBT-{d.id} [{d.severity}]: {d.claim_doubted}"
        for d in get_confirmed_doubts(ctx.conn, experiment.id)
    )
    prompt = (
        f"Experiment: {experiment.slug}\nHypothesis: {experiment.hypothesis or '-'}\n\n"
        f"## Verification Report\n{report}\n\n"
        f"## Confirmed Doubts\n{doubts or 'None'}\n\n"
        f"## Previous Guidance\n{experiment.builder_guidance or 'None'}\n\n"
        f"{SYNTHESIS_TASK}"
    )
    run = spawn_agent(ctx, "synthesiser", prompt, experiment)
    output = run.output
    if isinstance(output, SynthesiserOutput) and output.guidance:
        return output.guidance, run.raw
    return run.raw, run.raw


def _resolve(ctx: AppContext, experiment: ExperimentRecord, *, apply_vcs: bool) -> ResolutionOutcome:
    if experiment.status != ExperimentStatus.RESOLVED.value:
        transition(experiment.status, ExperimentStatus.RESOLVED)

    grades = _load_grades(ctx, experiment)
    overall = worst_grade([g.grade for g in grades])
    low_confidence = any(
        g.extraction_tier in (2, 3) or g.component == "auto-default" for g in grades
    )
    if low_confidence:
        logger.warning(
            "%s: resolving on low-confidence verification data (regex, model rebuilt or "
            "auto-defaulted). Review the verification artifact.",
            experiment.slug,
        )

    violations = gate_violations(compare_metrics(ctx.conn, experiment.id, ctx.config))
    if violations and overall in ("sound", "good"):
        logger.warning("Gate fixture regression detected, blocking merge:")
        for v in violations:
            logger.warning("  %s / %s: %s -> %s (%+g)", v.fixture, v.metric, v.before, v.after, v.delta)
        guidance = (
            "Gate fixture regression blocks merge. Fix these regressions before re-attempting:\n"
            + "\n".join(f"- {v.fixture} / {v.metric}: was {v.before}, now {v.after}" for v in violations)
        )
        with transaction(ctx.conn):
            _move(ctx, experiment, ExperimentStatus.BUILDING)
            store_builder_guidance(
                ctx.conn, experiment.id, accumulate_guidance(experiment.builder_guidance, guidance)
            )
            _tally(ctx, experiment, "weak")
        logger.warning("Experiment %s CYCLING BACK: gate fixture(s) regressed.", experiment.slug)
        return ResolutionOutcome(
            grade="weak",
            status=ExperimentStatus.BUILDING,
            gate_violations=violations,
            low_confidence=low_confidence,
        )

    if overall in ("sound", "good"):
        if apply_vcs:
            merge_error = merge_branch(ctx, experiment)
            if merge_error is not None:
                return ResolutionOutcome(
                    overall,
                    ExperimentStatus(experiment.status),
                    low_confidence=low_confidence,
                    merge_error=merge_error,
                )

        gaps = [f"- **{g.component}**: {g.notes or 'minor gaps'}" for g in grades if g.grade == "good"]
        if gaps:
            append_fragility(ctx, experiment, gaps)
            if apply_vcs:
                try:
                    ctx.git.commit_all(f"resolve: fragility gaps from {experiment.slug}")
                except SubprocessFailure as e:
                    logger.warning("Could not commit the fragility map: %s", e)
        with transaction(ctx.conn):
            _move(ctx, experiment, ExperimentStatus.MERGED)
            if experiment.last_failure:
                set_last_failure(ctx.conn, experiment.id, None)
        if gaps:
            logger.info(
                "Experiment %s MERGED (good, %d gap(s) added to the fragility map).",
                experiment.slug,
                len(gaps),
            )
        else:
            logger.info("Experiment %s MERGED (all sound).", experiment.slug)
        return ResolutionOutcome(overall, ExperimentStatus.MERGED, apply_vcs, low_confidence=low_confidence)

    if overall == "weak":
        guidance, raw = _synthesise(ctx, experiment, grades)
        dead_end_ids: list[int] = []
        with transaction(ctx.conn):
            _move(ctx, experiment, ExperimentStatus.BUILDING)
            store_builder_guidance(
                ctx.conn, experiment.id, accumulate_guidance(experiment.builder_guidance, guidance)
            )
            _tally(ctx, experiment, "weak")
            for g in grades:
                if g.grade != "rejected":
                    continue
                dead_end_ids.append(
                    record_dead_end(
                        ctx.conn,
                        experiment,
                        f"{g.component} (iteration within {experiment.slug})",
                        g.notes or "rejected by verifier",
                        f"Component {g.component} rejected: {g.notes or 'approach does not work'}",
                    )
                )
            for approach, reason in parse_dead_approaches(raw):
                dead_end_ids.append(record_dead_end(ctx.conn, experiment, approach, reason, reason))
        if dead_end_ids:
            logger.info("Registered %d dead-end(s) for %s.", len(dead_end_ids), experiment.slug)
        logger.warning(
            "Experiment %s CYCLING BACK (weak). Guidance accumulated for the builder.",
            experiment.slug,
        )
        return ResolutionOutcome(
            overall,
            ExperimentStatus.BUILDING,
            low_confidence=low_confidence,
            dead_end_ids=dead_end_ids,
        )

    # rejected
    if apply_vcs:
        _revert(ctx, experiment.branch)
    why_failed = "; ".join(g.notes or "rejected" for g in grades if g.grade == "rejected")
    with transaction(ctx.conn):
        _move(ctx, experiment, ExperimentStatus.DEAD_END)
        dead_end_id = record_dead_end(
            ctx.conn,
            experiment,
            experiment.hypothesis or experiment.slug,
            why_failed,
            f"Approach rejected: {why_failed}",
        )
        _tally(ctx, experiment, "rejected")
    logger.warning(
        "Experiment %s DEAD-ENDED (rejected): %s. Status %s -> dead_end, constraint recorded.",
        experiment.slug,
        why_failed,
        experiment.status,
    )
    return ResolutionOutcome(
        overall, ExperimentStatus.DEAD_END, low_confidence=low_confidence, dead_end_ids=[dead_end_id]
    )


def resolve(ctx: AppContext, experiment: ExperimentRecord) -> ResolutionOutcome:
    """Resolve a verified experiment, merging or reverting its branch."""
    return _resolve(ctx, experiment, apply_vcs=True)


def resolve_db_only(ctx: AppContext, experiment: ExperimentRecord) -> ResolutionOutcome:
    """Same grade logic with every version-control side effect left to the caller.

    A gate cycle-back reports the grade as weak.
    """
    return _resolve(ctx, experiment, apply_vcs=False)
