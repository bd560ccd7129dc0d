# Copyright (c) Syntropy Systems
"""Experiment step drivers: one function per lifecycle step."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, cast

from typing_extensions import assert_never

from conclave.agents.roles import CONTEXT_LIMITS, artifact_path, synthesis_path, truncate_context
from conclave.agents.spawn import require_output, spawn_agent
from conclave.breaker import (
    ensure_sub_type_open,
    format_dead_ends,
    is_tripped,
    record_dead_end,
    structural_constraints,
    trip,
)
from conclave.db import (
    count_experiments,
    count_finished_since_compression,
    create_experiment as db_create_experiment,
    get_challenges,
    get_confirmed_doubts,
    get_doubts,
    get_experiment,
    get_experiment_by_slug,
    has_challenges,
    has_doubts,
    insert_challenge,
    insert_decision,
    insert_doubt,
    insert_finding,
    insert_verification,
    list_dead_ends,
    list_decisions,
    record_compression,
    set_gate_rejection,
    transaction,
    update_doubt_resolution,
)
from conclave.errors import ConclaveError, SubprocessFailure
from conclave.metrics import capture_metrics, compare_metrics, has_metrics
from conclave.models.agent import (
    AdversaryOutput,
    AuditorOutput,
    BuilderOutput,
    ClassifierOutput,
    CompressorOutput,
    CriticOutput,
    GatekeeperOutput,
    PlannerOutput,
    ReframerOutput,
    ScoutOutput,
    SynthesiserOutput,
    VerifierOutput,
)
from conclave.resolve import merge_branch, resolve, resolve_db_only
from conclave.review import audit_after_trip
from conclave.state import (
    ExperimentStatus,
    admin_transition_and_persist,
    determine_next_step,
    is_terminal,
    transition,
    transition_and_persist,
    valid_next,
)

if TYPE_CHECKING:
    import sqlite3

    from conclave.agents.parse import ExtractionResult
    from conclave.context import AppContext
    from conclave.models.agent import DoubtResolution
    from conclave.models.db import DoubtRecord, ExperimentRecord
    from conclave.resolve import ResolutionOutcome

logger = logging.getLogger(__name__)

S = ExperimentStatus

DIFF_CHAR_LIMIT = 8000
_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


# --- Experiment creation ---


def slugify(text: str, max_length: int = 40) -> str:
    slug = _SLUG_CHARS.sub("-", text.lower()).strip("-")
    if len(slug) > max_length:
        slug = slug[:max_length].rsplit("-", 1)[0] or slug[:max_length]
    return slug or "experiment"


def unique_slug(conn: sqlite3.Connection, base: str) -> str:
    slug, n = base, 2
    while get_experiment_by_slug(conn, slug) is not None:
        slug = f"{base}-{n}"
        n += 1
    return slug


def create_experiment(
    ctx: AppContext,
    hypothesis: str,
    sub_type: Optional[str] = None,
    depends_on: Optional[str] = None,
    *,
    force: bool = False,
    create_branch: bool = True,
    slug: Optional[str] = None,
    branch: Optional[str] = None,
) -> ExperimentRecord:
    """Register a hypothesis as a new experiment in CLASSIFIED status.

    Refuses a sub-type whose breaker has tripped unless force is set; a
    forced experiment is then exempt from that breaker for its lifetime.
    """
    if force:
        if sub_type and is_tripped(ctx.conn, sub_type, ctx.config.cycle.circuit_breaker_threshold):
            logger.warning("Circuit breaker for '%s' overridden by policy review", sub_type)
    else:
        ensure_sub_type_open(ctx.conn, sub_type, ctx.config.cycle.circuit_breaker_threshold)

    if depends_on and get_experiment_by_slug(ctx.conn, depends_on) is None:
        msg = f"Dependency {depends_on} does not exist"
        raise ConclaveError(msg)

    slug = unique_slug(ctx.conn, slug or slugify(hypothesis))
    branch = branch or f"exp/{count_experiments(ctx.conn) + 1:03d}-{slug}"

    with transaction(ctx.conn):
        experiment = db_create_experiment(
            ctx.conn,
            slug,
            branch,
            hypothesis,
            sub_type=sub_type,
            depends_on=depends_on,
            breaker_override=force,
        )

    if create_branch:
        try:
            ctx.git.create_branch(branch)
        except SubprocessFailure as e:
            logger.warning("Could not create branch %s: %s", branch, e)
    logger.info("Created experiment %s on %s", slug, branch)
    return experiment


def revert_experiment(
    ctx: AppContext,
    experiment: ExperimentRecord,
    reason: str = "Manually reverted",
    *,
    structural: bool = False,
) -> ExperimentRecord:
    """Abandon an experiment by hand and leave its branch if it is checked out."""
    with transaction(ctx.conn):
        record_dead_end(
            ctx.conn,
            experiment,
            experiment.hypothesis or experiment.slug,
            reason,
            f"Reverted: {reason}",
            category="structural" if structural else "procedural",
        )
        admin_transition_and_persist(ctx.conn, experiment, S.DEAD_END, "revert")

    try:
        if ctx.git.current_branch() == experiment.branch:
            ctx.git.checkout(ctx.git.trunk_branch())
    except SubprocessFailure as e:
        logger.warning("Could not switch away from %s, do it manually: %s", experiment.branch, e)
    return refresh(ctx, experiment)


# --- Shared helpers ---


def refresh(ctx: AppContext, experiment: ExperimentRecord) -> ExperimentRecord:
    current = get_experiment(ctx.conn, experiment.id)
    if current is None:
        msg = f"Experiment {experiment.slug} disappeared from the store"
        raise ConclaveError(msg)
    return current


def _read(path_text: Optional[str], limit: int) -> str:
    return truncate_context(path_text, limit) if path_text else ""


def _read_doc(ctx: AppContext, name: str, limit_key: str) -> str:
    path = synthesis_path(ctx.root, name)
    return _read(path.read_text() if path.exists() else None, CONTEXT_LIMITS[limit_key])


def _dead_end_section(ctx: AppContext, experiment: ExperimentRecord) -> str:
    dead_ends = structural_constraints(ctx.conn, experiment.sub_type) if experiment.sub_type else list_dead_ends(ctx.conn)
    text = format_dead_ends(dead_ends)
    return _read(text, CONTEXT_LIMITS["dead_ends"]) or "None"


def _header(experiment: ExperimentRecord) -> str:
    lines = [f"Experiment: {experiment.slug}", f"Hypothesis: {experiment.hypothesis or '-'}"]
    if experiment.sub_type:
        lines.append(f"Sub-type: {experiment.sub_type}")
    return "\n".join(lines)


# --- Ingestion ---


def _resolve_doubts(
    conn: sqlite3.Connection, doubts: list[DoubtRecord], resolutions: list[DoubtResolution]
) -> None:
    known = {d.id for d in doubts}
    for index, ruling in enumerate(resolutions):
        if ruling.resolution is None:
            continue
        if ruling.doubt_id is not None and ruling.doubt_id in known:
            update_doubt_resolution(conn, ruling.doubt_id, ruling.resolution)
        elif index < len(doubts):
            fallback = doubts[index].id
            logger.warning(
                "Doubt resolution ID %s not found. Using ordinal fallback -> DOUBT-%s.",
                ruling.doubt_id,
                fallback,
            )
            update_doubt_resolution(conn, fallback, ruling.resolution)
        else:
            logger.warning("Doubt resolution ID %s matches no doubt, ignored", ruling.doubt_id)


def ingest(conn: sqlite3.Connection, experiment_id: int, result: ExtractionResult) -> int:
    """Store extracted output rows tagged with their extraction tier.

    Returns the number of rows written or updated.
    """
    data, tier = result.data, result.tier
    if data is None:
        return 0

    if isinstance(data, BuilderOutput):
        for d in data.decisions:
            insert_decision(conn, experiment_id, d.description, d.evidence_level, d.justification, tier)
        return len(data.decisions)
    if isinstance(data, CriticOutput):
        for doubt in data.doubts:
            insert_doubt(
                conn,
                experiment_id,
                doubt.claim_doubted,
                doubt.evidence_level_of_claim,
                doubt.evidence_for_doubt,
                doubt.severity,
                tier,
            )
        return len(data.doubts)
    if isinstance(data, AdversaryOutput):
        for c in data.challenges:
            insert_challenge(conn, experiment_id, c.description, c.reasoning, tier)
        return len(data.challenges)
    if isinstance(data, VerifierOutput):
        for g in data.grades:
            insert_verification(
                conn,
                experiment_id,
                g.component,
                g.grade,
                g.provenance_intact,
                g.content_correct,
                g.notes,
                tier,
            )
        _resolve_doubts(conn, get_doubts(conn, experiment_id), data.doubt_resolutions)
        return len(data.grades) + len(data.doubt_resolutions)
    if isinstance(data, ScoutOutput):
        for f in data.findings:
            insert_finding(conn, experiment_id, f.approach, f.source, f.relevance, f.contradicts_current, tier)
        return len(data.findings)
    if isinstance(
        data,
        (
            GatekeeperOutput,
            CompressorOutput,
            SynthesiserOutput,
            PlannerOutput,
            AuditorOutput,
            ClassifierOutput,
            ReframerOutput,
        ),
    ):
        # Acted on by their step, nothing to store per row
        return 0
    assert_never(data)


# --- Steps ---


def do_gate(ctx: AppContext, experiment: ExperimentRecord) -> ExperimentRecord:
    """Ask the gatekeeper whether the hypothesis is worth building.

    A rejection keeps the experiment at GATED with the reason stored.
    """
    transition(experiment.status, S.GATED)
    prompt = (
        f"{_header(experiment)}\n\n"
        f"## Dead-ends\n{_dead_end_section(ctx, experiment)}\n\n"
        f"## Current Synthesis\n{_read_doc(ctx, 'current.md', 'synthesis') or 'None'}\n"
    )
    if experiment.gate_rejection_reason:
        prompt += f"\n## Previous Rejection\n{experiment.gate_rejection_reason}\n"
    prompt += "\nDecide whether this hypothesis should be built: approve, reject or flag."

    run = spawn_agent(ctx, "gatekeeper", prompt, experiment)
    output = cast("GatekeeperOutput", require_output("gatekeeper", run))
    decision = output.gate_decision or "approve"

    with transaction(ctx.conn):
        transition_and_persist(ctx.conn, experiment, S.GATED)
        set_gate_rejection(
            ctx.conn, experiment.id, (output.reason or "rejected") if decision == "reject" else None
        )

    if decision == "reject":
        logger.warning(
            "Gate REJECTED %s: %s. Status stays gated, revise the hypothesis.",
            experiment.slug,
            output.reason or "no reason given",
        )
    elif decision == "flag":
        logger.warning("Gate flagged %s: %s. Proceeding.", experiment.slug, output.reason or "-")
    else:
        logger.info("Gate approved %s", experiment.slug)
    return refresh(ctx, experiment)


def do_build(ctx: AppContext, experiment: ExperimentRecord) -> ExperimentRecord:
    """Run the builder, then capture metrics and commit its work."""
    transition(experiment.status, S.BUILDING)

    if not has_metrics(ctx.conn, experiment.id, "before"):
        capture_metrics(ctx, experiment, "before")

    if experiment.status != S.BUILDING.value:
        with transaction(ctx.conn):
            transition_and_persist(ctx.conn, experiment, S.BUILDING)
        experiment = refresh(ctx, experiment)

    sections = [_header(experiment)]
    if experiment.builder_guidance:
        sections.append(f"## Guidance From Previous Iterations\n{experiment.builder_guidance}")
    confirmed = get_confirmed_doubts(ctx.conn, experiment.id)
    if confirmed:
        sections.append(
            "## Confirmed Doubts (MUST address)\n"
            + "\n".join(f"- DOUBT-{d.id} [{d.severity}]: {d.claim_doubted}" for d in confirmed)
        )
    sections.append(f"## Dead-ends (do not repeat)\n{_dead_end_section(ctx, experiment)}")
    synthesis = _read_doc(ctx, "current.md", "synthesis")
    if synthesis:
        sections.append(f"## Current Synthesis\n{synthesis}")
    fragility = _read_doc(ctx, "fragility.md", "fragility")
    if fragility:
        sections.append(f"## Fragility Map\n{fragility}")
    sections.append("Implement the hypothesis and record your decisions.")

    run = spawn_agent(ctx, "builder", "\n\n".join(sections), experiment)
    require_output("builder", run)

    capture_metrics(ctx, experiment, "after")
    try:
        ctx.git.commit_all(f"EXP-{experiment.number}: {experiment.slug}\n\n{experiment.hypothesis or ''}".rstrip())
    except SubprocessFailure as e:
        logger.warning("Auto-commit for %s failed: %s", experiment.slug, e)

    with transaction(ctx.conn):
        ingest(ctx.conn, experiment.id, run.extraction)
        transition_and_persist(ctx.conn, experiment, S.BUILT)
    logger.info("Build complete for %s", experiment.slug)
    return refresh(ctx, experiment)


def do_doubt(ctx: AppContext, experiment: ExperimentRecord) -> ExperimentRecord:
    transition(experiment.status, S.DOUBTED)
    doc_path = artifact_path(ctx.root, "builder", experiment)
    doc = _read(doc_path.read_text() if doc_path.exists() else None, CONTEXT_LIMITS["experiment_doc"])
    decisions = "\n".join(
        f"- [{d.evidence_level}] {d.description}" for d in list_decisions(ctx.conn, experiment.id)
    )
    prompt = (
        f"{_header(experiment)}\n\n"
        f"## Decisions\n{decisions or 'None recorded'}\n\n"
        f"## Builder Write-up\n{doc or 'Not available'}\n\n"
        "Raise doubts about claims whose evidence is weaker than the claim requires."
    )
    run = spawn_agent(ctx, "critic", prompt, experiment)
    require_output("critic", run)
    with transaction(ctx.conn):
        count = ingest(ctx.conn, experiment.id, run.extraction)
        transition_and_persist(ctx.conn, experiment, S.DOUBTED)
    logger.info("Recorded %d doubt(s) for %s", count, experiment.slug)
    return refresh(ctx, experiment)


def do_challenge(ctx: AppContext, experiment: ExperimentRecord) -> ExperimentRecord:
    transition(experiment.status, S.CHALLENGED)
    try:
        diff = ctx.git.diff_against(ctx.git.trunk_branch())
    except SubprocessFailure as e:
        logger.warning("Could not diff %s against trunk: %s", experiment.slug, e)
        diff = ""
    if len(diff) > DIFF_CHAR_LIMIT:
        diff = diff[:DIFF_CHAR_LIMIT] + "\n[DIFF TRUNCATED]"
    prompt = (
        f"{_header(experiment)}\n\n"
        f"## Changes Against Trunk\n```diff\n{diff or '(no diff)'}\n```\n\n"
        "Construct inputs or scenarios that would break this change."
    )
    run = spawn_agent(ctx, "adversary", prompt, experiment)
    require_output("adversary", run)
    with transaction(ctx.conn):
        count = ingest(ctx.conn, experiment.id, run.extraction)
        transition_and_persist(ctx.conn, experiment, S.CHALLENGED)
    logger.info("Recorded %d challenge(s) for %s", count, experiment.slug)
    return refresh(ctx, experiment)


def do_scout(ctx: AppContext, experiment: ExperimentRecord) -> ExperimentRecord:
    transition(experiment.status, S.SCOUTED)
    prompt = (
        f"{_header(experiment)}\n\n"
        f"## Dead-ends\n{_dead_end_section(ctx, experiment)}\n\n"
        f"## Fragility Map\n{_read_doc(ctx, 'fragility.md', 'fragility') or 'None'}\n\n"
        "Find alternative approaches, including ones that contradict the current direction."
    )
    run = spawn_agent(ctx, "scout", prompt, experiment)
    require_output("scout", run)
    with transaction(ctx.conn):
        count = ingest(ctx.conn, experiment.id, run.extraction)
        transition_and_persist(ctx.conn, experiment, S.SCOUTED)
    logger.info("Recorded %d finding(s) for %s", count, experiment.slug)
    return refresh(ctx, experiment)


def _metrics_section(ctx: AppContext, experiment: ExperimentRecord) -> str:
    comparisons = compare_metrics(ctx.conn, experiment.id, ctx.config)
    if not comparisons:
        return ""
    lines = ["## Metrics (before -> after)"]
    for c in comparisons:
        flags = " REGRESSION" if c.regression else ""
        flags += " [GATE]" if c.gate else ""
        lines.append(f"- {c.fixture} / {c.metric}: {c.before} -> {c.after} ({c.delta:+g}){flags}")
    return "\n".join(lines)


def do_verify(ctx: AppContext, experiment: ExperimentRecord) -> ExperimentRecord:
    """Grade the experiment and rule on its doubts.

    The status moves to VERIFYING before the verifier runs, so a failed
    extraction is retried from there.
    """
    status = S(experiment.status)
    cycle = ctx.config.cycle
    if status is not S.VERIFYING:
        transition(status, S.VERIFYING)
        if cycle.require_doubt_before_verify and not has_doubts(ctx.conn, experiment.id) and status is S.CHALLENGED:
            msg = f"Doubt step required before verifying {experiment.slug}"
            raise ConclaveError(msg)
        if cycle.require_challenge_before_verify and not has_challenges(ctx.conn, experiment.id):
            msg = f"Challenge step required before verifying {experiment.slug}"
            raise ConclaveError(msg)
        with transaction(ctx.conn):
            transition_and_persist(ctx.conn, experiment, S.VERIFYING)
        experiment = refresh(ctx, experiment)

    doubts = get_doubts(ctx.conn, experiment.id)
    challenges = get_challenges(ctx.conn, experiment.id)
    sections = [_header(experiment)]
    metrics = _metrics_section(ctx, experiment)
    if metrics:
        sections.append(metrics)
    if challenges:
        sections.append(
            "## Adversarial Challenges\n"
            + "\n".join(f"- {c.description}: {c.reasoning}" for c in challenges)
        )
    if doubts:
        sections.append(
            "## Doubt Reference (use these IDs in doubt_resolutions)\n"
            + "\n".join(f"- DOUBT-{d.id}: [{d.severity}] {d.claim_doubted}" for d in doubts)
            + "\n\nWhen resolving doubts, use the DOUBT-{id} number as the doubt_id value."
        )
    sections.append(
        f"Verify experiment {experiment.slug}. Check provenance and content. "
        f"Test the {len(doubts)} doubt(s) and any adversarial challenges."
    )

    run = spawn_agent(ctx, "verifier", "\n\n".join(sections), experiment)
    require_output("verifier", run)
    with transaction(ctx.conn):
        ingest(ctx.conn, experiment.id, run.extraction)
        transition_and_persist(ctx.conn, experiment, S.VERIFIED)
    if run.extraction.low_confidence:
        logger.warning(
            "Verification of %s came from tier %s extraction, grades are low confidence",
            experiment.slug,
            run.extraction.tier,
        )
    logger.info("Verification complete for %s", experiment.slug)
    return refresh(ctx, experiment)


def compression_due(ctx: AppContext) -> bool:
    return count_finished_since_compression(ctx.conn) >= ctx.config.cycle.compression_interval


def export_dead_ends(ctx: AppContext) -> None:
    """Rewrite docs/synthesis/dead-ends.md from the registry."""
    path = synthesis_path(ctx.root, "dead-ends.md")
    path.parent.mkdir(parents=True, exist_ok=True)
    body = format_dead_ends(list_dead_ends(ctx.conn))
    _ = path.write_text(f"# Dead-ends\n\n{body}\n" if body else "# Dead-ends\n\nNone recorded.\n")


def do_compress(ctx: AppContext) -> int:
    """Let the compressor rewrite the synthesis document. Returns its new size."""
    current = synthesis_path(ctx.root, "current.md")
    size_before = len(current.read_text()) if current.exists() else 0
    finished = count_finished_since_compression(ctx.conn)
    export_dead_ends(ctx)

    prompt = (
        f"## Current Synthesis\n{_read_doc(ctx, 'current.md', 'synthesis') or 'Empty'}\n\n"
        f"## Dead-ends\n{_read_doc(ctx, 'dead-ends.md', 'dead_ends')}\n\n"
        f"## Fragility Map\n{_read_doc(ctx, 'fragility.md', 'fragility') or 'None'}\n\n"
        f"{finished} experiment(s) finished since the last compression. "
        "Rewrite the synthesis so it stays short and current."
    )
    run = spawn_agent(ctx, "compressor", prompt)
    if run.output is None:
        logger.warning("Compressor report could not be extracted, the rewritten synthesis is kept")

    size_after = len(current.read_text()) if current.exists() else 0
    with transaction(ctx.conn):
        record_compression(ctx.conn, finished, size_before, size_after)
    logger.info("Synthesis compressed: %d -> %d chars", size_before, size_after)
    return size_after


def breaker_holds(ctx: AppContext, experiment: ExperimentRecord) -> bool:
    """True when a tripped sub-type breaker should stop this experiment.

    Experiments created under a policy-review override are exempt.
    """
    if experiment.breaker_override or is_terminal(experiment.status):
        return False
    return is_tripped(ctx.conn, experiment.sub_type, ctx.config.cycle.circuit_breaker_threshold)


def enforce_breaker(ctx: AppContext, experiment: ExperimentRecord) -> bool:
    """Dead-end the experiment and run the purpose audit if its breaker tripped."""
    if not breaker_holds(ctx, experiment):
        return False
    trip(ctx, experiment)
    audit_after_trip(ctx, refresh(ctx, experiment))
    return True


def resolve_step(
    ctx: AppContext, experiment: ExperimentRecord, db_only: bool = False  # noqa: FBT001, FBT002
) -> ResolutionOutcome:
    """Resolve, then stop automatic cycling if the sub-type breaker tripped."""
    outcome = resolve_db_only(ctx, experiment) if db_only else resolve(ctx, experiment)
    if outcome.cycled_back and enforce_breaker(ctx, refresh(ctx, experiment)):
        outcome.status = S.DEAD_END
        outcome.breaker_tripped = True
    return outcome


def _finish_compressed(ctx: AppContext, experiment: ExperimentRecord, db_only: bool) -> ExperimentRecord:  # noqa: FBT001
    if not db_only:
        merge_error = merge_branch(ctx, experiment)
        if merge_error is not None:
            raise ConclaveError(merge_error)
    with transaction(ctx.conn):
        transition_and_persist(ctx.conn, experiment, S.MERGED)
    return refresh(ctx, experiment)


@dataclass
class StepResult:
    experiment: ExperimentRecord
    resolution: Optional[ResolutionOutcome] = None


def next_step(ctx: AppContext, experiment: ExperimentRecord) -> ExperimentStatus:
    """The status the next step should drive this experiment toward."""
    status = S(experiment.status)
    if status is S.RESOLVED:
        return S.RESOLVED
    return determine_next_step(
        experiment,
        valid_next(status),
        has_doubts(ctx.conn, experiment.id),
        has_challenges(ctx.conn, experiment.id),
    )


def run_step(
    ctx: AppContext,
    experiment: ExperimentRecord,
    target: ExperimentStatus,
    db_only: bool = False,  # noqa: FBT001, FBT002
) -> StepResult:
    """Run the step that moves an experiment toward target."""
    if target is S.GATED:
        return StepResult(do_gate(ctx, experiment))
    if target is S.BUILDING:
        return StepResult(do_build(ctx, experiment))
    if target is S.DOUBTED:
        return StepResult(do_doubt(ctx, experiment))
    if target is S.CHALLENGED:
        return StepResult(do_challenge(ctx, experiment))
    if target is S.SCOUTED:
        return StepResult(do_scout(ctx, experiment))
    if target in (S.VERIFYING, S.VERIFIED):
        return StepResult(do_verify(ctx, experiment))
    if target is S.RESOLVED:
        outcome = resolve_step(ctx, experiment, db_only)
        return StepResult(refresh(ctx, experiment), outcome)
    if target is S.MERGED and experiment.status == S.COMPRESSED.value:
        return StepResult(_finish_compressed(ctx, experiment, db_only))
    msg = f"No step drives {experiment.slug} from {experiment.status} to {target.value}"
    raise ConclaveError(msg)
