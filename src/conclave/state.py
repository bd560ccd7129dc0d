# Copyright (c) Syntropy Systems
"""Experiment lifecycle: statuses, legal transitions and step routing."""
from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Union

from conclave.db import update_experiment_status
from conclave.errors import InvalidTransition

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Sequence

    from conclave.models.db import ExperimentRecord

logger = logging.getLogger(__name__)


class ExperimentStatus(str, Enum):
    """Lifecycle status of an experiment."""

    CLASSIFIED = "classified"
    REFRAMED = "reframed"
    GATED = "gated"
    BUILDING = "building"
    BUILT = "built"
    CHALLENGED = "challenged"
    DOUBTED = "doubted"
    SCOUTED = "scouted"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    RESOLVED = "resolved"
    COMPRESSED = "compressed"
    MERGED = "merged"
    DEAD_END = "dead_end"

    def __str__(self) -> str:
        return self.value


S = ExperimentStatus

TRANSITIONS: dict[ExperimentStatus, tuple[ExperimentStatus, ...]] = {
    S.CLASSIFIED: (S.REFRAMED, S.GATED),
    S.REFRAMED: (S.GATED,),
    # Self-loop: a rejected hypothesis is gated again after revision
    S.GATED: (S.BUILDING, S.GATED),
    # Self-loop: rebuild after output that could not be extracted
    S.BUILDING: (S.BUILT, S.BUILDING),
    S.BUILT: (S.CHALLENGED, S.DOUBTED),
    S.CHALLENGED: (S.DOUBTED, S.VERIFYING),
    S.DOUBTED: (S.CHALLENGED, S.SCOUTED, S.VERIFYING),
    S.SCOUTED: (S.VERIFYING,),
    S.VERIFYING: (S.VERIFIED,),
    S.VERIFIED: (S.RESOLVED,),
    S.RESOLVED: (S.COMPRESSED, S.BUILDING, S.MERGED, S.DEAD_END),
    S.COMPRESSED: (S.MERGED, S.BUILDING),
    S.MERGED: (),
    S.DEAD_END: (),
}

# Worst first
GRADE_ORDER = ("rejected", "weak", "good", "sound")

ADMIN_REASONS = ("revert", "circuit_breaker", "error_recovery", "swarm_discard", "bootstrap")

StatusLike = Union[ExperimentStatus, str]


def _coerce(status: StatusLike) -> ExperimentStatus:
    return status if isinstance(status, ExperimentStatus) else ExperimentStatus(status)


def valid_next(current: StatusLike) -> tuple[ExperimentStatus, ...]:
    """Return every status reachable from current in one step."""
    return TRANSITIONS[_coerce(current)]


def is_terminal(status: StatusLike) -> bool:
    return not TRANSITIONS[_coerce(status)]


def transition(current: StatusLike, target: StatusLike) -> ExperimentStatus:
    """Validate a status change, returning the target.

    Raises InvalidTransition unless target is listed for current.
    """
    current_status = _coerce(current)
    target_status = _coerce(target)
    valid = TRANSITIONS[current_status]
    if target_status not in valid:
        raise InvalidTransition(
            current_status.value, target_status.value, [v.value for v in valid]
        )
    return target_status


def admin_transition(current: StatusLike, target: StatusLike, reason: str) -> ExperimentStatus:
    """Validate a forced status change outside the normal table.

    revert, circuit_breaker, error_recovery and swarm_discard may move any
    non-terminal experiment to DEAD_END. bootstrap moves CLASSIFIED to REFRAMED.
    """
    current_status = _coerce(current)
    target_status = _coerce(target)

    if reason == "bootstrap":
        allowed = current_status is S.CLASSIFIED and target_status is S.REFRAMED
    elif reason in ADMIN_REASONS:
        allowed = target_status is S.DEAD_END and not is_terminal(current_status)
    else:
        msg = f"Unknown admin transition reason: {reason}"
        raise ValueError(msg)

    if not allowed:
        raise InvalidTransition(current_status.value, target_status.value, [])
    return target_status


def determine_next_step(
    experiment: ExperimentRecord,
    valid: Sequence[ExperimentStatus],
    has_doubts: bool,  # noqa: FBT001
    has_challenges: bool,  # noqa: FBT001
) -> ExperimentStatus:
    """Pick the next status to drive an experiment toward.

    Doubt and challenge are each run once before verification. The outcome
    of RESOLVED belongs to the resolution engine, not to this policy.
    """
    status = _coerce(experiment.status)
    if not valid:
        raise InvalidTransition(status.value, "<next>", [])

    def prefer(target: ExperimentStatus) -> ExperimentStatus:
        return target if target in valid else valid[0]

    if status in (S.CLASSIFIED, S.REFRAMED):
        return prefer(S.GATED)
    if status is S.GATED:
        return prefer(S.BUILDING)
    if status is S.BUILDING:
        return S.BUILDING
    if status is S.BUILT:
        if has_doubts and not has_challenges:
            return prefer(S.CHALLENGED)
        if has_challenges and has_doubts and S.VERIFYING in valid:
            return S.VERIFYING
        return prefer(S.DOUBTED)
    if status is S.DOUBTED:
        return S.VERIFYING if has_challenges else prefer(S.CHALLENGED)
    if status is S.CHALLENGED:
        return S.VERIFYING if has_doubts else prefer(S.DOUBTED)
    if status is S.SCOUTED:
        return S.VERIFYING
    if status is S.VERIFYING:
        return S.VERIFIED
    if status is S.VERIFIED:
        return S.RESOLVED
    if status is S.COMPRESSED:
        return prefer(S.MERGED)
    return valid[0]


def transition_and_persist(
    conn: sqlite3.Connection, experiment: ExperimentRecord, target: StatusLike
) -> ExperimentStatus:
    """Validate a transition and write the new status."""
    new_status = transition(experiment.status, target)
    update_experiment_status(conn, experiment.id, new_status.value)
    logger.debug("%s: %s -> %s", experiment.slug, experiment.status, new_status.value)
    return new_status


def admin_transition_and_persist(
    conn: sqlite3.Connection,
    experiment: ExperimentRecord,
    target: StatusLike,
    reason: str,
) -> ExperimentStatus:
    """Validate a forced transition and write the new status."""
    new_status = admin_transition(experiment.status, target, reason)
    update_experiment_status(conn, experiment.id, new_status.value)
    logger.warning(
        "%s: %s -> %s (%s)", experiment.slug, experiment.status, new_status.value, reason
    )
    return new_status
