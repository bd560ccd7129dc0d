# Copyright (c) Syntropy Systems
"""Circuit breaker over sub-type failures, and the dead-end registry."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from conclave.db import (
    count_sub_type_failures,
    insert_dead_end,
    list_dead_ends,
    sub_type_failure_counts,
    transaction,
)
from conclave.errors import CircuitBreakerTripped
from conclave.state import ExperimentStatus, admin_transition_and_persist, is_terminal

if TYPE_CHECKING:
    import sqlite3

    from conclave.context import AppContext
    from conclave.models.db import DeadEndRecord, ExperimentRecord

logger = logging.getLogger(__name__)

CATEGORIES = ("structural", "procedural")


@dataclass
class BreakerState:
    sub_type: str
    failures: int
    threshold: int

    @property
    def tripped(self) -> bool:
        return self.failures >= self.threshold


def record_dead_end(
    conn: sqlite3.Connection,
    experiment: Optional[ExperimentRecord],
    approach: str,
    why_failed: str,
    constraint: str,
    category: str = "structural",
) -> int:
    """Append a dead-end. Structural entries block repeating the approach."""
    if category not in CATEGORIES:
        msg = f"Unknown dead-end category: {category}"
        raise ValueError(msg)
    return insert_dead_end(
        conn,
        experiment.id if experiment is not None else None,
        approach,
        why_failed,
        constraint,
        experiment.sub_type if experiment is not None else None,
        category,
    )


def failure_count(conn: sqlite3.Connection, sub_type: Optional[str]) -> int:
    if not sub_type:
        return 0
    return count_sub_type_failures(conn, sub_type)


def is_tripped(conn: sqlite3.Connection, sub_type: Optional[str], threshold: int) -> bool:
    if not sub_type:
        return False
    return failure_count(conn, sub_type) >= threshold


def breaker_states(conn: sqlite3.Connection, threshold: int) -> list[BreakerState]:
    return [
        BreakerState(sub_type=sub_type, failures=failures, threshold=threshold)
        for sub_type, failures in sub_type_failure_counts(conn).items()
    ]


def ensure_sub_type_open(
    conn: sqlite3.Connection, sub_type: Optional[str], threshold: int
) -> None:
    """Raise CircuitBreakerTripped if new work on sub_type must wait for review."""
    if not sub_type:
        return
    failures = failure_count(conn, sub_type)
    if failures >= threshold:
        raise CircuitBreakerTripped(sub_type, failures, threshold)


def trip(ctx: AppContext, experiment: ExperimentRecord) -> None:
    """Dead-end an experiment whose sub-type breaker has tripped."""
    if is_terminal(experiment.status):
        return
    sub_type = experiment.sub_type or ""
    failures = failure_count(ctx.conn, sub_type)
    threshold = ctx.config.cycle.circuit_breaker_threshold
    why = (
        f"Circuit breaker tripped for sub-type '{sub_type}' "
        f"({failures} failures, threshold {threshold})"
    )

    with transaction(ctx.conn):
        admin_transition_and_persist(
            ctx.conn, experiment, ExperimentStatus.DEAD_END, "circuit_breaker"
        )
        record_dead_end(
            ctx.conn,
            experiment,
            experiment.hypothesis or experiment.slug,
            why,
            f"Policy review required before further '{sub_type}' experiments",
            category="procedural",
        )
    logger.error("%s: %s. Status %s -> dead_end.", experiment.slug, why, experiment.status)


def structural_constraints(
    conn: sqlite3.Connection, sub_type: Optional[str] = None
) -> list[DeadEndRecord]:
    """Structural dead-ends, optionally limited to one sub-type."""
    return list_dead_ends(conn, sub_type=sub_type, category="structural")


def format_dead_ends(dead_ends: list[DeadEndRecord]) -> str:
    """Render dead-ends as prompt lines."""
    lines = []
    for dead_end in dead_ends:
        tag = "HARD CONSTRAINT" if dead_end.category == "structural" else "process failure"
        lines.append(
            f"- [DE-{dead_end.id}] ({tag}) {dead_end.approach}: {dead_end.why_failed}. "
            f"Constraint: {dead_end.structural_constraint}"
        )
    return "\n".join(lines)
