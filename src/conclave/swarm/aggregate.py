# Copyright (c) Syntropy Systems
"""Fold worker stores into the canonical store and pick the winner."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from conclave.breaker import record_dead_end
from conclave.db import get_connection, get_experiment, transaction
from conclave.errors import ConclaveError
from conclave.state import ExperimentStatus, admin_transition_and_persist, is_terminal

if TYPE_CHECKING:
    from conclave.swarm.runner import WorkerResult

logger = logging.getLogger(__name__)

# Tables keyed by experiment_id, copied in this order
CHILD_TABLES = (
    "decisions",
    "doubts",
    "challenges",
    "verifications",
    "metrics",
    "dead_ends",
    "findings",
    "sub_type_failures",
)

GRADE_RANK = {"sound": 0, "good": 1, "weak": 2, "rejected": 3}
MERGEABLE_GRADES = ("sound", "good")


@dataclass
class ImportResult:
    canonical_id: int
    id_map: dict[str, dict[int, int]] = field(default_factory=dict)


def _columns(conn: sqlite3.Connection, table: str) -> list[str]:
    return [row["name"] for row in conn.execute(f"PRAGMA table_info({table})")]


def _insert(conn: sqlite3.Connection, table: str, values: dict[str, object]) -> int:
    columns = [c for c in _columns(conn, table) if c != "id" and c in values]
    placeholders = ", ".join("?" for _ in columns)
    cursor = conn.execute(
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",  # noqa: S608
        [values[c] for c in columns],
    )
    return int(cursor.lastrowid or 0)


def import_experiment(
    source: sqlite3.Connection,
    target: sqlite3.Connection,
    slug: str,
    status: Optional[str] = None,
) -> ImportResult:
    """Copy one experiment and every row that references it into target.

    Row ids are reassigned and references rewritten to the new ids. The
    caller owns the transaction.
    """
    row = source.execute("SELECT * FROM experiments WHERE slug = ?", (slug,)).fetchone()
    if row is None:
        msg = f"Experiment {slug} not found in worker store"
        raise ConclaveError(msg)
    if target.execute("SELECT 1 FROM experiments WHERE slug = ?", (slug,)).fetchone():
        msg = f"Experiment {slug} already exists in the canonical store"
        raise ConclaveError(msg)

    values = dict(row)
    source_id = int(values.pop("id"))
    if status is not None:
        values["status"] = status
    canonical_id = _insert(target, "experiments", values)
    result = ImportResult(canonical_id, {"experiments": {source_id: canonical_id}})

    for table in CHILD_TABLES:
        mapping: dict[int, int] = {}
        rows = source.execute(
            f"SELECT * FROM {table} WHERE experiment_id = ? ORDER BY id",  # noqa: S608
            (source_id,),
        ).fetchall()
        for child in rows:
            values = dict(child)
            old_id = int(values.pop("id"))
            values["experiment_id"] = canonical_id
            if table == "decisions":
                values["overturned_by"] = None
            mapping[old_id] = _insert(target, table, values)
        result.id_map[table] = mapping

    # Overturn links point at decisions that only have ids once all are copied
    decisions = result.id_map["decisions"]
    for child in source.execute(
        "SELECT id, overturned_by FROM decisions WHERE experiment_id = ? AND overturned_by IS NOT NULL",
        (source_id,),
    ).fetchall():
        target.execute(
            "UPDATE decisions SET overturned_by = ? WHERE id = ?",
            (decisions.get(child["overturned_by"]), decisions[child["id"]]),
        )
    return result


def rank_results(results: list[WorkerResult]) -> list[WorkerResult]:
    """Graded, error-free workers from best to worst. Ties keep arrival order."""
    graded = [r for r in results if r.ok and r.grade in GRADE_RANK]
    return sorted(graded, key=lambda r: GRADE_RANK[r.grade or "rejected"])


def select_winner(results: list[WorkerResult]) -> Optional[WorkerResult]:
    """Best-ranked worker, if its grade is good enough to merge."""
    ranked = rank_results(results)
    if ranked and ranked[0].grade in MERGEABLE_GRADES:
        return ranked[0]
    return None


def _discard(conn: sqlite3.Connection, canonical_id: int) -> None:
    experiment = get_experiment(conn, canonical_id)
    if experiment is None:
        return
    if not is_terminal(experiment.status):
        admin_transition_and_persist(conn, experiment, ExperimentStatus.DEAD_END, "swarm_discard")
    record_dead_end(
        conn,
        experiment,
        experiment.hypothesis or experiment.slug,
        "not selected in swarm",
        "Another swarm member was preferred for this goal",
        category="procedural",
    )


@dataclass
class AggregateResult:
    imported: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)


def aggregate(
    conn: sqlite3.Connection,
    results: list[WorkerResult],
    winner: Optional[WorkerResult],
) -> AggregateResult:
    """Import every finished worker's experiment, one transaction per worker.

    Everything but the winner ends as a dead-end. A merged experiment that
    lost to a better one is imported directly as dead_end; the winner is
    imported as verified so the coordinator can resolve it against trunk.
    """
    outcome = AggregateResult()
    for result in results:
        if not result.ok:
            continue
        is_winner = winner is not None and result is winner
        status = None
        if result.final_status == ExperimentStatus.MERGED.value:
            # Only the canonical side merges the winner's branch
            status = ExperimentStatus.VERIFIED.value if is_winner else ExperimentStatus.DEAD_END.value

        source = get_connection(result.worktree.db_path)
        try:
            with transaction(conn):
                imported = import_experiment(source, conn, result.slug, status=status)
                if not is_winner and result.final_status != ExperimentStatus.DEAD_END.value:
                    _discard(conn, imported.canonical_id)
        except (ConclaveError, sqlite3.Error) as e:
            logger.error("Could not import %s: %s", result.slug, e)
            outcome.failed[result.slug] = str(e)
            continue
        finally:
            source.close()
        outcome.imported[result.slug] = imported.canonical_id
    return outcome
