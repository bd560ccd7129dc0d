# Copyright (c) Syntropy Systems
"""SQLite database layer with WAL mode and explicit transactions."""

from __future__ import annotations

import contextlib
import json
import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Union

from conclave.models.db import (
    ChallengeRecord,
    CompressionRecord,
    DeadEndRecord,
    DecisionRecord,
    DoubtRecord,
    ExperimentRecord,
    FindingRecord,
    MetricRecord,
    SwarmMemberRecord,
    SwarmRunRecord,
    VerificationRecord,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

# SQL schema for the conclave store
SCHEMA = """
CREATE TABLE IF NOT EXISTS experiments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    slug TEXT NOT NULL UNIQUE,
    branch TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'classified',
    classification_ref TEXT,
    sub_type TEXT,
    hypothesis TEXT,
    builder_guidance TEXT,
    depends_on TEXT,            -- slug of another experiment
    context_files TEXT,         -- JSON array
    gate_rejection_reason TEXT,
    last_failure TEXT,          -- most recent recoverable step failure
    breaker_override INTEGER NOT NULL DEFAULT 0,  -- created past a tripped breaker
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS decisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    description TEXT NOT NULL,
    evidence_level TEXT NOT NULL CHECK (evidence_level IN
        ('proof', 'test', 'strong_consensus', 'consensus', 'analogy', 'judgment')),
    justification TEXT,
    status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'overturned', 'superseded')),
    overturned_by INTEGER REFERENCES decisions(id),
    extraction_tier INTEGER,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    phase TEXT NOT NULL CHECK (phase IN ('before', 'after')),
    fixture TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    metric_value REAL NOT NULL,
    captured_at TEXT
);

CREATE TABLE IF NOT EXISTS dead_ends (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER REFERENCES experiments(id),
    approach TEXT NOT NULL,
    why_failed TEXT NOT NULL,
    structural_constraint TEXT NOT NULL,
    sub_type TEXT,
    category TEXT NOT NULL DEFAULT 'structural' CHECK (category IN ('structural', 'procedural')),
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS verifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    component TEXT NOT NULL,
    grade TEXT NOT NULL CHECK (grade IN ('sound', 'good', 'weak', 'rejected')),
    provenance_intact INTEGER,
    content_correct INTEGER,
    notes TEXT,
    extraction_tier INTEGER,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS doubts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    claim_doubted TEXT NOT NULL,
    evidence_level_of_claim TEXT NOT NULL,
    evidence_for_doubt TEXT NOT NULL,
    severity TEXT NOT NULL CHECK (severity IN ('minor', 'moderate', 'critical')),
    resolution TEXT CHECK (resolution IN ('confirmed', 'dismissed', 'inconclusive')),
    extraction_tier INTEGER,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS challenges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    description TEXT NOT NULL,
    reasoning TEXT NOT NULL,
    extraction_tier INTEGER,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS findings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    approach TEXT NOT NULL,
    source TEXT NOT NULL,
    relevance TEXT NOT NULL,
    contradicts_current INTEGER NOT NULL DEFAULT 0,
    extraction_tier INTEGER,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS sub_type_failures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sub_type TEXT NOT NULL,
    experiment_id INTEGER NOT NULL REFERENCES experiments(id),
    grade TEXT NOT NULL CHECK (grade IN ('weak', 'rejected')),
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS compressions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    experiments_since_last INTEGER NOT NULL,
    synthesis_size_before INTEGER NOT NULL,
    synthesis_size_after INTEGER NOT NULL,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS swarm_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    goal TEXT NOT NULL,
    parallel_count INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'running' CHECK (status IN ('running', 'completed', 'failed')),
    total_cost_usd REAL NOT NULL DEFAULT 0,
    best_experiment_slug TEXT,
    started_at TEXT,
    finished_at TEXT
);

CREATE TABLE IF NOT EXISTS swarm_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    swarm_run_id INTEGER NOT NULL REFERENCES swarm_runs(id),
    experiment_slug TEXT NOT NULL,
    worktree_path TEXT NOT NULL,
    final_status TEXT,
    overall_grade TEXT,
    cost_usd REAL NOT NULL DEFAULT 0,
    error TEXT
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_experiments_status ON experiments(status);
CREATE INDEX IF NOT EXISTS idx_decisions_experiment ON decisions(experiment_id);
CREATE INDEX IF NOT EXISTS idx_metrics_experiment ON metrics(experiment_id, phase);
CREATE INDEX IF NOT EXISTS idx_dead_ends_sub_type ON dead_ends(sub_type);
CREATE INDEX IF NOT EXISTS idx_verifications_experiment ON verifications(experiment_id);
CREATE INDEX IF NOT EXISTS idx_doubts_experiment ON doubts(experiment_id);
CREATE INDEX IF NOT EXISTS idx_sub_type_failures ON sub_type_failures(sub_type);
"""

def get_connection(db_path: Union[Path, str]) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - foreign keys enforced, so child rows must point at rows in this store
    - Row factory for dict-like access

    check_same_thread is off because a swarm worker opens its connection
    in the coordinator and then hands it to the worker thread that owns it.
    """
    conn = sqlite3.connect(
        str(db_path), timeout=5.0, isolation_level=None, check_same_thread=False
    )
    if str(db_path) != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Union[Path, str]) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def open_store(db_path: Union[Path, str]) -> sqlite3.Connection:
    """Open a store, creating the schema first. Accepts ':memory:'."""
    conn = get_connection(db_path)
    conn.executescript(SCHEMA)
    return conn


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@contextlib.contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE / COMMIT, rolling back on error.

    Nested use joins the outer transaction.
    """
    if conn.in_transaction:
        yield conn
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


# --- Experiment Operations ---

def create_experiment(
    conn: sqlite3.Connection,
    slug: str,
    branch: str,
    hypothesis: Optional[str],
    sub_type: Optional[str] = None,
    depends_on: Optional[str] = None,
    classification_ref: Optional[str] = None,
    context_files: Optional[list[str]] = None,
    breaker_override: bool = False,  # noqa: FBT001, FBT002
) -> ExperimentRecord:
    """Create a new experiment in 'classified' status and return it."""
    now = utcnow()
    cursor = conn.execute(
        """
        INSERT INTO experiments (slug, branch, status, classification_ref, sub_type,
            hypothesis, depends_on, context_files, breaker_override, created_at, updated_at)
        VALUES (?, ?, 'classified', ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            slug,
            branch,
            classification_ref,
            sub_type,
            hypothesis,
            depends_on,
            json.dumps(context_files) if context_files else None,
            int(breaker_override),
            now,
            now,
        ),
    )
    experiment = get_experiment(conn, int(cursor.lastrowid or 0))
    if experiment is None:
        raise RuntimeError(f"Experiment {slug} vanished after insert")
    return experiment


def get_experiment(conn: sqlite3.Connection, experiment_id: int) -> Optional[ExperimentRecord]:
    """Get an experiment by ID."""
    row = conn.execute("SELECT * FROM experiments WHERE id = ?", (experiment_id,)).fetchone()
    if row is None:
        return None
    return ExperimentRecord.model_validate(dict(row))


def get_experiment_by_slug(conn: sqlite3.Connection, slug: str) -> Optional[ExperimentRecord]:
    """Get an experiment by slug."""
    row = conn.execute("SELECT * FROM experiments WHERE slug = ?", (slug,)).fetchone()
    if row is None:
        return None
    return ExperimentRecord.model_validate(dict(row))


def get_latest_experiment(conn: sqlite3.Connection) -> Optional[ExperimentRecord]:
    """Get the most recently created non-terminal experiment."""
    row = conn.execute(
        """
        SELECT * FROM experiments
        WHERE status NOT IN ('merged', 'dead_end')
        ORDER BY id DESC
        LIMIT 1
        """
    ).fetchone()
    if row is None:
        return None
    return ExperimentRecord.model_validate(dict(row))


def list_experiments(
    conn: sqlite3.Connection,
    status: Optional[str] = None,
    active_only: bool = False,  # noqa: FBT001, FBT002
) -> list[ExperimentRecord]:
    """List experiments in creation order."""
    query = "SELECT * FROM experiments WHERE 1=1"
    params: list[Any] = []

    if status:
        query += " AND status = ?"
        params.append(status)

    if active_only:
        query += " AND status NOT IN ('merged', 'dead_end')"

    query += " ORDER BY id"
    rows = conn.execute(query, params).fetchall()
    return [ExperimentRecord.model_validate(dict(row)) for row in rows]


def count_experiments(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT COUNT(*) AS n FROM experiments").fetchone()
    return int(row["n"])


def update_experiment_status(conn: sqlite3.Connection, experiment_id: int, status: str) -> None:
    """Write a new status. Callers validate the transition first."""
    conn.execute(
        "UPDATE experiments SET status = ?, updated_at = ? WHERE id = ?",
        (status, utcnow(), experiment_id),
    )


def store_builder_guidance(conn: sqlite3.Connection, experiment_id: int, guidance: str) -> None:
    conn.execute(
        "UPDATE experiments SET builder_guidance = ?, updated_at = ? WHERE id = ?",
        (guidance, utcnow(), experiment_id),
    )


def set_gate_rejection(
    conn: sqlite3.Connection, experiment_id: int, reason: Optional[str]
) -> None:
    """Record (or clear, with None) why the gatekeeper rejected a hypothesis."""
    conn.execute(
        "UPDATE experiments SET gate_rejection_reason = ?, updated_at = ? WHERE id = ?",
        (reason, utcnow(), experiment_id),
    )


def set_last_failure(
    conn: sqlite3.Connection, experiment_id: int, failure: Optional[str]
) -> None:
    """Record (or clear, with None) the latest recoverable step failure."""
    conn.execute(
        "UPDATE experiments SET last_failure = ?, updated_at = ? WHERE id = ?",
        (failure, utcnow(), experiment_id),
    )


# --- Decision Operations ---

def insert_decision(
    conn: sqlite3.Connection,
    experiment_id: int,
    description: str,
    evidence_level: str,
    justification: Optional[str] = None,
    extraction_tier: Optional[int] = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO decisions (experiment_id, description, evidence_level, justification,
            extraction_tier, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (experiment_id, description, evidence_level, justification, extraction_tier, utcnow()),
    )
    return int(cursor.lastrowid or 0)


def overturn_decision(conn: sqlite3.Connection, decision_id: int, overturned_by: int) -> None:
    """Mark a decision overturned, pointing at the decision that replaces it."""
    conn.execute(
        "UPDATE decisions SET status = 'overturned', overturned_by = ? WHERE id = ?",
        (overturned_by, decision_id),
    )


def list_decisions(
    conn: sqlite3.Connection,
    experiment_id: Optional[int] = None,
    evidence_level: Optional[str] = None,
) -> list[DecisionRecord]:
    query = "SELECT * FROM decisions WHERE 1=1"
    params: list[Any] = []

    if experiment_id is not None:
        query += " AND experiment_id = ?"
        params.append(experiment_id)

    if evidence_level:
        query += " AND evidence_level = ?"
        params.append(evidence_level)

    query += " ORDER BY id"
    rows = conn.execute(query, params).fetchall()
    return [DecisionRecord.model_validate(dict(row)) for row in rows]


# --- Metric Operations ---

def insert_metric(
    conn: sqlite3.Connection,
    experiment_id: int,
    phase: str,
    fixture: str,
    metric_name: str,
    metric_value: float,
) -> None:
    conn.execute(
        """
        INSERT INTO metrics (experiment_id, phase, fixture, metric_name, metric_value, captured_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (experiment_id, phase, fixture, metric_name, metric_value, utcnow()),
    )


def get_metrics(conn: sqlite3.Connection, experiment_id: int, phase: str) -> list[MetricRecord]:
    """Get metrics for one phase, oldest first."""
    rows = conn.execute(
        "SELECT * FROM metrics WHERE experiment_id = ? AND phase = ? ORDER BY id",
        (experiment_id, phase),
    ).fetchall()
    return [MetricRecord.model_validate(dict(row)) for row in rows]


# --- Dead-end Operations ---

def insert_dead_end(
    conn: sqlite3.Connection,
    experiment_id: Optional[int],
    approach: str,
    why_failed: str,
    structural_constraint: str,
    sub_type: Optional[str],
    category: str = "structural",
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO dead_ends (experiment_id, approach, why_failed, structural_constraint,
            sub_type, category, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (experiment_id, approach, why_failed, structural_constraint, sub_type, category, utcnow()),
    )
    return int(cursor.lastrowid or 0)


def list_dead_ends(
    conn: sqlite3.Connection,
    sub_type: Optional[str] = None,
    category: Optional[str] = None,
    experiment_id: Optional[int] = None,
) -> list[DeadEndRecord]:
    query = "SELECT * FROM dead_ends WHERE 1=1"
    params: list[Any] = []

    if sub_type:
        query += " AND sub_type = ?"
        params.append(sub_type)

    if category:
        query += " AND category = ?"
        params.append(category)

    if experiment_id is not None:
        query += " AND experiment_id = ?"
        params.append(experiment_id)

    query += " ORDER BY id"
    rows = conn.execute(query, params).fetchall()
    return [DeadEndRecord.model_validate(dict(row)) for row in rows]


# --- Verification Operations ---

def insert_verification(
    conn: sqlite3.Connection,
    experiment_id: int,
    component: str,
    grade: str,
    provenance_intact: Optional[bool] = None,
    content_correct: Optional[bool] = None,
    notes: Optional[str] = None,
    extraction_tier: Optional[int] = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO verifications (experiment_id, component, grade, provenance_intact,
            content_correct, notes, extraction_tier, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            experiment_id,
            component,
            grade,
            None if provenance_intact is None else int(provenance_intact),
            None if content_correct is None else int(content_correct),
            notes,
            extraction_tier,
            utcnow(),
        ),
    )
    return int(cursor.lastrowid or 0)


def get_verifications(conn: sqlite3.Connection, experiment_id: int) -> list[VerificationRecord]:
    rows = conn.execute(
        "SELECT * FROM verifications WHERE experiment_id = ? ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [VerificationRecord.model_validate(dict(row)) for row in rows]


# --- Doubt Operations ---

def insert_doubt(
    conn: sqlite3.Connection,
    experiment_id: int,
    claim_doubted: str,
    evidence_level_of_claim: str,
    evidence_for_doubt: str,
    severity: str,
    extraction_tier: Optional[int] = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO doubts (experiment_id, claim_doubted, evidence_level_of_claim,
            evidence_for_doubt, severity, extraction_tier, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            experiment_id,
            claim_doubted,
            evidence_level_of_claim,
            evidence_for_doubt,
            severity,
            extraction_tier,
            utcnow(),
        ),
    )
    return int(cursor.lastrowid or 0)


def get_doubts(conn: sqlite3.Connection, experiment_id: int) -> list[DoubtRecord]:
    rows = conn.execute(
        "SELECT * FROM doubts WHERE experiment_id = ? ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [DoubtRecord.model_validate(dict(row)) for row in rows]


def get_confirmed_doubts(conn: sqlite3.Connection, experiment_id: int) -> list[DoubtRecord]:
    rows = conn.execute(
        "SELECT * FROM doubts WHERE experiment_id = ? AND resolution = 'confirmed' ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [DoubtRecord.model_validate(dict(row)) for row in rows]


def update_doubt_resolution(conn: sqlite3.Connection, doubt_id: int, resolution: str) -> None:
    conn.execute("UPDATE doubts SET resolution = ? WHERE id = ?", (resolution, doubt_id))


def has_doubts(conn: sqlite3.Connection, experiment_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM doubts WHERE experiment_id = ? LIMIT 1", (experiment_id,)
    ).fetchone()
    return row is not None


# --- Challenge and Finding Operations ---

def insert_challenge(
    conn: sqlite3.Connection,
    experiment_id: int,
    description: str,
    reasoning: str,
    extraction_tier: Optional[int] = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO challenges (experiment_id, description, reasoning, extraction_tier, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (experiment_id, description, reasoning, extraction_tier, utcnow()),
    )
    return int(cursor.lastrowid or 0)


def get_challenges(conn: sqlite3.Connection, experiment_id: int) -> list[ChallengeRecord]:
    rows = conn.execute(
        "SELECT * FROM challenges WHERE experiment_id = ? ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [ChallengeRecord.model_validate(dict(row)) for row in rows]


def has_challenges(conn: sqlite3.Connection, experiment_id: int) -> bool:
    row = conn.execute(
        "SELECT 1 FROM challenges WHERE experiment_id = ? LIMIT 1", (experiment_id,)
    ).fetchone()
    return row is not None


def insert_finding(
    conn: sqlite3.Connection,
    experiment_id: int,
    approach: str,
    source: str,
    relevance: str,
    contradicts_current: bool,  # noqa: FBT001
    extraction_tier: Optional[int] = None,
) -> int:
    cursor = conn.execute(
        """
        INSERT INTO findings (experiment_id, approach, source, relevance, contradicts_current,
            extraction_tier, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            experiment_id,
            approach,
            source,
            relevance,
            int(contradicts_current),
            extraction_tier,
            utcnow(),
        ),
    )
    return int(cursor.lastrowid or 0)


def get_findings(conn: sqlite3.Connection, experiment_id: int) -> list[FindingRecord]:
    rows = conn.execute(
        "SELECT * FROM findings WHERE experiment_id = ? ORDER BY id",
        (experiment_id,),
    ).fetchall()
    return [FindingRecord.model_validate(dict(row)) for row in rows]


# --- Sub-type Failure Tally ---

def increment_sub_type_failure(
    conn: sqlite3.Connection, sub_type: str, experiment_id: int, grade: str
) -> None:
    conn.execute(
        """
        INSERT INTO sub_type_failures (sub_type, experiment_id, grade, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (sub_type, experiment_id, grade, utcnow()),
    )


def count_sub_type_failures(conn: sqlite3.Connection, sub_type: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM sub_type_failures WHERE sub_type = ?", (sub_type,)
    ).fetchone()
    return int(row["n"])


def sub_type_failure_counts(conn: sqlite3.Connection) -> dict[str, int]:
    """Failure tally per sub-type."""
    rows = conn.execute(
        """
        SELECT sub_type, COUNT(*) AS n FROM sub_type_failures
        GROUP BY sub_type
        ORDER BY sub_type
        """
    ).fetchall()
    return {row["sub_type"]: int(row["n"]) for row in rows}


# --- Compression Operations ---

def record_compression(
    conn: sqlite3.Connection, experiments_since_last: int, size_before: int, size_after: int
) -> None:
    conn.execute(
        """
        INSERT INTO compressions (experiments_since_last, synthesis_size_before,
            synthesis_size_after, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (experiments_since_last, size_before, size_after, utcnow()),
    )


def get_last_compression(conn: sqlite3.Connection) -> Optional[CompressionRecord]:
    row = conn.execute("SELECT * FROM compressions ORDER BY id DESC LIMIT 1").fetchone()
    if row is None:
        return None
    return CompressionRecord.model_validate(dict(row))


def count_finished_since_compression(conn: sqlite3.Connection) -> int:
    """Count experiments that reached a terminal status after the last compression."""
    last = get_last_compression(conn)
    query = "SELECT COUNT(*) AS n FROM experiments WHERE status IN ('merged', 'dead_end')"
    params: list[Any] = []
    if last is not None and last.created_at:
        query += " AND updated_at > ?"
        params.append(last.created_at)
    row = conn.execute(query, params).fetchone()
    return int(row["n"])


# --- Swarm Operations ---

def create_swarm_run(conn: sqlite3.Connection, goal: str, parallel_count: int) -> int:
    cursor = conn.execute(
        "INSERT INTO swarm_runs (goal, parallel_count, started_at) VALUES (?, ?, ?)",
        (goal, parallel_count, utcnow()),
    )
    return int(cursor.lastrowid or 0)


def update_swarm_run(
    conn: sqlite3.Connection,
    run_id: int,
    status: str,
    total_cost_usd: float,
    best_experiment_slug: Optional[str],
) -> None:
    conn.execute(
        """
        UPDATE swarm_runs
        SET status = ?, total_cost_usd = ?, best_experiment_slug = ?, finished_at = ?
        WHERE id = ?
        """,
        (status, total_cost_usd, best_experiment_slug, utcnow(), run_id),
    )


def get_swarm_run(conn: sqlite3.Connection, run_id: int) -> Optional[SwarmRunRecord]:
    row = conn.execute("SELECT * FROM swarm_runs WHERE id = ?", (run_id,)).fetchone()
    if row is None:
        return None
    return SwarmRunRecord.model_validate(dict(row))


def add_swarm_member(
    conn: sqlite3.Connection, run_id: int, experiment_slug: str, worktree_path: str
) -> None:
    conn.execute(
        """
        INSERT INTO swarm_members (swarm_run_id, experiment_slug, worktree_path)
        VALUES (?, ?, ?)
        """,
        (run_id, experiment_slug, worktree_path),
    )


def update_swarm_member(
    conn: sqlite3.Connection,
    run_id: int,
    experiment_slug: str,
    final_status: str,
    overall_grade: Optional[str],
    cost_usd: float,
    error: Optional[str],
) -> None:
    conn.execute(
        """
        UPDATE swarm_members
        SET final_status = ?, overall_grade = ?, cost_usd = ?, error = ?
        WHERE swarm_run_id = ? AND experiment_slug = ?
        """,
        (final_status, overall_grade, cost_usd, error, run_id, experiment_slug),
    )


def get_swarm_members(conn: sqlite3.Connection, run_id: int) -> list[SwarmMemberRecord]:
    rows = conn.execute(
        "SELECT * FROM swarm_members WHERE swarm_run_id = ? ORDER BY id", (run_id,)
    ).fetchall()
    return [SwarmMemberRecord.model_validate(dict(row)) for row in rows]
