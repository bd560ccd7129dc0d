# Copyright (c) Syntropy Systems
"""Tests for the SQLite store."""

import sqlite3

import pytest

from conclave.db import (
    add_swarm_member,
    count_finished_since_compression,
    create_experiment,
    create_swarm_run,
    get_connection,
    get_experiment_by_slug,
    get_findings,
    get_latest_experiment,
    get_swarm_members,
    get_swarm_run,
    get_verifications,
    insert_decision,
    insert_doubt,
    insert_finding,
    insert_verification,
    list_decisions,
    list_experiments,
    overturn_decision,
    record_compression,
    set_last_failure,
    transaction,
    update_experiment_status,
    update_swarm_member,
    update_swarm_run,
)


class TestConnection:
    """Tests for connection settings."""

    def test_wal_mode(self, conclave_project):
        conn = get_connection(conclave_project / ".conclave" / "conclave.db")
        try:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
            assert mode == "wal"
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        finally:
            conn.close()

    def test_foreign_keys_enforced(self, memory_db):
        with pytest.raises(sqlite3.IntegrityError):
            insert_decision(memory_db, 999, "orphan", "test")

    def test_check_constraints(self, memory_db):
        experiment = create_experiment(memory_db, "fast", "exp/001-fast", "Go faster")
        with pytest.raises(sqlite3.IntegrityError):
            insert_verification(memory_db, experiment.id, "core", "excellent")
        with pytest.raises(sqlite3.IntegrityError):
            insert_doubt(memory_db, experiment.id, "claim", "test", "why", "huge")


class TestTransaction:
    """Tests for explicit transactions."""

    def test_rollback_on_error(self, memory_db):
        with pytest.raises(RuntimeError), transaction(memory_db):
            create_experiment(memory_db, "fast", "exp/001-fast", "Go faster")
            raise RuntimeError("boom")
        assert get_experiment_by_slug(memory_db, "fast") is None
        assert not memory_db.in_transaction

    def test_nested_joins_outer(self, memory_db):
        with pytest.raises(RuntimeError), transaction(memory_db):
            create_experiment(memory_db, "fast", "exp/001-fast", "Go faster")
            with transaction(memory_db):
                create_experiment(memory_db, "slow", "exp/002-slow", "Go slower")
            raise RuntimeError("boom")
        assert list_experiments(memory_db) == []

    def test_commit(self, memory_db):
        with transaction(memory_db):
            create_experiment(memory_db, "fast", "exp/001-fast", "Go faster")
        assert get_experiment_by_slug(memory_db, "fast") is not None


class TestExperiments:
    """Tests for experiment rows."""

    def test_create_defaults(self, memory_db):
        experiment = create_experiment(
            memory_db, "fast", "exp/001-fast", "Go faster", context_files=["a.py", "b.py"]
        )
        assert experiment.status == "classified"
        assert experiment.number == "001"
        assert experiment.context_files == ["a.py", "b.py"]
        assert experiment.last_failure is None

    def test_slug_unique(self, memory_db):
        create_experiment(memory_db, "fast", "exp/001-fast", "Go faster")
        with pytest.raises(sqlite3.IntegrityError):
            create_experiment(memory_db, "fast", "exp/002-fast", "Go faster again")

    def test_latest_skips_terminal(self, memory_db):
        first = create_experiment(memory_db, "first", "exp/001-first", "One")
        second = create_experiment(memory_db, "second", "exp/002-second", "Two")
        update_experiment_status(memory_db, second.id, "dead_end")

        latest = get_latest_experiment(memory_db)
        assert latest is not None
        assert latest.id == first.id
        assert [e.slug for e in list_experiments(memory_db, active_only=True)] == ["first"]
        assert [e.slug for e in list_experiments(memory_db, status="dead_end")] == ["second"]

    def test_last_failure_round_trip(self, memory_db):
        experiment = create_experiment(memory_db, "fast", "exp/001-fast", "Go faster")
        set_last_failure(memory_db, experiment.id, "builder timed out")
        assert get_experiment_by_slug(memory_db, "fast").last_failure == "builder timed out"
        set_last_failure(memory_db, experiment.id, None)
        assert get_experiment_by_slug(memory_db, "fast").last_failure is None


class TestChildRows:
    """Tests for records attached to experiments."""

    def test_overturned_decision(self, memory_db):
        experiment = create_experiment(memory_db, "fast", "exp/001-fast", "Go faster")
        old = insert_decision(memory_db, experiment.id, "use a dict", "judgment")
        new = insert_decision(memory_db, experiment.id, "use a trie", "test", "benchmarked", 1)
        overturn_decision(memory_db, old, new)

        decisions = list_decisions(memory_db, experiment.id)
        assert [(d.status, d.overturned_by) for d in decisions] == [("overturned", new), ("active", None)]
        assert [d.id for d in list_decisions(memory_db, evidence_level="test")] == [new]

    def test_boolean_columns(self, memory_db):
        experiment = create_experiment(memory_db, "fast", "exp/001-fast", "Go faster")
        insert_verification(memory_db, experiment.id, "core", "good", True, False, "ok", 2)
        insert_finding(memory_db, experiment.id, "bloom filter", "paper", "high", True)

        (verification,) = get_verifications(memory_db, experiment.id)
        assert verification.provenance_intact is True
        assert verification.content_correct is False
        assert verification.extraction_tier == 2
        assert get_findings(memory_db, experiment.id)[0].contradicts_current is True


class TestCompressions:
    """Tests for the compression log."""

    def test_counts_all_finished_without_compression(self, memory_db):
        for n, status in enumerate(("merged", "dead_end", "building"), start=1):
            experiment = create_experiment(memory_db, f"e{n}", f"exp/{n:03d}-e{n}", "x")
            update_experiment_status(memory_db, experiment.id, status)
        assert count_finished_since_compression(memory_db) == 2

    def test_counts_only_after_last_compression(self, memory_db):
        experiment = create_experiment(memory_db, "e1", "exp/001-e1", "x")
        memory_db.execute(
            "UPDATE experiments SET status = 'merged', updated_at = '2020-01-01T00:00:00Z' WHERE id = ?",
            (experiment.id,),
        )
        record_compression(memory_db, 1, 500, 300)
        assert count_finished_since_compression(memory_db) == 0


class TestSwarmRecords:
    """Tests for swarm run bookkeeping."""

    def test_run_and_members(self, memory_db):
        run_id = create_swarm_run(memory_db, "Make it faster", 2)
        add_swarm_member(memory_db, run_id, "trie", "/tmp/p-swarm-1-trie")
        add_swarm_member(memory_db, run_id, "cache", "/tmp/p-swarm-2-cache")
        update_swarm_member(memory_db, run_id, "trie", "merged", "sound", 1.5, None)
        update_swarm_member(memory_db, run_id, "cache", "error", None, 0.25, "crashed")
        update_swarm_run(memory_db, run_id, "completed", 1.75, "trie")

        run = get_swarm_run(memory_db, run_id)
        assert run is not None
        assert (run.status, run.total_cost_usd, run.best_experiment_slug) == ("completed", 1.75, "trie")
        assert run.finished_at is not None

        members = get_swarm_members(memory_db, run_id)
        assert [(m.experiment_slug, m.final_status, m.error) for m in members] == [
            ("trie", "merged", None),
            ("cache", "error", "crashed"),
        ]

    def test_bad_run_status(self, memory_db):
        run_id = create_swarm_run(memory_db, "Make it faster", 2)
        with pytest.raises(sqlite3.IntegrityError):
            update_swarm_run(memory_db, run_id, "exploded", 0.0, None)
