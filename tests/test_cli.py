# Copyright (c) Syntropy Systems
"""Tests for conclave CLI commands."""

import json

import yaml
from typer.testing import CliRunner

from conclave.breaker import record_dead_end
from conclave.cli.main import app
from conclave.db import (
    create_experiment,
    get_experiment_by_slug,
    increment_sub_type_failure,
    insert_decision,
    open_store,
    update_experiment_status,
)

runner = CliRunner()


class TestInitCommand:
    """Tests for conclave init."""

    def test_init_creates_project(self, temp_dir, monkeypatch):
        """Test that init creates .conclave and the synthesis directory."""
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["init", "--name", "lookup"])

        assert result.exit_code == 0
        assert "Initialized conclave project" in result.stdout
        conclave_dir = temp_dir / ".conclave"
        assert (conclave_dir / "conclave.db").exists()
        assert (conclave_dir / "agents").is_dir()
        assert (conclave_dir / ".gitignore").read_text() == "conclave.db*\n"
        assert (temp_dir / "docs" / "synthesis").is_dir()
        config = yaml.safe_load((conclave_dir / "config.yaml").read_text())
        assert config["project"]["name"] == "lookup"
        assert config["cycle"]["circuit_breaker_threshold"] == 3

    def test_init_already_initialized(self, conclave_project):
        """Test init when already initialized."""
        result = runner.invoke(app, ["init"])

        assert result.exit_code == 0
        assert "Already initialized" in result.stdout


class TestOutsideProject:
    """Commands that need a project fail cleanly without one."""

    def test_new_requires_project(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)

        result = runner.invoke(app, ["new", "Use a trie"])

        assert result.exit_code == 1
        assert "conclave init" in result.stdout

    def test_status_requires_project(self, temp_dir, monkeypatch):
        monkeypatch.chdir(temp_dir)
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1


class TestExperimentCommands:
    """Tests for conclave new, revert and status."""

    def test_new(self, conclave_project, db_connection):
        """Test creating an experiment outside a git repository."""
        result = runner.invoke(app, ["new", "Use a trie", "--sub-type", "index"])

        assert result.exit_code == 0
        assert "Created experiment" in result.stdout
        assert "use-a-trie" in result.stdout
        experiment = get_experiment_by_slug(db_connection, "use-a-trie")
        assert experiment is not None
        assert experiment.sub_type == "index"

    def test_new_refused_by_breaker(self, conclave_project, db_connection):
        experiment = create_experiment(db_connection, "old", "exp/001-old", "x", sub_type="index")
        for _ in range(3):
            increment_sub_type_failure(db_connection, "index", experiment.id, "weak")

        result = runner.invoke(app, ["new", "Use a trie", "--sub-type", "index"])
        assert result.exit_code == 1
        assert "Circuit breaker tripped" in result.stdout

        result = runner.invoke(app, ["new", "Use a trie", "--sub-type", "index", "--force"])
        assert result.exit_code == 0

    def test_new_unknown_dependency(self, conclave_project):
        result = runner.invoke(app, ["new", "Use a trie", "--depends-on", "missing"])
        assert result.exit_code == 1
        assert "does not exist" in result.stdout

    def test_revert(self, conclave_project, db_connection):
        create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie")

        result = runner.invoke(app, ["revert", "trie", "--reason", "wrong layer"])

        assert result.exit_code == 0
        assert "Reverted trie to dead-end" in result.stdout
        assert get_experiment_by_slug(db_connection, "trie").status == "dead_end"

    def test_revert_unknown(self, conclave_project):
        result = runner.invoke(app, ["revert", "nope"])
        assert result.exit_code == 1
        assert "Experiment not found: nope" in result.stdout

    def test_status_empty(self, conclave_project):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "No active experiments" in result.stdout
        assert "0 experiment(s) finished" in result.stdout

    def test_status_lists_active(self, conclave_project, db_connection):
        create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie")
        done = create_experiment(db_connection, "regex", "exp/002-regex", "Use a regex")
        update_experiment_status(db_connection, done.id, "dead_end")

        result = runner.invoke(app, ["status", "--json"])
        assert result.exit_code == 0
        assert [e["slug"] for e in json.loads(result.stdout)] == ["trie"]

        result = runner.invoke(app, ["status", "--all", "--json"])
        assert [e["slug"] for e in json.loads(result.stdout)] == ["trie", "regex"]

    def test_next_json(self, conclave_project, db_connection):
        create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie")

        result = runner.invoke(app, ["next", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {
            "slug": "trie",
            "status": "classified",
            "next": "gated",
            "last_failure": None,
            "gate_rejection_reason": None,
        }

    def test_next_without_experiment(self, conclave_project):
        result = runner.invoke(app, ["next"])
        assert result.exit_code == 1
        assert "No active experiment" in result.stdout

    def test_next_stops_at_tripped_breaker(self, conclave_project, db_connection, monkeypatch):
        audited = []
        monkeypatch.setattr(
            "conclave.cycle.audit_after_trip", lambda ctx, experiment: audited.append(experiment.slug)
        )
        experiment = create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie", sub_type="index")
        for _ in range(3):
            increment_sub_type_failure(db_connection, "index", experiment.id, "weak")

        result = runner.invoke(app, ["next"])

        assert result.exit_code == 0
        assert "Circuit breaker tripped" in result.stdout
        assert audited == ["trie"]
        assert get_experiment_by_slug(db_connection, "trie").status == "dead_end"

    def test_step_out_of_order(self, conclave_project, db_connection):
        create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie")
        result = runner.invoke(app, ["verify", "trie"])
        assert result.exit_code == 1
        assert "Invalid transition" in result.stdout


class TestQueryCommands:
    """Tests for dead-ends, decisions and breakers."""

    def test_dead_ends_empty(self, conclave_project):
        result = runner.invoke(app, ["dead-ends"])
        assert result.exit_code == 0
        assert "No dead-ends recorded" in result.stdout

    def test_dead_ends_json(self, conclave_project, db_connection):
        record_dead_end(db_connection, None, "global cache", "unbounded memory", "bound caches")

        result = runner.invoke(app, ["dead-ends", "--json"])

        assert result.exit_code == 0
        (row,) = json.loads(result.stdout)
        assert row["approach"] == "global cache"
        assert row["category"] == "structural"

    def test_decisions_filtered(self, conclave_project, db_connection):
        experiment = create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie")
        insert_decision(db_connection, experiment.id, "use a trie", "test")
        insert_decision(db_connection, experiment.id, "keys are ascii", "judgment")

        result = runner.invoke(app, ["decisions", "--level", "test", "--json"])

        assert result.exit_code == 0
        assert [d["description"] for d in json.loads(result.stdout)] == ["use a trie"]

    def test_breakers(self, conclave_project, db_connection):
        experiment = create_experiment(db_connection, "trie", "exp/001-trie", "x", sub_type="index")
        for _ in range(3):
            increment_sub_type_failure(db_connection, "index", experiment.id, "weak")

        result = runner.invoke(app, ["breakers", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == [
            {"sub_type": "index", "failures": 3, "threshold": 3, "tripped": True}
        ]

        result = runner.invoke(app, ["status"])
        assert "Circuit breaker tripped" in result.stdout


def _configure_metrics(project, command):
    path = project / ".conclave" / "config.yaml"
    config = yaml.safe_load(path.read_text())
    config["metrics"] = {
        "command": command,
        "fixtures": {"core": {"gate": True}},
        "tracked": {"error_rate": {"direction": "lower_is_better"}},
    }
    path.write_text(yaml.dump(config))


class TestMetricsCommands:
    """Tests for baseline, measure and compare."""

    def test_baseline_requires_command(self, conclave_project, db_connection):
        create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie")

        result = runner.invoke(app, ["baseline"])

        assert result.exit_code == 1
        assert "No metrics.command configured" in result.stdout

    def test_failing_command_is_an_error(self, conclave_project, db_connection):
        create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie")
        _configure_metrics(conclave_project, "echo broken >&2; exit 3")

        result = runner.invoke(app, ["measure", "trie"])

        assert result.exit_code == 1
        assert "exited with code 3" in result.stdout

    def test_baseline_measure_compare(self, conclave_project, db_connection):
        create_experiment(db_connection, "trie", "exp/001-trie", "Use a trie")
        _configure_metrics(conclave_project, "cat metrics.json")
        readings = conclave_project / "metrics.json"

        readings.write_text(json.dumps({"fixtures": {"core": {"error_rate": 0.25}}}))
        result = runner.invoke(app, ["baseline"])
        assert result.exit_code == 0
        assert "Captured 1 before metric(s)" in result.stdout

        readings.write_text(json.dumps({"fixtures": {"core": {"error_rate": 0.5}}}))
        result = runner.invoke(app, ["measure"])
        assert result.exit_code == 0

        result = runner.invoke(app, ["compare", "--json"])
        assert result.exit_code == 0
        (row,) = json.loads(result.stdout)
        assert (row["fixture"], row["metric"], row["before"], row["after"]) == ("core", "error_rate", 0.25, 0.5)
        assert row["regression"]
        assert row["gate"]

        result = runner.invoke(app, ["compare"])
        assert "REGRESSION" in result.stdout


class TestVerboseFlag:
    """Tests for the global options."""

    def test_verbose_accepted(self, conclave_project):
        result = runner.invoke(app, ["--verbose", "dead-ends"])
        assert result.exit_code == 0

    def test_store_untouched_by_read_commands(self, conclave_project):
        runner.invoke(app, ["status"])
        conn = open_store(conclave_project / ".conclave" / "conclave.db")
        try:
            assert conn.execute("SELECT COUNT(*) FROM experiments").fetchone()[0] == 0
        finally:
            conn.close()
