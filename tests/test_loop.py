# Copyright (c) Syntropy Systems
"""End-to-end tests for the automatic drivers."""

from conclave.agents.roles import artifact_path, synthesis_path
from conclave.cycle import create_experiment
from conclave.db import get_experiment, increment_sub_type_failure, list_dead_ends, list_experiments
from conclave.loop import describe, drive_experiment, plan_hypotheses, run_goal

from conftest import agent_reply, cycle_scripts


class TestDriveExperiment:
    """Tests for running one experiment to a terminal status."""

    def test_sound_merges(self, ctx, agents, fake_git):
        agents.scripts.update(cycle_scripts("sound"))
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment)

        assert result.stopped == "terminal"
        assert result.experiment.status == "merged"
        assert result.steps == 6
        assert agents.roles() == ["gatekeeper", "builder", "critic", "adversary", "verifier"]
        assert fake_git.called("merge_into_trunk") == [
            ("merge_into_trunk", experiment.branch, f"Merge experiment branch {experiment.branch}")
        ]

    def test_good_merges_with_fragility_entry(self, ctx, agents):
        agents.scripts.update(cycle_scripts("good"))
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment)

        assert result.experiment.status == "merged"
        assert "**lookup**: good result" in synthesis_path(ctx.root, "fragility.md").read_text()

    def test_weak_cycles_back_with_guidance(self, ctx, agents):
        agents.scripts.update(cycle_scripts("weak", "sound"))
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment, max_steps=10)

        # earlier weak grades still count, so the sound rebuild cycles back too
        assert result.stopped == "step_budget"
        assert result.experiment.status == "building"
        assert agents.roles()[5:] == ["synthesiser", "builder", "critic", "verifier", "synthesiser"]
        assert "Guidance From Previous Iterations" in agents.requests[6].prompt
        guidance = result.experiment.builder_guidance
        assert guidance.startswith("### Iteration 2 (latest)")
        assert guidance.count("(latest)") == 1

    def test_rejected_dead_ends(self, ctx, agents, fake_git):
        agents.scripts.update(cycle_scripts("rejected"))
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment)

        assert result.experiment.status == "dead_end"
        assert fake_git.called("discard_changes")
        (dead_end,) = list_dead_ends(ctx.conn)
        assert dead_end.why_failed == "rejected result"

    def test_gate_rejection_pauses(self, ctx, agents):
        agents.scripts.update(cycle_scripts("sound", gate="reject"))
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment)

        assert result.stopped == "gate_rejected"
        assert result.steps == 1
        assert result.experiment.status == "gated"

    def test_extraction_failure_retried(self, ctx, agents):
        scripts = cycle_scripts("sound")
        scripts["builder"] = ["Did some work, no report.", scripts["builder"]]
        agents.scripts.update(scripts)
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment)

        assert result.experiment.status == "merged"
        assert result.steps == 7
        assert len(result.failures) == 1
        assert "builder" in result.failures[0]
        assert result.experiment.last_failure is None

    def test_step_budget(self, ctx, agents):
        agents.scripts.update(cycle_scripts("weak"))
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment, max_steps=8)

        assert result.stopped == "step_budget"
        assert result.steps == 8
        assert result.experiment.status == "doubted"

    def test_breaker_trips_during_cycle(self, ctx, agents):
        ctx.config.cycle.circuit_breaker_threshold = 1
        agents.scripts.update(cycle_scripts("weak"))
        experiment = create_experiment(ctx, "Index lookups with a trie", sub_type="index")

        result = drive_experiment(ctx, experiment)

        assert result.stopped == "circuit_breaker"
        assert result.experiment.status == "dead_end"
        assert result.resolution is not None
        assert result.resolution.breaker_tripped

    def test_tripped_breaker_stops_running_experiment(self, ctx, agents):
        ctx.config.cycle.circuit_breaker_threshold = 3
        agents.scripts.update(cycle_scripts("sound"))
        agents.scripts["auditor"] = agent_reply(
            {"verdict": "reclassify", "reclassify_from": "parser", "reasoning": "Lookups are not parsing"}
        )
        experiment = create_experiment(ctx, "Index lookups with a trie", sub_type="parser")
        for _ in range(3):
            increment_sub_type_failure(ctx.conn, "parser", experiment.id, "weak")

        result = drive_experiment(ctx, experiment)

        assert result.stopped == "circuit_breaker"
        assert result.steps == 0
        assert result.experiment.status == "dead_end"
        assert agents.roles() == ["auditor"]
        assert artifact_path(ctx.root, "auditor", experiment).exists()
        (dead_end,) = list_dead_ends(ctx.conn, category="procedural")
        assert "Circuit breaker tripped for sub-type 'parser'" in dead_end.why_failed

    def test_forced_experiment_runs_past_tripped_breaker(self, ctx, agents):
        ctx.config.cycle.circuit_breaker_threshold = 3
        agents.scripts.update(cycle_scripts("sound"))
        earlier = create_experiment(ctx, "Parse with a regex", sub_type="parser")
        for _ in range(3):
            increment_sub_type_failure(ctx.conn, "parser", earlier.id, "weak")
        experiment = create_experiment(ctx, "Index lookups with a trie", sub_type="parser", force=True)

        result = drive_experiment(ctx, experiment)

        assert experiment.breaker_override
        assert result.stopped == "terminal"
        assert result.experiment.status == "merged"
        assert "auditor" not in agents.roles()

    def test_merge_failure_holds_at_verified(self, ctx, agents, fake_git):
        agents.scripts.update(cycle_scripts("sound"))
        fake_git.fail_on.add("merge_into_trunk")
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment)

        assert result.stopped == "merge_failed"
        assert result.experiment.status == "verified"
        assert result.resolution is not None
        assert not result.resolution.merged
        stored = get_experiment(ctx.conn, experiment.id)
        assert stored.last_failure == result.resolution.merge_error
        assert stored.last_failure.startswith(f"Merge of {experiment.branch} into trunk failed")
        assert fake_git.called("abort_merge")

        fake_git.fail_on.clear()
        retry = drive_experiment(ctx, stored)

        assert retry.stopped == "terminal"
        assert retry.experiment.status == "merged"
        assert retry.experiment.last_failure is None

    def test_shutdown_stops_before_next_step(self, ctx, agents):
        agents.scripts.update(cycle_scripts("sound"))
        experiment = create_experiment(ctx, "Index lookups with a trie")
        ctx.shutdown.set()

        result = drive_experiment(ctx, experiment)

        assert result.stopped == "shutdown"
        assert result.steps == 0
        assert agents.requests == []

    def test_db_only_leaves_git_alone(self, ctx, agents, fake_git):
        agents.scripts.update(cycle_scripts("sound"))
        experiment = create_experiment(ctx, "Index lookups with a trie")

        result = drive_experiment(ctx, experiment, db_only=True)

        assert result.experiment.status == "merged"
        assert fake_git.called("merge_into_trunk") == []


class TestDescribe:
    """Tests for the machine-readable next-step view."""

    def test_fresh_and_terminal(self, ctx, agents):
        agents.scripts.update(cycle_scripts("sound"))
        experiment = create_experiment(ctx, "Index lookups with a trie")
        assert describe(ctx, experiment) == {
            "slug": experiment.slug,
            "status": "classified",
            "next": "gated",
            "last_failure": None,
            "gate_rejection_reason": None,
        }

        drive_experiment(ctx, experiment)
        assert describe(ctx, experiment)["next"] is None


class TestRunGoal:
    """Tests for planning and driving toward a goal."""

    def test_runs_until_goal_met(self, ctx, agents):
        agents.scripts.update(cycle_scripts("sound"))
        agents.scripts["planner"] = [
            agent_reply({"goal_met": False, "hypothesis": "Index lookups with a trie"}),
            agent_reply({"goal_met": True, "hypotheses": []}),
        ]

        run = run_goal(ctx, "Make lookups fast")

        assert run.goal_met
        assert run.stopped == "goal_met"
        assert [r.experiment.status for r in run.results] == ["merged"]
        assert "index-lookups-with-a-trie" in agents.requests[-1].prompt

    def test_max_experiments(self, ctx, agents):
        agents.scripts.update(cycle_scripts("rejected"))
        agents.scripts["planner"] = agent_reply({"hypotheses": ["Index lookups with a trie"]})

        run = run_goal(ctx, "Make lookups fast", max_experiments=2)

        assert run.stopped == "max_experiments"
        assert [e.slug for e in list_experiments(ctx.conn)] == [
            "index-lookups-with-a-trie",
            "index-lookups-with-a-trie-2",
        ]

    def test_planning_failure(self, ctx, agents):
        agents.scripts["planner"] = "I have no idea."
        run = run_goal(ctx, "Make lookups fast")
        assert run.stopped == "planning_failed"
        assert run.results == []

    def test_multi_hypothesis_prompt(self, ctx, agents):
        agents.scripts["planner"] = agent_reply({"hypotheses": ["a trie", "a bloom filter"]})
        plan = plan_hypotheses(ctx, "Make lookups fast", count=2)
        assert plan.hypotheses == ["a trie", "a bloom filter"]
        assert "Propose 2 hypotheses" in agents.requests[0].prompt
