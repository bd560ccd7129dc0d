# Copyright (c) Syntropy Systems
"""Tests for the resolution engine."""
from __future__ import annotations

import itertools
import re

import pytest

from conclave.config import FixtureConfig, TrackedMetric
from conclave.db import (
    count_sub_type_failures,
    create_experiment,
    get_experiment,
    insert_metric,
    insert_verification,
    list_dead_ends,
    update_experiment_status,
)
from conclave.errors import EmptyVerificationSet
from conclave.resolve import (
    TRUNCATION_MARKER,
    accumulate_guidance,
    parse_dead_approaches,
    resolve,
    resolve_db_only,
    worst_grade,
)
from conclave.state import ExperimentStatus

from conftest import agent_reply

S = ExperimentStatus


def _verified(conn, grades, sub_type="parser", slug="fast-lookup"):
    """An experiment at VERIFIED with the given (component, grade, notes) rows."""
    experiment = create_experiment(
        conn, slug, f"exp/001-{slug}", "Use a hash map for lookups", sub_type=sub_type
    )
    update_experiment_status(conn, experiment.id, S.VERIFIED.value)
    for component, grade, notes in grades:
        insert_verification(conn, experiment.id, component, grade, notes=notes)
    return get_experiment(conn, experiment.id)


class TestWorstGrade:
    """Tests for worst_grade."""

    def test_order_invariant(self):
        grades = ["sound", "good", "weak", "rejected"]
        for n in range(1, len(grades) + 1):
            for subset in itertools.combinations(grades, n):
                expected = next(g for g in ("rejected", "weak", "good", "sound") if g in subset)
                for order in itertools.permutations(subset):
                    assert worst_grade(list(order)) == expected

    def test_empty_fails(self):
        with pytest.raises(EmptyVerificationSet):
            worst_grade([])

    def test_unknown_grade(self):
        with pytest.raises(ValueError, match="Unknown grade"):
            worst_grade(["excellent"])


class TestAccumulateGuidance:
    """Tests for iteration-numbered guidance."""

    def test_first_iteration(self):
        assert accumulate_guidance(None, "fix eviction") == "### Iteration 1 (latest)\nfix eviction"

    def test_only_newest_marked_latest(self):
        text = accumulate_guidance(accumulate_guidance(None, "one"), "two")
        assert text.startswith("### Iteration 2 (latest)\ntwo")
        assert text.count("(latest)") == 1
        assert "### Iteration 1\none" in text

    def test_truncation_keeps_numbering(self):
        guidance = None
        for i in range(1, 31):
            guidance = accumulate_guidance(guidance, f"attempt {i} " + "x" * 40, max_chars=600)

        assert guidance is not None
        numbers = [int(n) for n in re.findall(r"### Iteration (\d+)", guidance)]
        assert numbers[0] == 30
        assert numbers == list(range(30, 30 - len(numbers), -1))
        assert len(numbers) < 30
        assert guidance.count("(latest)") == 1
        assert guidance.count(TRUNCATION_MARKER.strip()) == 1
        assert len(guidance) <= 600 + len(TRUNCATION_MARKER)

    def test_oversized_new_section_is_cut(self):
        guidance = accumulate_guidance("### Iteration 1 (latest)\nshort", "x" * 20000, max_chars=600)

        assert guidance.startswith("### Iteration 2 (latest)\nxxx")
        assert "[TRUNCATED]" in guidance
        assert "### Iteration 1" not in guidance
        assert len(guidance) <= 600 + len(TRUNCATION_MARKER)

    def test_oversized_first_section_is_cut(self):
        guidance = accumulate_guidance(None, "y" * 20000, max_chars=600)
        assert guidance.startswith("### Iteration 1 (latest)\nyyy")
        assert len(guidance) <= 600

    def test_dead_approach_markers(self):
        text = "Try again.\n[DEAD-APPROACH] global lock: serialises every writer\n"
        assert parse_dead_approaches(text) == [("global lock", "serialises every writer")]


class TestResolveScenarios:
    """One test per grade outcome."""

    def test_sound_merges(self, ctx, fake_git):
        experiment = _verified(ctx.conn, [("lookup", "sound", None)])
        outcome = resolve(ctx, experiment)

        assert outcome.status is S.MERGED
        assert outcome.merged
        assert get_experiment(ctx.conn, experiment.id).status == "merged"
        assert fake_git.called("merge_into_trunk")[0][1] == experiment.branch

    def test_good_merges_with_one_fragility_entry(self, ctx):
        experiment = _verified(
            ctx.conn, [("lookup", "sound", None), ("cache", "good", "no eviction under load")]
        )
        outcome = resolve(ctx, experiment)

        assert outcome.status is S.MERGED
        fragility = (ctx.root / "docs" / "synthesis" / "fragility.md").read_text()
        assert fragility.count("## From experiment: fast-lookup") == 1
        assert "**cache**: no eviction under load" in fragility

    def test_weak_cycles_back_with_guidance(self, ctx, agents):
        agents.scripts["synthesiser"] = agent_reply(
            {"guidance": "Revisit the eviction policy"},
            prose="[DEAD-APPROACH] global lock: serialises every writer",
        )
        experiment = _verified(ctx.conn, [("cache", "weak", "thrashes")])
        outcome = resolve(ctx, experiment)

        assert outcome.status is S.BUILDING
        assert outcome.cycled_back
        stored = get_experiment(ctx.conn, experiment.id)
        assert stored.status == "building"
        assert stored.builder_guidance == "### Iteration 1 (latest)\nRevisit the eviction policy"
        assert count_sub_type_failures(ctx.conn, "parser") == 1
        assert [d.approach for d in list_dead_ends(ctx.conn)] == ["global lock"]

    def test_rejected_dead_ends(self, ctx, fake_git):
        experiment = _verified(ctx.conn, [("tokenizer", "rejected", "breaks unicode input")])
        fake_git.branch = experiment.branch
        outcome = resolve(ctx, experiment)

        assert outcome.status is S.DEAD_END
        assert get_experiment(ctx.conn, experiment.id).status == "dead_end"
        dead_ends = list_dead_ends(ctx.conn, category="structural")
        assert len(dead_ends) == 1
        assert dead_ends[0].why_failed == "breaks unicode input"
        assert count_sub_type_failures(ctx.conn, "parser") == 1
        assert fake_git.called("discard_changes")
        assert fake_git.branch == "main"

    def test_missing_grades_default_to_weak(self, ctx, agents):
        agents.scripts["synthesiser"] = agent_reply({"guidance": "Write the verification report"})
        experiment = _verified(ctx.conn, [])
        outcome = resolve(ctx, experiment)

        assert outcome.grade == "weak"
        assert outcome.low_confidence
        assert outcome.status is S.BUILDING

    def test_low_confidence_from_fallback_tiers(self, ctx):
        experiment = _verified(ctx.conn, [])
        insert_verification(ctx.conn, experiment.id, "lookup", "sound", extraction_tier=2)
        assert resolve_db_only(ctx, experiment).low_confidence


class TestMergeFailure:
    """A merge that git refuses leaves the experiment where it was."""

    def test_held_at_verified(self, ctx, fake_git):
        fake_git.fail_on.add("merge_into_trunk")
        experiment = _verified(ctx.conn, [("lookup", "sound", None)])

        outcome = resolve(ctx, experiment)

        assert outcome.status is S.VERIFIED
        assert not outcome.merged
        assert outcome.merge_error.startswith(f"Merge of {experiment.branch} into trunk failed")
        stored = get_experiment(ctx.conn, experiment.id)
        assert stored.status == "verified"
        assert stored.last_failure == outcome.merge_error
        assert fake_git.called("abort_merge")

    def test_good_grade_writes_no_fragility(self, ctx, fake_git):
        fake_git.fail_on.add("merge_into_trunk")
        experiment = _verified(ctx.conn, [("cache", "good", "no eviction under load")])

        assert resolve(ctx, experiment).merge_error
        assert not (ctx.root / "docs" / "synthesis" / "fragility.md").exists()
        assert not fake_git.called("commit_all")

    def test_retry_after_fix_merges(self, ctx, fake_git):
        fake_git.fail_on.add("merge_into_trunk")
        experiment = _verified(ctx.conn, [("lookup", "sound", None)])
        resolve(ctx, experiment)

        fake_git.fail_on.clear()
        outcome = resolve(ctx, get_experiment(ctx.conn, experiment.id))

        assert outcome.status is S.MERGED
        assert get_experiment(ctx.conn, experiment.id).last_failure is None


class TestGateRegression:
    """A regression on a gate fixture blocks an otherwise clean merge."""

    def test_sound_with_gate_regression_cycles_back(self, ctx, fake_git):
        ctx.config.metrics.fixtures = {"core": FixtureConfig(gate=True)}
        ctx.config.metrics.tracked = {"error_rate": TrackedMetric("lower_is_better")}
        experiment = _verified(ctx.conn, [("lookup", "sound", None)])
        insert_metric(ctx.conn, experiment.id, "before", "core", "error_rate", 0.1)
        insert_metric(ctx.conn, experiment.id, "after", "core", "error_rate", 0.2)

        outcome = resolve(ctx, experiment)

        assert outcome.status is S.BUILDING
        assert outcome.grade == "weak"
        assert [v.fixture for v in outcome.gate_violations] == ["core"]
        assert not fake_git.called("merge_into_trunk")
        stored = get_experiment(ctx.conn, experiment.id)
        assert "Gate fixture regression" in (stored.builder_guidance or "")
        assert count_sub_type_failures(ctx.conn, "parser") == 1

    def test_non_gate_regression_still_merges(self, ctx):
        ctx.config.metrics.fixtures = {"extra": FixtureConfig(gate=False)}
        ctx.config.metrics.tracked = {"error_rate": TrackedMetric("lower_is_better")}
        experiment = _verified(ctx.conn, [("lookup", "sound", None)])
        insert_metric(ctx.conn, experiment.id, "before", "extra", "error_rate", 0.1)
        insert_metric(ctx.conn, experiment.id, "after", "extra", "error_rate", 0.2)

        assert resolve(ctx, experiment).status is S.MERGED


class TestResolveDbOnly:
    """Store-only resolution leaves version control alone."""

    def test_no_git_calls(self, ctx, fake_git):
        experiment = _verified(ctx.conn, [("lookup", "good", "edge cases")])
        outcome = resolve_db_only(ctx, experiment)

        assert outcome.status is S.MERGED
        assert not outcome.merged
        assert not fake_git.called("merge_into_trunk")
        assert not fake_git.called("commit_all")
