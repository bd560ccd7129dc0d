# Copyright (c) Syntropy Systems
"""Tests for agent output extraction and stream-json parsing."""

import json

import pytest

from conclave.agents.parse import (
    extract,
    extract_json_block,
    extract_via_patterns,
    validate_for_role,
)
from conclave.agents.spawn import AgentRequest, ClaudeAgentInvoker, parse_stream_json
from conclave.errors import SubprocessFailure
from conclave.models.agent import BuilderOutput, CriticOutput, PlannerOutput, VerifierOutput

from conftest import agent_reply


class _Recorder:
    """Reconstruction callback that records calls."""

    def __init__(self, reply: str = "") -> None:
        self.reply = reply
        self.calls: list[tuple[str, str]] = []

    def __call__(self, role: str, prompt: str) -> str:
        self.calls.append((role, prompt))
        return self.reply


class TestTierOne:
    """Tests for the embedded conclave-json block."""

    def test_block_wins_without_other_tiers(self):
        text = agent_reply(
            {"grades": [{"component": "parser", "grade": "SOUND"}]},
            prose="- parser: rejected because prose disagrees",
        )
        reconstruct = _Recorder()
        result = extract("verifier", text, reconstruct)

        assert result.tier == 1
        assert isinstance(result.data, VerifierOutput)
        assert result.data.grades[0].grade == "sound"
        assert not result.low_confidence
        assert reconstruct.calls == []

    def test_malformed_block_is_skipped(self):
        text = "<!-- conclave-json\n{not json}\n-->\n" + agent_reply({"doubts": []})
        assert extract_json_block(text) == {"doubts": []}

    def test_doubt_ids_accept_references(self):
        text = agent_reply(
            {
                "grades": [{"component": "a", "grade": "good"}],
                "doubt_resolutions": [{"doubt_id": "DOUBT-7", "resolution": "Confirmed"}],
            }
        )
        result = extract("verifier", text)
        assert isinstance(result.data, VerifierOutput)
        assert result.data.doubt_resolutions[0].doubt_id == 7
        assert result.data.doubt_resolutions[0].resolution == "confirmed"

    def test_planner_single_hypothesis(self):
        result = extract("planner", agent_reply({"hypothesis": "Index the lookup table"}))
        assert isinstance(result.data, PlannerOutput)
        assert result.data.hypotheses == ["Index the lookup table"]


class TestTierTwo:
    """Tests for the prose-pattern adapter."""

    def test_builder_decisions(self):
        text = (
            "- Decision: use a trie for prefix lookups (evidence: test)\n"
            "[analogy] Cache invalidation mirrors the HTTP layer\n"
        )
        found = extract_via_patterns("builder", text)
        decisions = found["decisions"]
        assert isinstance(decisions, list)
        assert [d["evidence_level"] for d in decisions] == ["test", "analogy"]
        assert decisions[0]["description"] == "use a trie for prefix lookups"

    def test_verifier_grade_bullets(self):
        text = "## Grades\n- **tokenizer**: sound\n- cache layer: weak - misses eviction\n"
        found = extract_via_patterns("verifier", text)
        grades = found["grades"]
        assert isinstance(grades, list)
        assert [(g["component"], g["grade"]) for g in grades] == [
            ("tokenizer", "sound"),
            ("cache layer", "weak"),
        ]
        assert grades[1]["notes"] == "misses eviction"

    def test_critic_doubts(self):
        text = "Doubt: the benchmark is representative\nSeverity: critical\n"
        found = extract_via_patterns("critic", text)
        doubts = found["doubts"]
        assert isinstance(doubts, list)
        assert doubts[0]["severity"] == "critical"
        assert doubts[0]["claim_doubted"] == "the benchmark is representative"

    def test_nothing_found(self):
        assert extract_via_patterns("verifier", "All done, looks fine.") == {}
        assert extract_via_patterns("scout", "- Decision: x (evidence: test)") == {}

    def test_tier_two_skips_reconstruction(self):
        reconstruct = _Recorder()
        result = extract("verifier", "- parser: good\n", reconstruct)

        assert result.tier == 2
        assert result.low_confidence
        assert isinstance(result.data, VerifierOutput)
        assert reconstruct.calls == []


class TestTierThree:
    """Tests for model reconstruction."""

    def test_reconstruction_used_when_patterns_fail(self):
        reply = 'Sure:\n{"doubts": [{"claim_doubted": "x", "severity": "minor"}]}'
        reconstruct = _Recorder(reply)
        result = extract("critic", "Nothing structured here.", reconstruct)

        assert result.tier == 3
        assert isinstance(result.data, CriticOutput)
        assert reconstruct.calls[0][0] == "critic"
        assert "Nothing structured here." in reconstruct.calls[0][1]

    def test_all_tiers_fail(self):
        result = extract("builder", "Nothing structured here.", _Recorder("no json"))
        assert result.data is None
        assert result.tier is None
        assert not result.ok

    def test_reconstruction_error_is_a_failure(self):
        def boom(role: str, prompt: str) -> str:
            raise SubprocessFailure(["claude"], 1, "rate limited")

        result = extract("builder", "Nothing structured here.", boom)
        assert result.data is None

    def test_unknown_role(self):
        with pytest.raises(ValueError, match="Unknown agent role"):
            extract("oracle", "text")


class TestValidateForRole:
    """Tests for required-field validation."""

    def test_missing_fields(self):
        assert validate_for_role("builder", BuilderOutput()) == (False, ["decisions"])

    def test_present_fields(self):
        output = BuilderOutput.model_validate(
            {"decisions": [{"description": "d", "evidence_level": "test"}]}
        )
        assert validate_for_role("builder", output) == (True, [])

    def test_no_data(self):
        assert validate_for_role("critic", None) == (False, ["doubts"])


class TestStreamJson:
    """Tests for the agent CLI transcript parser."""

    def test_assistant_text_and_cost(self):
        lines = [
            {"type": "system", "subtype": "init"},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hello"}]}},
            {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Read"}]}},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "World\n"}]}},
            {"type": "result", "result": "ignored", "total_cost_usd": 0.25},
        ]
        text, cost = parse_stream_json("\n".join(json.dumps(line) for line in lines))
        assert text == "Hello\nWorld\n"
        assert cost == 0.25

    def test_result_used_without_assistant_text(self):
        output = json.dumps({"type": "result", "result": "final answer", "total_cost_usd": 1})
        assert parse_stream_json(output) == ("final answer", 1.0)

    def test_non_json_lines_kept(self):
        text, _ = parse_stream_json("plain line\n")
        assert text == "plain line\n"

    def test_build_argv(self, temp_dir):
        invoker = ClaudeAgentInvoker(temp_dir, ["claude"])
        argv = invoker.build_argv(
            AgentRequest(role="critic", prompt="go", model="sonnet", tools=["Read"], system_prompt="be brief")
        )
        assert argv[:5] == ["claude", "--print", "--output-format", "stream-json", "--verbose"]
        assert argv[argv.index("--model") + 1] == "sonnet"
        assert argv[argv.index("--allowedTools") + 1] == "Read"
        assert argv[-2:] == ["-p", "go"]
