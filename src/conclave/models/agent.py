# Copyright (c) Syntropy Systems
"""Pydantic models for structured agent output, one per role."""

from __future__ import annotations

import re
from typing import Literal, Optional, Union

from pydantic import Field, TypeAdapter, field_validator, model_validator
from typing_extensions import Annotated, TypeAlias

from .base import ConclaveBaseModel

EvidenceLevel: TypeAlias = Literal[
    "proof", "test", "strong_consensus", "consensus", "analogy", "judgment"
]
Grade: TypeAlias = Literal["sound", "good", "weak", "rejected"]
Severity: TypeAlias = Literal["minor", "moderate", "critical"]
Resolution: TypeAlias = Literal["confirmed", "dismissed", "inconclusive"]
GateDecision: TypeAlias = Literal["approve", "reject", "flag"]
AuditVerdict: TypeAlias = Literal["confirmed", "reclassify"]

_DOUBT_ID = re.compile(r"(\d+)")


def _lower(value: object) -> object:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class Decision(ConclaveBaseModel):
    """A builder decision tagged with the strength of its evidence."""

    description: str
    evidence_level: EvidenceLevel
    justification: str = ""

    @field_validator("evidence_level", mode="before")
    @classmethod
    def _normalize_level(cls, value: object) -> object:
        return _lower(value)


class ComponentGrade(ConclaveBaseModel):
    """A verifier grade for one component."""

    component: str
    grade: Grade
    provenance_intact: Optional[bool] = None
    content_correct: Optional[bool] = None
    notes: Optional[str] = None

    @field_validator("grade", mode="before")
    @classmethod
    def _normalize_grade(cls, value: object) -> object:
        return _lower(value)


class Doubt(ConclaveBaseModel):
    """A critic's doubt about a claim."""

    claim_doubted: str
    evidence_level_of_claim: str = "unknown"
    evidence_for_doubt: str = ""
    severity: Severity

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: object) -> object:
        return _lower(value)


class DoubtResolution(ConclaveBaseModel):
    """A verifier's ruling on a previously raised doubt."""

    doubt_id: Optional[int] = None
    resolution: Optional[Resolution] = None

    @field_validator("doubt_id", mode="before")
    @classmethod
    def _parse_doubt_id(cls, value: object) -> object:
        # Agents echo the reference table back as "DOUBT-7"
        if isinstance(value, str):
            match = _DOUBT_ID.search(value)
            return int(match.group(1)) if match else None
        return value

    @field_validator("resolution", mode="before")
    @classmethod
    def _normalize_resolution(cls, value: object) -> object:
        return _lower(value)


class Challenge(ConclaveBaseModel):
    """An adversarial test case."""

    description: str
    reasoning: str = ""


class Finding(ConclaveBaseModel):
    """An alternative approach found by the scout."""

    approach: str
    source: str = ""
    relevance: str = ""
    contradicts_current: bool = False


class CompressionReport(ConclaveBaseModel):
    synthesis_delta: str = ""
    new_dead_ends: list[str] = Field(default_factory=list)
    fragility_changes: list[str] = Field(default_factory=list)


class BuilderOutput(ConclaveBaseModel):
    role: Literal["builder"] = "builder"
    decisions: list[Decision] = Field(default_factory=list)


class CriticOutput(ConclaveBaseModel):
    role: Literal["critic"] = "critic"
    doubts: list[Doubt] = Field(default_factory=list)


class AdversaryOutput(ConclaveBaseModel):
    role: Literal["adversary"] = "adversary"
    challenges: list[Challenge] = Field(default_factory=list)


class VerifierOutput(ConclaveBaseModel):
    role: Literal["verifier"] = "verifier"
    grades: list[ComponentGrade] = Field(default_factory=list)
    doubt_resolutions: list[DoubtResolution] = Field(default_factory=list)


class GatekeeperOutput(ConclaveBaseModel):
    role: Literal["gatekeeper"] = "gatekeeper"
    gate_decision: Optional[GateDecision] = None
    reason: str = ""
    stale_references: list[str] = Field(default_factory=list)
    overlapping_dead_ends: list[int] = Field(default_factory=list)

    @field_validator("gate_decision", mode="before")
    @classmethod
    def _normalize_decision(cls, value: object) -> object:
        return _lower(value)


class ScoutOutput(ConclaveBaseModel):
    role: Literal["scout"] = "scout"
    findings: list[Finding] = Field(default_factory=list)


class CompressorOutput(ConclaveBaseModel):
    role: Literal["compressor"] = "compressor"
    compression_report: Optional[CompressionReport] = None


class SynthesiserOutput(ConclaveBaseModel):
    role: Literal["synthesiser"] = "synthesiser"
    guidance: Optional[str] = None


class PlannerOutput(ConclaveBaseModel):
    role: Literal["planner"] = "planner"
    goal_met: bool = False
    hypotheses: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _single_hypothesis(cls, data: object) -> object:
        # The single-experiment planner answers with "hypothesis"
        if isinstance(data, dict) and "hypotheses" not in data:
            single = data.get("hypothesis")
            if isinstance(single, str) and single.strip():
                return {**data, "hypotheses": [single]}
        return data


class AuditorOutput(ConclaveBaseModel):
    role: Literal["auditor"] = "auditor"
    verdict: Optional[AuditVerdict] = None
    reclassify_from: str = ""
    reasoning: str = ""

    @field_validator("verdict", mode="before")
    @classmethod
    def _normalize_verdict(cls, value: object) -> object:
        return _lower(value)


class SubTypeEntry(ConclaveBaseModel):
    name: str
    description: str = ""
    canonical_form: str = ""
    constraints: list[str] = Field(default_factory=list)


class ClassifierOutput(ConclaveBaseModel):
    role: Literal["classifier"] = "classifier"
    sub_types: list[SubTypeEntry] = Field(default_factory=list)


class ReframerOutput(ConclaveBaseModel):
    role: Literal["reframer"] = "reframer"
    decomposition: str = ""
    divergences: list[str] = Field(default_factory=list)


AgentOutput: TypeAlias = Annotated[
    Union[
        BuilderOutput,
        CriticOutput,
        AdversaryOutput,
        VerifierOutput,
        GatekeeperOutput,
        ScoutOutput,
        CompressorOutput,
        SynthesiserOutput,
        PlannerOutput,
        AuditorOutput,
        ClassifierOutput,
        ReframerOutput,
    ],
    Field(discriminator="role"),
]

AGENT_OUTPUT_ADAPTER: TypeAdapter[AgentOutput] = TypeAdapter(AgentOutput)

ROLES = (
    "builder",
    "critic",
    "adversary",
    "verifier",
    "gatekeeper",
    "scout",
    "compressor",
    "synthesiser",
    "planner",
    "auditor",
    "classifier",
    "reframer",
)
