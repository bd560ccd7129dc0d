# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Optional, cast

from pydantic import Field, TypeAdapter, field_validator

from .base import ConclaveBaseModel

_LIST_STR_ADAPTER = TypeAdapter(list[str])


def _parse_bool(value: object) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


class ExperimentRecord(ConclaveBaseModel):
    """Database experiment record."""

    id: int
    slug: str
    branch: str
    status: str
    classification_ref: Optional[str] = None
    sub_type: Optional[str] = None
    hypothesis: Optional[str] = None
    builder_guidance: Optional[str] = None
    depends_on: Optional[str] = None
    context_files: list[str] = Field(default_factory=list)
    gate_rejection_reason: Optional[str] = None
    last_failure: Optional[str] = None
    breaker_override: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("context_files", mode="before")
    @classmethod
    def _parse_context_files(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return _LIST_STR_ADAPTER.validate_json(value)
        return cast("list[str]", value)

    @property
    def number(self) -> str:
        """Zero-padded experiment number used in branch and artifact names."""
        return f"{self.id:03d}"


class DecisionRecord(ConclaveBaseModel):
    """Database decision record."""

    id: int
    experiment_id: int
    description: str
    evidence_level: str
    justification: Optional[str] = None
    status: str = "active"
    overturned_by: Optional[int] = None
    extraction_tier: Optional[int] = None
    created_at: Optional[str] = None


class MetricRecord(ConclaveBaseModel):
    """Database metric record."""

    id: int
    experiment_id: int
    phase: str
    fixture: str
    metric_name: str
    metric_value: float
    captured_at: Optional[str] = None


class DeadEndRecord(ConclaveBaseModel):
    """Database dead-end record."""

    id: int
    experiment_id: Optional[int] = None
    approach: str
    why_failed: str
    structural_constraint: str
    sub_type: Optional[str] = None
    category: str = "structural"
    created_at: Optional[str] = None


class VerificationRecord(ConclaveBaseModel):
    """Database verification record."""

    id: int
    experiment_id: int
    component: str
    grade: str
    provenance_intact: Optional[bool] = None
    content_correct: Optional[bool] = None
    notes: Optional[str] = None
    extraction_tier: Optional[int] = None
    created_at: Optional[str] = None

    @field_validator("provenance_intact", "content_correct", mode="before")
    @classmethod
    def _parse_flag(cls, value: object) -> Optional[bool]:
        return _parse_bool(value)


class DoubtRecord(ConclaveBaseModel):
    """Database doubt record."""

    id: int
    experiment_id: int
    claim_doubted: str
    evidence_level_of_claim: str
    evidence_for_doubt: str
    severity: str
    resolution: Optional[str] = None
    extraction_tier: Optional[int] = None
    created_at: Optional[str] = None


class ChallengeRecord(ConclaveBaseModel):
    """Database challenge record."""

    id: int
    experiment_id: int
    description: str
    reasoning: str
    extraction_tier: Optional[int] = None
    created_at: Optional[str] = None


class FindingRecord(ConclaveBaseModel):
    """Database finding record."""

    id: int
    experiment_id: int
    approach: str
    source: str
    relevance: str
    contradicts_current: bool = False
    extraction_tier: Optional[int] = None
    created_at: Optional[str] = None

    @field_validator("contradicts_current", mode="before")
    @classmethod
    def _parse_contradicts(cls, value: object) -> bool:
        return bool(value)


class CompressionRecord(ConclaveBaseModel):
    """Database compression record."""

    id: int
    experiments_since_last: int
    synthesis_size_before: int
    synthesis_size_after: int
    created_at: Optional[str] = None


class SubTypeFailureRecord(ConclaveBaseModel):
    """A weak or rejected outcome counted against a sub-type."""

    id: int
    sub_type: str
    experiment_id: int
    grade: str
    created_at: Optional[str] = None


class SwarmRunRecord(ConclaveBaseModel):
    """Database swarm run record."""

    id: int
    goal: str
    parallel_count: int
    status: str = "running"
    total_cost_usd: float = 0.0
    best_experiment_slug: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class SwarmMemberRecord(ConclaveBaseModel):
    """Database swarm member record."""

    id: int
    swarm_run_id: int
    experiment_slug: str
    worktree_path: str
    final_status: Optional[str] = None
    overall_grade: Optional[str] = None
    cost_usd: float = 0.0
    error: Optional[str] = None
