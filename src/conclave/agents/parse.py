# Copyright (c) Syntropy Systems
"""Three-tier extraction of structured data from agent output.

Tier 1 reads an embedded ``<!-- conclave-json ... -->`` block. Tier 2 runs a
fixed table of prose patterns. Tier 3 asks a cheap model to rebuild the JSON
from the raw text. Only tier 1 is trusted outright; tiers 2 and 3 are flagged
as low confidence and carried downstream as ``extraction_tier``.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, cast

from pydantic import ValidationError

from conclave.agents.roles import ROLE_REQUIRED_FIELDS, extraction_schema
from conclave.errors import ConclaveError
from conclave.models.agent import AGENT_OUTPUT_ADAPTER, ROLES

if TYPE_CHECKING:
    from conclave.models.agent import AgentOutput

logger = logging.getLogger(__name__)

# (role, prompt) -> raw reply of the reconstruction model
Reconstruct = Callable[[str, str], str]

EXTRACTION_SYSTEM_PROMPT = (
    "You are a JSON extraction assistant. Output only valid JSON matching the "
    "requested schema. No markdown, no explanation, just JSON."
)

RECONSTRUCT_CHAR_LIMIT = 8000

_LEVELS = "proof|test|strong_consensus|consensus|analogy|judgment"
_GRADES = "sound|good|weak|rejected"

JSON_BLOCK = re.compile(r"<!--\s*conclave-json\s*\n?([\s\S]*?)-->")

DECISION_LINE = re.compile(
    r"^[ \t]*[-*][ \t]*\**decision\**[ \t]*:[ \t]*(?P<description>[^\n]+?)[ \t]*"
    r"(?:\n[^\n]*?|[ \t]*[(\[,;][^\n]*?)"
    r"\b(?:evidence(?:[ _]level)?|level)\**[ \t]*[:=][ \t]*\**(?P<level>" + _LEVELS + r")\b",
    re.IGNORECASE | re.MULTILINE,
)

INLINE_LEVEL_TAG = re.compile(
    r"\[(?P<level>" + _LEVELS + r")\][ \t]*(?P<description>[^\n]+)",
    re.IGNORECASE,
)

AUDIT_VERDICT = re.compile(
    r"\b(?:(?P<confirmed>classification confirmed)|re-?classify from[ \t]+(?P<source>[^\n.]+))",
    re.IGNORECASE,
)

COMPONENT_GRADE = re.compile(
    r"component\**[ \t]*[:=][ \t]*(?P<component>[^\n,;]+?)[ \t]*[,;\n][^\n]*?"
    r"\bgrade\**[ \t]*[:=][ \t]*\**(?P<grade>" + _GRADES + r")\b\**(?P<notes>[^\n]*)",
    re.IGNORECASE,
)

GRADE_BULLET = re.compile(
    r"^[ \t]*[-*][ \t]*\**(?P<component>[^\n:*]+?)\**[ \t]*[:=—–-][ \t]*\**"
    r"(?P<grade>" + _GRADES + r")\b\**(?P<notes>[^\n]*)",
    re.IGNORECASE | re.MULTILINE,
)

DOUBT_BLOCK = re.compile(
    r"^[ \t]*[-*#]*[ \t]*\**(?:claim doubted|doubt|claim)(?:[ \t]*#?\d+)?\**[ \t]*[:.]\**[ \t]*"
    r"(?P<claim>[^\n]+?)\**[ \t]*(?:[(\[,;][^\n]*?|\n(?:[^\n]*\n){0,5}?[^\n]*?)"
    r"\bseverity\**[ \t]*[:=][ \t]*\**(?P<severity>minor|moderate|critical)\b",
    re.IGNORECASE | re.MULTILINE,
)


@dataclass
class ExtractionResult:
    """Typed output plus the tier that produced it (None when all tiers failed)."""

    data: Optional[AgentOutput]
    tier: Optional[int]

    @property
    def ok(self) -> bool:
        return self.data is not None

    @property
    def low_confidence(self) -> bool:
        return self.tier in (2, 3)


def _to_output(role: str, payload: object) -> Optional[AgentOutput]:
    if not isinstance(payload, dict):
        return None
    try:
        return AGENT_OUTPUT_ADAPTER.validate_python({**payload, "role": role})
    except ValidationError as e:
        logger.debug("%s output does not fit its schema: %s", role, e)
        return None


def extract_json_block(text: str) -> Optional[dict[str, object]]:
    """Parse the first well-formed conclave-json block, if any."""
    for match in JSON_BLOCK.finditer(text):
        try:
            payload = json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return cast("dict[str, object]", payload)
    return None


def _clean_notes(notes: str) -> Optional[str]:
    cleaned = notes.strip().lstrip("—–-:,;(").rstrip(")").strip()
    return cleaned or None


def _extract_decisions(text: str) -> list[dict[str, str]]:
    decisions: list[dict[str, str]] = []
    seen: set[str] = set()
    for match in DECISION_LINE.finditer(text):
        description = match.group("description").strip().strip("*").strip()
        if description.lower() in seen:
            continue
        seen.add(description.lower())
        decisions.append(
            {
                "description": description,
                "evidence_level": match.group("level").lower(),
                "justification": "Extracted via regex, review",
            }
        )
    for match in INLINE_LEVEL_TAG.finditer(text):
        description = match.group("description").strip()
        if description.lower() in seen:
            continue
        seen.add(description.lower())
        decisions.append(
            {
                "description": description,
                "evidence_level": match.group("level").lower(),
                "justification": "Extracted via regex, review",
            }
        )
    return decisions


def _extract_grades(text: str) -> list[dict[str, Optional[str]]]:
    grades: list[dict[str, Optional[str]]] = []
    seen: set[str] = set()
    for pattern in (COMPONENT_GRADE, GRADE_BULLET):
        for match in pattern.finditer(text):
            component = match.group("component").strip().strip("*").strip()
            if not component or component.lower() in seen:
                continue
            seen.add(component.lower())
            grades.append(
                {
                    "component": component,
                    "grade": match.group("grade").lower(),
                    "notes": _clean_notes(match.group("notes")),
                }
            )
    return grades


def _extract_doubts(text: str) -> list[dict[str, str]]:
    doubts: list[dict[str, str]] = []
    seen: set[str] = set()
    for match in DOUBT_BLOCK.finditer(text):
        claim = match.group("claim").strip().strip("*").strip()
        if claim.lower() in seen:
            continue
        seen.add(claim.lower())
        doubts.append(
            {
                "claim_doubted": claim,
                "evidence_level_of_claim": "unknown",
                "evidence_for_doubt": "Extracted via regex, review original document",
                "severity": match.group("severity").lower(),
            }
        )
    return doubts


def _extract_verdict(text: str) -> dict[str, str]:
    match = AUDIT_VERDICT.search(text)
    if match is None:
        return {}
    if match.group("confirmed"):
        return {"verdict": "confirmed"}
    return {"verdict": "reclassify", "reclassify_from": match.group("source").strip().strip("*")}


def extract_via_patterns(role: str, text: str) -> dict[str, object]:
    """Tier 2: collect whatever the prose patterns find for this role.

    Returns only the fields the role's output carries; empty lists are
    dropped, so an empty dict means nothing was found.
    """
    found: dict[str, object] = {}
    if role == "builder":
        found["decisions"] = _extract_decisions(text)
    elif role == "verifier":
        found["grades"] = _extract_grades(text)
    elif role == "critic":
        found["doubts"] = _extract_doubts(text)
    elif role == "auditor":
        found.update(_extract_verdict(text))
    return {key: value for key, value in found.items() if value}


def _parse_reply(reply: str) -> Optional[object]:
    reply = reply.strip()
    try:
        return json.loads(reply)
    except json.JSONDecodeError:
        pass
    start, end = reply.find("{"), reply.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(reply[start : end + 1])
    except json.JSONDecodeError:
        return None


def reconstruction_prompt(role: str, text: str) -> str:
    if len(text) > RECONSTRUCT_CHAR_LIMIT:
        text = text[:RECONSTRUCT_CHAR_LIMIT] + "\n[truncated]"
    return (
        f"Extract structured data from this {role} document as JSON. "
        f"Follow this schema exactly: {extraction_schema(role)}\n\nDocument:\n{text}"
    )


def extract(role: str, text: str, reconstruct: Optional[Reconstruct] = None) -> ExtractionResult:
    """Run the tiers in order and return the first success.

    A tier-1 hit returns immediately without touching the other tiers.
    When every tier fails the result is ``(None, None)``; callers must not
    substitute a default for it.
    """
    if role not in ROLES:
        msg = f"Unknown agent role: {role}"
        raise ValueError(msg)

    block = extract_json_block(text)
    if block is not None:
        output = _to_output(role, block)
        if output is not None:
            return ExtractionResult(output, 1)
        logger.warning("%s: conclave-json block present but invalid, trying patterns", role)

    found = extract_via_patterns(role, text)
    if found:
        output = _to_output(role, found)
        if output is not None:
            logger.warning("%s: structured data recovered from prose (tier 2), review it", role)
            return ExtractionResult(output, 2)

    if reconstruct is not None:
        try:
            reply = reconstruct(role, reconstruction_prompt(role, text))
        except ConclaveError as e:
            logger.warning("%s: reconstruction call failed: %s", role, e)
        else:
            output = _to_output(role, _parse_reply(reply))
            if output is not None:
                logger.warning("%s: structured data rebuilt by a secondary model (tier 3)", role)
                return ExtractionResult(output, 3)

    logger.error(
        "%s: all extraction tiers failed. The raw output needs manual review.", role
    )
    return ExtractionResult(None, None)


def validate_for_role(role: str, data: Optional[AgentOutput]) -> tuple[bool, list[str]]:
    """Check the role's required fields are present and non-empty."""
    required = ROLE_REQUIRED_FIELDS.get(role, ())
    if data is None:
        return (not required, list(required))
    missing = []
    for name in required:
        value = getattr(data, name, None)
        if value is None or (isinstance(value, (list, str)) and len(value) == 0):
            missing.append(name)
    return (not missing, missing)
