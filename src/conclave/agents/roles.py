# Copyright (c) Syntropy Systems
"""Per-role agent definitions, schemas and artifact locations."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional, cast

import yaml

if TYPE_CHECKING:
    from conclave.config import ConclaveConfig
    from conclave.models.db import ExperimentRecord

logger = logging.getLogger(__name__)

# Fields that must be present and non-empty before degraded output is trusted
ROLE_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "builder": ("decisions",),
    "critic": ("doubts",),
    "adversary": ("challenges",),
    "verifier": ("grades",),
    "gatekeeper": ("gate_decision",),
    "scout": ("findings",),
    "compressor": ("compression_report",),
    "synthesiser": ("guidance",),
    "planner": ("hypotheses",),
    "auditor": ("verdict",),
    "classifier": ("sub_types",),
    "reframer": ("decomposition",),
}

_SCHEMAS: dict[str, str] = {
    "builder": (
        '{"decisions": [{"description": "string", "evidence_level": '
        '"proof|test|strong_consensus|consensus|analogy|judgment", "justification": "string"}]}'
    ),
    "critic": (
        '{"doubts": [{"claim_doubted": "string", "evidence_level_of_claim": "string", '
        '"evidence_for_doubt": "string", "severity": "minor|moderate|critical"}]}'
    ),
    "adversary": '{"challenges": [{"description": "string", "reasoning": "string"}]}',
    "verifier": (
        '{"grades": [{"component": "string", "grade": "sound|good|weak|rejected", '
        '"provenance_intact": true, "content_correct": true, "notes": "string"}], '
        '"doubt_resolutions": [{"doubt_id": 0, "resolution": "confirmed|dismissed|inconclusive"}]}'
    ),
    "gatekeeper": (
        '{"gate_decision": "approve|reject|flag", "reason": "string", '
        '"stale_references": ["string"], "overlapping_dead_ends": [0]}'
    ),
    "scout": (
        '{"findings": [{"approach": "string", "source": "string", '
        '"relevance": "string", "contradicts_current": true}]}'
    ),
    "compressor": (
        '{"compression_report": {"synthesis_delta": "string", '
        '"new_dead_ends": ["string"], "fragility_changes": ["string"]}}'
    ),
    "synthesiser": '{"guidance": "string (actionable builder guidance)"}',
    "planner": '{"goal_met": false, "hypotheses": ["string"]}',
    "auditor": '{"verdict": "confirmed|reclassify", "reclassify_from": "string", "reasoning": "string"}',
    "classifier": (
        '{"sub_types": [{"name": "string", "description": "string", '
        '"canonical_form": "string", "constraints": ["string"]}]}'
    ),
    "reframer": '{"decomposition": "string", "divergences": ["string"]}',
}

DEFAULT_TOOLS: dict[str, list[str]] = {
    "builder": ["Read", "Write", "Edit", "Bash", "Glob", "Grep"],
    "critic": ["Read", "Glob", "Grep"],
    "adversary": ["Read", "Glob", "Grep", "Bash"],
    "verifier": ["Read", "Glob", "Grep", "Bash"],
    "gatekeeper": ["Read", "Glob", "Grep"],
    "scout": ["Read", "Glob", "Grep", "WebSearch"],
    "compressor": ["Read", "Write", "Edit", "Glob", "Grep"],
    "synthesiser": ["Read", "Glob", "Grep"],
    "planner": [],
    "auditor": ["Read", "Glob", "Grep"],
    "classifier": ["Read", "Glob", "Grep", "WebSearch"],
    "reframer": ["Read", "Glob", "Grep"],
}

ARTIFACT_DIRS: dict[str, str] = {
    "builder": "docs/experiments",
    "critic": "docs/doubts",
    "adversary": "docs/challenges",
    "verifier": "docs/verification",
    "gatekeeper": "docs/gates",
    "scout": "docs/scouting",
    "compressor": "docs/synthesis",
    "synthesiser": "docs/guidance",
    "planner": "docs/plans",
    "auditor": "docs/audits",
    "classifier": "docs/classification",
    "reframer": "docs/reframes",
}

SYNTHESIS_DIR = "docs/synthesis"

# Character caps for documents pasted into prompts
CONTEXT_LIMITS: dict[str, int] = {
    "synthesis": 30000,
    "fragility": 15000,
    "experiment_doc": 15000,
    "dead_ends": 15000,
    "classification": 15000,
}

_JSON_FOOTER = (
    "\n\nEnd your response with the structured result in a block of the form\n"
    "<!-- conclave-json\n{schema}\n-->"
)

_DEFAULT_PROMPTS: dict[str, str] = {
    "builder": (
        "You are the Builder. Implement the hypothesis in the working tree. Record every "
        "non-trivial decision together with the strength of its evidence. Never repeat an "
        "approach listed as a dead-end."
    ),
    "critic": (
        "You are the Critic. Read the builder's write-up and raise doubts about claims whose "
        "evidence is weaker than the claim requires. Do not modify code."
    ),
    "adversary": (
        "You are the Adversary. Construct concrete inputs or scenarios that would break the "
        "change under review, and explain why each one is dangerous."
    ),
    "verifier": (
        "You are the Verifier. Grade each component of the change as sound, good, weak or "
        "rejected, and rule on every doubt raised against it."
    ),
    "gatekeeper": (
        "You are the Gatekeeper. Decide whether a hypothesis is worth building. Reject "
        "hypotheses that repeat a dead-end or rest on stale references."
    ),
    "scout": (
        "You are the Scout. Look for alternative approaches to the problem, including ones "
        "that contradict the current direction."
    ),
    "compressor": (
        "You are the Compressor. Rewrite the synthesis document so it stays short and "
        "current, folding in what recent experiments established."
    ),
    "synthesiser": (
        "You are a Synthesis Agent. Turn a verification report and confirmed doubts into "
        "specific, actionable guidance for the builder's next attempt. Mark approaches that "
        "cannot work with a line of the form '[DEAD-APPROACH] name: reason'."
    ),
    "planner": (
        "You are the Planner. Propose hypotheses that move the project toward its goal, "
        "each attacking the problem through a distinct mechanism."
    ),
    "auditor": (
        "You are the Purpose Auditor. A circuit breaker has tripped: one sub-type keeps failing. "
        "Decide whether the problem classification still holds. Answer either "
        "'classification confirmed' or 're-classify from <sub-type>', with your reasoning."
    ),
    "classifier": (
        "You are the Classifier. Split the problem domain into sub-types. For each one give its "
        "canonical form and the constraints any approach must respect."
    ),
    "reframer": (
        "You are the Reframer. Restate the problem independently of the current classification, "
        "then list every place where your decomposition diverges from it."
    ),
}

_FRONTMATTER = re.compile(r"^---\n([\s\S]*?)\n---\n?([\s\S]*)$")


def extraction_schema(role: str) -> str:
    """JSON shape a role's structured output must follow."""
    try:
        return _SCHEMAS[role]
    except KeyError:
        msg = f"Unknown agent role: {role}"
        raise ValueError(msg) from None


def truncate_context(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n[TRUNCATED]"


@dataclass
class AgentDefinition:
    """How to launch one role: model, allowed tools and system prompt."""

    role: str
    model: str
    tools: list[str] = field(default_factory=list)
    system_prompt: str = ""


def default_definition(role: str, config: ConclaveConfig) -> AgentDefinition:
    prompt = _DEFAULT_PROMPTS[role] + _JSON_FOOTER.format(schema=extraction_schema(role))
    return AgentDefinition(
        role=role,
        model=config.model_for(role),
        tools=list(DEFAULT_TOOLS[role]),
        system_prompt=prompt,
    )


def load_agent_definition(
    role: str, config: ConclaveConfig, conclave_dir: Optional[Path] = None
) -> AgentDefinition:
    """Load .conclave/agents/<role>.md if present, else the built-in definition.

    The file carries YAML frontmatter (model, tools) followed by the system
    prompt. Missing frontmatter fields fall back to the built-in values.
    """
    definition = default_definition(role, config)
    if conclave_dir is None:
        return definition

    path = conclave_dir / "agents" / f"{role}.md"
    if not path.exists():
        return definition

    match = _FRONTMATTER.match(path.read_text())
    if match is None:
        logger.warning("Ignoring %s: missing YAML frontmatter", path)
        return definition

    meta = yaml.safe_load(match.group(1)) or {}
    if not isinstance(meta, dict):
        logger.warning("Ignoring %s: frontmatter is not a mapping", path)
        return definition
    meta = cast("dict[str, object]", meta)

    model = meta.get("model")
    if isinstance(model, str) and role not in config.models:
        definition.model = model

    tools = meta.get("tools")
    if isinstance(tools, list):
        definition.tools = [str(tool) for tool in tools]
    elif isinstance(tools, str):
        definition.tools = [t.strip() for t in tools.strip("[]").split(",") if t.strip()]

    body = match.group(2).strip()
    if body:
        definition.system_prompt = body
    return definition


def artifact_path(root: Path, role: str, experiment: Optional[ExperimentRecord]) -> Path:
    """Where a role's raw output for an experiment is written."""
    directory = root / ARTIFACT_DIRS[role]
    if role == "compressor":
        return directory / "current.md"
    number = experiment.number if experiment is not None else "000"
    slug = experiment.slug if experiment is not None else "general"
    if role == "builder":
        return directory / f"{number}-{slug}.md"
    return directory / f"{number}-{role}-{slug}.md"


def synthesis_path(root: Path, name: str) -> Path:
    """Path of a synthesis document (current.md, fragility.md, dead-ends.md)."""
    return root / SYNTHESIS_DIR / name
