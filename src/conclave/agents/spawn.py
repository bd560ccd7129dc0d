# Copyright (c) Syntropy Systems
"""Launching agent processes and capturing their output."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Protocol

from conclave.agents.parse import EXTRACTION_SYSTEM_PROMPT, ExtractionResult, extract, validate_for_role
from conclave.agents.roles import artifact_path, load_agent_definition
from conclave.errors import ExtractionFailure
from conclave.runner import run_process

if TYPE_CHECKING:
    from collections.abc import Sequence

    from conclave.agents.parse import Reconstruct
    from conclave.context import AppContext
    from conclave.models.agent import AgentOutput
    from conclave.models.db import ExperimentRecord

logger = logging.getLogger(__name__)


@dataclass
class AgentRequest:
    """One agent invocation: role, prompt, allowed tools and model."""

    role: str
    prompt: str
    model: str
    tools: list[str] = field(default_factory=list)
    system_prompt: str = ""
    timeout: Optional[float] = None


class AgentInvoker(Protocol):
    """Runs an agent and returns its final text.

    total_cost_usd accumulates the reported cost of every call made through
    this invoker.
    """

    total_cost_usd: float

    def invoke(self, request: AgentRequest) -> str: ...


def parse_stream_json(output: str) -> tuple[str, float]:
    """Concatenate the text events of a stream-json transcript.

    Returns the text and the reported cost. The final ``result`` event is
    only used when no assistant text was streamed. Lines that are not JSON
    are kept as raw text.
    """
    parts: list[str] = []
    result_text: Optional[str] = None
    cost = 0.0

    for line in output.splitlines():
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            parts.append(line + "\n")
            continue
        if not isinstance(event, dict):
            continue

        kind = event.get("type")
        if kind == "assistant":
            message = event.get("message") or {}
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text":
                    text = str(block.get("text", ""))
                    parts.append(text if text.endswith("\n") else text + "\n")
        elif kind == "content_block_delta":
            delta = event.get("delta") or {}
            if isinstance(delta, dict) and delta.get("text"):
                parts.append(str(delta["text"]))
        elif kind == "result":
            if isinstance(event.get("result"), str):
                result_text = event["result"]
            reported = event.get("total_cost_usd")
            if isinstance(reported, (int, float)):
                cost += float(reported)

    text = "".join(parts)
    if not text.strip() and result_text:
        text = result_text
    return text, cost


class ClaudeAgentInvoker:
    """Runs agents through the claude CLI in print mode."""

    def __init__(
        self,
        cwd: Path,
        command: Optional[Sequence[str]] = None,
        timeout: float = 1800.0,
    ) -> None:
        self.cwd = cwd
        self.command = list(command) if command else ["claude"]
        self.timeout = timeout
        self.total_cost_usd = 0.0

    def build_argv(self, request: AgentRequest) -> list[str]:
        argv = [
            *self.command,
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            request.model,
        ]
        if request.tools:
            argv += ["--allowedTools", *request.tools]
        if request.system_prompt:
            argv += ["--append-system-prompt", request.system_prompt]
        argv += ["-p", request.prompt]
        return argv

    def invoke(self, request: AgentRequest) -> str:
        logger.info("Spawning %s agent (model: %s)", request.role, request.model)
        timeout = request.timeout if request.timeout is not None else self.timeout
        output = run_process(self.build_argv(request), self.cwd, timeout)
        text, cost = parse_stream_json(output)
        self.total_cost_usd += cost
        return text


@dataclass
class AgentRun:
    """Raw text, extraction result and artifact location of one agent call."""

    role: str
    raw: str
    extraction: ExtractionResult
    artifact: Optional[Path] = None

    @property
    def output(self) -> Optional[AgentOutput]:
        return self.extraction.data


def write_artifact(
    root: Path, role: str, text: str, experiment: Optional[ExperimentRecord]
) -> Path:
    path = artifact_path(root, role, experiment)
    path.parent.mkdir(parents=True, exist_ok=True)
    _ = path.write_text(text)
    logger.info("%s artifact written to %s", role, path)
    return path


def make_reconstructor(ctx: AppContext) -> Reconstruct:
    """Tier-3 callback bound to the context's invoker and extraction model."""

    def reconstruct(role: str, prompt: str) -> str:
        return ctx.agents.invoke(
            AgentRequest(
                role=f"{role}-extraction",
                prompt=prompt,
                model=ctx.config.extraction_model,
                system_prompt=EXTRACTION_SYSTEM_PROMPT,
                timeout=ctx.config.timeouts.extraction,
            )
        )

    return reconstruct


def spawn_agent(
    ctx: AppContext,
    role: str,
    task_prompt: str,
    experiment: Optional[ExperimentRecord] = None,
) -> AgentRun:
    """Invoke a role, preserve its raw output on disk, and extract it.

    SubprocessFailure from the agent process propagates to the caller.
    """
    definition = load_agent_definition(role, ctx.config, ctx.conclave_dir)
    raw = ctx.agents.invoke(
        AgentRequest(
            role=role,
            prompt=task_prompt,
            model=definition.model,
            tools=definition.tools,
            system_prompt=definition.system_prompt,
            timeout=ctx.config.timeouts.agent,
        )
    )
    artifact = write_artifact(ctx.root, role, raw, experiment)
    extraction = extract(role, raw, make_reconstructor(ctx))
    return AgentRun(role=role, raw=raw, extraction=extraction, artifact=artifact)


def require_output(role: str, run: AgentRun) -> AgentOutput:
    """Return usable output or raise ExtractionFailure.

    Tier-1 output missing required fields is accepted with a warning;
    degraded (tier 2/3) output must carry every required field.
    """
    extraction = run.extraction
    if extraction.data is None:
        raise ExtractionFailure(role, run.artifact)
    valid, missing = validate_for_role(role, extraction.data)
    if not valid:
        if extraction.tier == 1:
            logger.warning("%s output is missing %s", role, ", ".join(missing))
        else:
            logger.error(
                "%s tier-%s output is missing %s, not advancing", role, extraction.tier, ", ".join(missing)
            )
            raise ExtractionFailure(role, run.artifact)
    return extraction.data
