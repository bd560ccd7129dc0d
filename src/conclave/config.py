# Copyright (c) Syntropy Systems
"""Configuration management for conclave."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

DIRECTIONS = ("lower_is_better", "higher_is_better", "closer_to_gt")


@dataclass
class FixtureConfig:
    """A metrics fixture. Regressions on gate fixtures block merge."""

    gate: bool = False


@dataclass
class TrackedMetric:
    """A metric compared before/after each build."""

    direction: str = "lower_is_better"


@dataclass
class MetricsConfig:
    """Metrics command and what to compare."""

    command: str = ""
    fixtures: dict[str, FixtureConfig] = field(default_factory=dict)
    tracked: dict[str, TrackedMetric] = field(default_factory=dict)

    def gate_fixtures(self) -> set[str]:
        return {name for name, fixture in self.fixtures.items() if fixture.gate}


@dataclass
class CycleConfig:
    """Thresholds for the experiment cycle."""

    compression_interval: int = 5
    circuit_breaker_threshold: int = 3
    require_doubt_before_verify: bool = True
    require_challenge_before_verify: bool = False

    # Step budget for a single experiment in auto mode
    max_steps: int = 20

    # Experiments planned by `conclave run` before stopping
    max_experiments: int = 10


@dataclass
class TimeoutConfig:
    """Timeouts for external processes (seconds)."""

    agent: int = 1800
    extraction: int = 120
    git: int = 60
    metrics: int = 120


@dataclass
class SwarmConfig:
    """Swarm sizing."""

    default_parallel: int = 3
    max_parallel: int = 8


@dataclass
class ConclaveConfig:
    """Configuration for conclave."""

    project_name: str = ""
    objective: str = ""
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    cycle: CycleConfig = field(default_factory=CycleConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    swarm: SwarmConfig = field(default_factory=SwarmConfig)

    # Model per agent role; roles not listed use default_model
    models: dict[str, str] = field(default_factory=dict)
    default_model: str = "sonnet"
    extraction_model: str = "haiku"

    # argv prefix used to launch the agent CLI
    agent_command: list[str] = field(default_factory=lambda: ["claude"])

    def model_for(self, role: str) -> str:
        return self.models.get(role, self.default_model)


def find_conclave_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .conclave directory by walking up from start_path.

    Returns None if no .conclave directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        conclave_dir = current / ".conclave"
        if conclave_dir.is_dir():
            return conclave_dir
        current = current.parent

    # Check root
    conclave_dir = current / ".conclave"
    if conclave_dir.is_dir():
        return conclave_dir

    return None


def require_conclave_dir(start_path: Path | None = None) -> Path:
    """Get conclave directory or raise an error if not found."""
    conclave_dir = find_conclave_dir(start_path)
    if conclave_dir is None:
        msg = "No .conclave directory found. Run 'conclave init' first."
        raise RuntimeError(msg)
    return conclave_dir


def get_db_path(conclave_dir: Path) -> Path:
    """Get the path to the SQLite database."""
    return conclave_dir / "conclave.db"


def _int(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value)


def _bool(data: dict[str, object], key: str, default: bool) -> bool:  # noqa: FBT001
    value = data.get(key)
    return value if isinstance(value, bool) else default


def _str(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else default


def _section(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if isinstance(value, dict):
        return cast("dict[str, object]", value)
    return {}


def _parse_metrics(data: dict[str, object]) -> MetricsConfig:
    metrics = MetricsConfig(command=_str(data, "command", ""))

    fixtures = data.get("fixtures")
    if isinstance(fixtures, list):
        # A plain list names fixtures without gates
        for name in fixtures:
            metrics.fixtures[str(name)] = FixtureConfig()
    elif isinstance(fixtures, dict):
        for name, entry in cast("dict[str, object]", fixtures).items():
            gate = False
            if isinstance(entry, dict):
                gate = _bool(cast("dict[str, object]", entry), "gate", False)
            metrics.fixtures[str(name)] = FixtureConfig(gate=gate)

    tracked = data.get("tracked")
    if isinstance(tracked, dict):
        for name, entry in cast("dict[str, object]", tracked).items():
            direction = "lower_is_better"
            if isinstance(entry, dict):
                direction = _str(cast("dict[str, object]", entry), "direction", direction)
            if direction not in DIRECTIONS:
                msg = f"Unknown metric direction for {name}: {direction}"
                raise ValueError(msg)
            metrics.tracked[str(name)] = TrackedMetric(direction=direction)

    return metrics


def load_config(conclave_dir: Path | None = None) -> ConclaveConfig:
    """Load configuration from .conclave/config.yaml or defaults.

    Looks for config in:
    1. Provided conclave_dir
    2. Nearest .conclave directory walking up
    3. Defaults
    """
    config = ConclaveConfig()

    if conclave_dir is None:
        conclave_dir = find_conclave_dir()
    if conclave_dir is None:
        return config

    config_path = conclave_dir / "config.yaml"
    if not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    project = _section(data, "project")
    config.project_name = _str(project, "name", config.project_name)
    config.objective = _str(project, "objective", config.objective)

    config.metrics = _parse_metrics(_section(data, "metrics"))

    cycle = _section(data, "cycle")
    defaults = CycleConfig()
    config.cycle = CycleConfig(
        compression_interval=_int(cycle, "compression_interval", defaults.compression_interval),
        circuit_breaker_threshold=_int(
            cycle, "circuit_breaker_threshold", defaults.circuit_breaker_threshold
        ),
        require_doubt_before_verify=_bool(
            cycle, "require_doubt_before_verify", defaults.require_doubt_before_verify
        ),
        require_challenge_before_verify=_bool(
            cycle, "require_challenge_before_verify", defaults.require_challenge_before_verify
        ),
        max_steps=_int(cycle, "max_steps", defaults.max_steps),
        max_experiments=_int(cycle, "max_experiments", defaults.max_experiments),
    )

    timeouts = _section(data, "timeouts")
    t_defaults = TimeoutConfig()
    config.timeouts = TimeoutConfig(
        agent=_int(timeouts, "agent", t_defaults.agent),
        extraction=_int(timeouts, "extraction", t_defaults.extraction),
        git=_int(timeouts, "git", t_defaults.git),
        metrics=_int(timeouts, "metrics", t_defaults.metrics),
    )

    swarm = _section(data, "swarm")
    config.swarm = SwarmConfig(
        default_parallel=_int(swarm, "default_parallel", SwarmConfig.default_parallel),
        max_parallel=_int(swarm, "max_parallel", SwarmConfig.max_parallel),
    )

    models = _section(data, "models")
    config.models = {role: model for role, model in models.items() if isinstance(model, str)}
    config.default_model = _str(data, "default_model", config.default_model)
    config.extraction_model = _str(data, "extraction_model", config.extraction_model)

    agent_command = data.get("agent_command")
    if isinstance(agent_command, str):
        config.agent_command = agent_command.split()
    elif isinstance(agent_command, list) and agent_command:
        config.agent_command = [str(part) for part in agent_command]

    return config


def default_config_dict(project_name: str = "") -> dict[str, object]:
    """The config written by `conclave init`."""
    return {
        "project": {"name": project_name, "objective": ""},
        "metrics": {"command": "", "fixtures": {}, "tracked": {}},
        "cycle": {
            "compression_interval": 5,
            "circuit_breaker_threshold": 3,
            "require_doubt_before_verify": True,
            "require_challenge_before_verify": False,
            "max_steps": 20,
            "max_experiments": 10,
        },
        "timeouts": {"agent": 1800, "extraction": 120, "git": 60, "metrics": 120},
        "swarm": {"default_parallel": 3, "max_parallel": 8},
        "models": {},
    }
