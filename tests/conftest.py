# Copyright (c) Syntropy Systems
"""Pytest fixtures for conclave tests."""
from __future__ import annotations

import json
import os
import shutil
import sqlite3
import tempfile
from collections.abc import Generator
from pathlib import Path
from typing import Callable, Optional, Union

import pytest
import yaml

from conclave.agents.spawn import AgentRequest
from conclave.config import default_config_dict, load_config
from conclave.context import AppContext
from conclave.db import init_db, open_store
from conclave.errors import SubprocessFailure

# Store original cwd at module load time
_original_cwd = Path.cwd()

Script = Union[str, list[str], Callable[[AgentRequest], str]]


def agent_reply(payload: dict[str, object], prose: str = "Report follows.") -> str:
    """Agent output carrying a conclave-json block."""
    return f"{prose}\n\n<!-- conclave-json\n{json.dumps(payload)}\n-->\n"


def cycle_scripts(*grades: str, gate: str = "approve") -> dict[str, Script]:
    """Replies for one experiment cycle per grade, in order.

    The verifier answers with one overall grade per cycle; the synthesiser
    asks for another attempt whenever a cycle comes back weak.
    """
    return {
        "gatekeeper": agent_reply({"gate_decision": gate, "reason": "overlaps DE-1"}),
        "builder": agent_reply(
            {
                "decisions": [
                    {
                        "description": "Index lookups with a trie",
                        "evidence_level": "test",
                        "justification": "benchmark in tests/bench.py",
                    }
                ]
            }
        ),
        "critic": agent_reply(
            {
                "doubts": [
                    {
                        "claim_doubted": "Trie is faster on every input",
                        "evidence_level_of_claim": "test",
                        "evidence_for_doubt": "Benchmark only covers short keys",
                        "severity": "moderate",
                    }
                ]
            }
        ),
        "adversary": agent_reply(
            {"challenges": [{"description": "Empty key", "reasoning": "Root node has no value"}]}
        ),
        "verifier": [
            agent_reply({"grades": [{"component": "lookup", "grade": grade, "notes": f"{grade} result"}]})
            for grade in grades
        ],
        "synthesiser": agent_reply({"guidance": "Cover long keys in the benchmark."}),
    }


class FakeAgentInvoker:
    """Scripted stand-in for the agent CLI.

    Each role maps to a fixed reply, a list consumed in order (the last
    entry repeats), or a callable. Roles without a script reply with "".
    """

    def __init__(self, scripts: Optional[dict[str, Script]] = None, cost: float = 0.0) -> None:
        self.scripts: dict[str, Script] = dict(scripts or {})
        self.cost = cost
        self.total_cost_usd = 0.0
        self.requests: list[AgentRequest] = []

    def roles(self) -> list[str]:
        return [r.role for r in self.requests]

    def invoke(self, request: AgentRequest) -> str:
        self.requests.append(request)
        self.total_cost_usd += self.cost
        script = self.scripts.get(request.role, "")
        if callable(script):
            return script(request)
        if isinstance(script, list):
            return script.pop(0) if len(script) > 1 else script[0]
        return script


class FakeGit:
    """Records git calls instead of running them.

    Names in fail_on raise SubprocessFailure when called.
    """

    def __init__(self, root: Optional[Path] = None, branch: str = "main") -> None:
        self.root = root
        self.branch = branch
        self.clean = True
        self.worktrees: list[Path] = []
        self.fail_on: set[str] = set()
        self.calls: list[tuple[str, ...]] = []

    def _record(self, name: str, *args: object) -> None:
        self.calls.append((name, *(str(a) for a in args)))
        if name in self.fail_on:
            raise SubprocessFailure(["git", name], 1, f"{name} failed")

    def called(self, name: str) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] == name]

    def current_branch(self) -> str:
        self._record("current_branch")
        return self.branch

    def is_clean(self) -> bool:
        self._record("is_clean")
        return self.clean

    def trunk_branch(self) -> str:
        return "main"

    def create_branch(self, name: str) -> None:
        self._record("create_branch", name)
        self.branch = name

    def checkout(self, ref: str) -> None:
        self._record("checkout", ref)
        self.branch = ref

    def commit_all(self, message: str) -> bool:
        self._record("commit_all", message)
        return True

    def merge_no_ff(self, branch: str, message: str) -> None:
        self._record("merge_no_ff", branch, message)

    def merge_into_trunk(self, branch: str, message: str) -> None:
        self._record("merge_into_trunk", branch, message)
        self.branch = "main"

    def abort_merge(self) -> None:
        self._record("abort_merge")

    def discard_changes(self) -> None:
        self._record("discard_changes")

    def diff_against(self, ref: str) -> str:
        self._record("diff_against", ref)
        return "diff --git a/app.py b/app.py\n+print('hello')\n"

    def worktree_add(self, path: Path, branch: str) -> None:
        self._record("worktree_add", path, branch)
        path.mkdir(parents=True)
        self.worktrees.append(path)

    def worktree_remove(self, path: Path) -> None:
        self._record("worktree_remove", path)
        shutil.rmtree(path, ignore_errors=True)
        if path in self.worktrees:
            self.worktrees.remove(path)

    def worktree_list(self) -> list[Path]:
        self._record("worktree_list")
        return [p for p in [self.root, *self.worktrees] if p is not None]

    def worktree_prune(self) -> None:
        self._record("worktree_prune")

    def delete_branch(self, name: str) -> None:
        self._record("delete_branch", name)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def conclave_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a conclave project inside temp_dir and chdir into it.

    The project sits one level down so swarm worktrees, which are sibling
    directories, stay inside temp_dir.
    """
    project = temp_dir / "project"
    conclave_dir = project / ".conclave"
    (conclave_dir / "agents").mkdir(parents=True)
    (project / "docs" / "synthesis").mkdir(parents=True)

    with (conclave_dir / "config.yaml").open("w") as f:
        yaml.dump(default_config_dict("project"), f, default_flow_style=False)
    init_db(conclave_dir / "conclave.db")

    os.chdir(project)
    yield project
    os.chdir(_original_cwd)


@pytest.fixture
def db_connection(conclave_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    conn = open_store(conclave_project / ".conclave" / "conclave.db")
    yield conn
    conn.close()


@pytest.fixture
def memory_db() -> Generator[sqlite3.Connection, None, None]:
    conn = open_store(":memory:")
    yield conn
    conn.close()


@pytest.fixture
def agents() -> FakeAgentInvoker:
    return FakeAgentInvoker()


@pytest.fixture
def fake_git(conclave_project: Path) -> FakeGit:
    return FakeGit(conclave_project)


@pytest.fixture
def ctx(
    conclave_project: Path,
    db_connection: sqlite3.Connection,
    fake_git: FakeGit,
    agents: FakeAgentInvoker,
) -> AppContext:
    """A context on the test project with scripted agents and recorded git."""
    return AppContext(
        root=conclave_project,
        conn=db_connection,
        config=load_config(conclave_project / ".conclave"),
        git=fake_git,  # type: ignore[arg-type]
        agents=agents,
    )
