# Copyright (c) Syntropy Systems
"""Explicit per-invocation context threaded through every core call."""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from conclave.agents.spawn import ClaudeAgentInvoker
from conclave.config import get_db_path, load_config
from conclave.db import open_store
from conclave.git import GitRepo

if TYPE_CHECKING:
    import sqlite3

    from conclave.agents.spawn import AgentInvoker
    from conclave.config import ConclaveConfig


@dataclass
class AppContext:
    """Everything a step needs: store, config, git, agents and shutdown flag.

    One context exists per CLI invocation and one per swarm worker. Nothing
    here is shared through module globals.
    """

    root: Path
    conn: sqlite3.Connection
    config: ConclaveConfig
    git: GitRepo
    agents: AgentInvoker
    shutdown: threading.Event = field(default_factory=threading.Event)
    label: str = ""

    @property
    def conclave_dir(self) -> Path:
        return self.root / ".conclave"

    @classmethod
    def open(
        cls,
        root: Path,
        *,
        config: Optional[ConclaveConfig] = None,
        agents: Optional[AgentInvoker] = None,
        git: Optional[GitRepo] = None,
        shutdown: Optional[threading.Event] = None,
        label: str = "",
        db_path: Optional[Union[Path, str]] = None,
    ) -> AppContext:
        """Open the store under root and wire default collaborators."""
        conclave_dir = root / ".conclave"
        if config is None:
            config = load_config(conclave_dir)
        conn = open_store(db_path if db_path is not None else get_db_path(conclave_dir))
        return cls(
            root=root,
            conn=conn,
            config=config,
            git=git if git is not None else GitRepo(root, timeout=config.timeouts.git),
            agents=agents
            if agents is not None
            else ClaudeAgentInvoker(root, config.agent_command, config.timeouts.agent),
            shutdown=shutdown if shutdown is not None else threading.Event(),
            label=label,
        )

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> AppContext:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
