# Copyright (c) Syntropy Systems
"""Sibling git worktrees that give each swarm worker its own checkout."""
from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from conclave.agents.roles import SYNTHESIS_DIR
from conclave.config import get_db_path
from conclave.db import init_db
from conclave.errors import SubprocessFailure

if TYPE_CHECKING:
    from pathlib import Path

    from conclave.git import GitRepo

logger = logging.getLogger(__name__)

SWARM_MARKER = "-swarm-"


@dataclass
class Worktree:
    """One worker's checkout and the experiment it will run."""

    path: Path
    branch: str
    slug: str
    number: str
    hypothesis: str

    @property
    def db_path(self) -> Path:
        return get_db_path(self.path / ".conclave")


def worktree_path(project_root: Path, number: str, slug: str) -> Path:
    """Sibling directory named <project>-swarm-<NNN>-<slug>."""
    return project_root.parent / f"{project_root.name}{SWARM_MARKER}{number}-{slug}"


def create_worktree(
    git: GitRepo, project_root: Path, slug: str, number: str, hypothesis: str
) -> Worktree:
    """Add a worktree on a fresh swarm/<NNN>-<slug> branch."""
    worktree = Worktree(
        path=worktree_path(project_root, number, slug),
        branch=f"swarm/{number}-{slug}",
        slug=slug,
        number=number,
        hypothesis=hypothesis,
    )
    git.worktree_add(worktree.path, worktree.branch)
    logger.debug("Created worktree %s on %s", worktree.path, worktree.branch)
    return worktree


def initialize_worktree(project_root: Path, worktree: Worktree) -> None:
    """Copy config, agent definitions and synthesis, then create an empty store."""
    source_dir = project_root / ".conclave"
    target_dir = worktree.path / ".conclave"
    target_dir.mkdir(parents=True, exist_ok=True)

    config_file = source_dir / "config.yaml"
    if config_file.is_file():
        shutil.copy2(config_file, target_dir / "config.yaml")

    agents_dir = source_dir / "agents"
    if agents_dir.is_dir():
        shutil.copytree(agents_dir, target_dir / "agents", dirs_exist_ok=True)

    synthesis = project_root / SYNTHESIS_DIR
    if synthesis.is_dir():
        target = worktree.path / SYNTHESIS_DIR
        target.mkdir(parents=True, exist_ok=True)
        for item in synthesis.iterdir():
            if item.is_file():
                shutil.copy2(item, target / item.name)

    # A store checked into the branch must not leak into the worker
    if worktree.db_path.exists():
        worktree.db_path.unlink()
    init_db(worktree.db_path)


def cleanup_worktree(git: GitRepo, worktree: Worktree, *, keep_branch: bool = False) -> None:
    """Remove the checkout and, unless keep_branch, its branch. Failures are only logged."""
    try:
        git.worktree_remove(worktree.path)
    except SubprocessFailure as e:
        logger.warning("Could not remove worktree %s, remove it manually: %s", worktree.path, e)
    if not keep_branch:
        try:
            git.delete_branch(worktree.branch)
        except SubprocessFailure as e:
            logger.debug("Branch %s not deleted: %s", worktree.branch, e)
    try:
        git.worktree_prune()
    except SubprocessFailure as e:
        logger.debug("Worktree prune failed: %s", e)


def orphan_branch(project_root: Path, path: Path) -> Optional[str]:
    """Branch of a swarm checkout belonging to project_root, or None."""
    if path.resolve().parent != project_root.resolve().parent:
        return None
    match = re.fullmatch(rf"{re.escape(project_root.name)}{SWARM_MARKER}(\d{{3}})-(.+)", path.name)
    if match is None:
        return None
    return f"swarm/{match.group(1)}-{match.group(2)}"


def remove_orphaned_worktrees(git: GitRepo, project_root: Path) -> list[Path]:
    """Remove swarm worktrees and branches left behind by an interrupted run."""
    try:
        paths = git.worktree_list()
    except SubprocessFailure as e:
        logger.warning("Could not list worktrees: %s", e)
        return []

    removed: list[Path] = []
    branches: list[str] = []
    for path in paths:
        branch = orphan_branch(project_root, path)
        if branch is None:
            continue
        if path.exists():
            try:
                git.worktree_remove(path)
            except SubprocessFailure as e:
                logger.warning("Could not remove orphaned worktree %s: %s", path, e)
                continue
        logger.info("Removed orphaned worktree %s", path)
        removed.append(path)
        branches.append(branch)

    try:
        git.worktree_prune()
    except SubprocessFailure as e:
        logger.debug("Worktree prune failed: %s", e)
    for branch in branches:
        try:
            git.delete_branch(branch)
        except SubprocessFailure as e:
            logger.debug("Branch %s not deleted: %s", branch, e)
    return removed
