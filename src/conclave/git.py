# Copyright (c) Syntropy Systems
"""Thin wrapper over the git CLI, bound to one checkout."""
from __future__ import annotations

import logging
from pathlib import Path

from conclave.errors import SubprocessFailure
from conclave.runner import CommandResult, run_command

logger = logging.getLogger(__name__)

# Framework state never belongs in experiment commits or diffs
FRAMEWORK_PATHSPEC = ":!.conclave/"


class GitRepo:
    """Version-control operations for a single working tree.

    Every call carries a timeout. Failures raise SubprocessFailure; callers
    decide whether that is fatal or a warning.
    """

    def __init__(self, root: Path, timeout: float = 60.0) -> None:
        self.root = root
        self.timeout = timeout

    def _git(self, *args: str) -> CommandResult:
        return run_command(["git", *args], self.root, self.timeout)

    def _run(self, *args: str) -> str:
        result = self._git(*args)
        if result.returncode != 0:
            raise SubprocessFailure(
                ["git", *args], result.returncode, result.stderr or result.stdout
            )
        return result.stdout.strip()

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD")

    def is_clean(self) -> bool:
        return self._run("status", "--porcelain") == ""

    def trunk_branch(self) -> str:
        """Return 'main' if it exists, else 'master'."""
        result = self._git("rev-parse", "--verify", "--quiet", "refs/heads/main")
        return "main" if result.returncode == 0 else "master"

    def create_branch(self, name: str) -> None:
        """Create a branch from HEAD and switch to it."""
        self._run("checkout", "-b", name)

    def checkout(self, ref: str) -> None:
        self._run("checkout", ref)

    def commit_all(self, message: str) -> bool:
        """Stage everything except framework state and commit.

        Returns False when there was nothing to commit.
        """
        self._run("add", "-A", "--", ".", FRAMEWORK_PATHSPEC)
        staged = self._git("diff", "--cached", "--quiet")
        if staged.returncode == 0:
            return False
        self._run("commit", "-m", message)
        return True

    def merge_no_ff(self, branch: str, message: str) -> None:
        self._run("merge", branch, "--no-ff", "-m", message)

    def merge_into_trunk(self, branch: str, message: str) -> None:
        """Switch to trunk and merge branch with a merge commit."""
        self.checkout(self.trunk_branch())
        self.merge_no_ff(branch, message)

    def abort_merge(self) -> None:
        """Back out of a conflicted merge, leaving trunk as it was."""
        self._run("merge", "--abort")

    def discard_changes(self) -> None:
        """Drop uncommitted modifications to tracked files."""
        self._run("checkout", "--", ".")

    def diff_against(self, ref: str) -> str:
        return self._run("diff", ref, "--", ".", FRAMEWORK_PATHSPEC)

    def worktree_add(self, path: Path, branch: str) -> None:
        self._run("worktree", "add", str(path), "-b", branch)

    def worktree_remove(self, path: Path) -> None:
        self._run("worktree", "remove", str(path), "--force")

    def worktree_list(self) -> list[Path]:
        """Paths of every checkout attached to this repository."""
        output = self._run("worktree", "list", "--porcelain")
        return [
            Path(line[len("worktree "):])
            for line in output.splitlines()
            if line.startswith("worktree ")
        ]

    def worktree_prune(self) -> None:
        self._run("worktree", "prune")

    def delete_branch(self, name: str) -> None:
        self._run("branch", "-D", name)
