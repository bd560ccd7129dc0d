# Copyright (c) Syntropy Systems
"""Exception types raised by the conclave core."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path


class ConclaveError(Exception):
    """Base class for conclave errors."""


class InvalidTransition(ConclaveError):
    """A status change that is not in the transition table."""

    def __init__(self, current: str, target: str, valid: Sequence[str]) -> None:
        self.current = current
        self.target = target
        self.valid = list(valid)
        super().__init__(
            f"Invalid transition: {current} -> {target}. Valid: [{', '.join(self.valid)}]"
        )


class ExtractionFailure(ConclaveError):
    """Every extraction tier failed for an agent's output."""

    def __init__(self, role: str, artifact: Optional[Path] = None) -> None:
        self.role = role
        self.artifact = artifact
        where = f" Raw output preserved at {artifact}." if artifact else ""
        super().__init__(
            f"Could not extract structured data from {role} output.{where} Manual review required."
        )


class SubprocessFailure(ConclaveError):
    """An external command failed or timed out."""

    def __init__(
        self,
        argv: Sequence[str],
        returncode: Optional[int] = None,
        output: str = "",
        *,
        timed_out: bool = False,
    ) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        self.timed_out = timed_out
        command = " ".join(self.argv[:3])
        if timed_out:
            msg = f"{command} timed out"
        else:
            msg = f"{command} exited with code {returncode}"
        detail = output.strip().splitlines()[-1] if output.strip() else ""
        super().__init__(f"{msg}: {detail}" if detail else msg)


class EmptyVerificationSet(ConclaveError):
    """Grade resolution was asked to work on zero grades."""

    def __init__(self) -> None:
        super().__init__(
            "Cannot determine grade from empty verification set. "
            "This indicates a data integrity issue."
        )


class CircuitBreakerTripped(ConclaveError):
    """A sub-type has accumulated too many weak/rejected outcomes."""

    def __init__(self, sub_type: str, failures: int, threshold: int) -> None:
        self.sub_type = sub_type
        self.failures = failures
        self.threshold = threshold
        super().__init__(
            f"Circuit breaker tripped for sub-type '{sub_type}' "
            f"({failures} failures, threshold {threshold}). A policy review is required."
        )


class DirtyWorkingTree(ConclaveError):
    """The shared working copy has uncommitted changes, or could not be checked."""

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail
        if detail:
            super().__init__(f"Could not confirm the working tree is clean: {detail}")
        else:
            super().__init__("Working tree has uncommitted changes. Commit or stash first.")
