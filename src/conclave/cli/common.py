# Copyright (c) Syntropy Systems
"""Helpers shared by conclave commands."""
from __future__ import annotations

import contextlib
import logging
import signal
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from conclave.config import require_conclave_dir
from conclave.context import AppContext
from conclave.db import get_experiment_by_slug, get_latest_experiment
from conclave.errors import ConclaveError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import FrameType

    from conclave.models.db import ExperimentRecord

console = Console()

STATUS_STYLES = {
    "classified": "dim",
    "reframed": "dim",
    "gated": "yellow",
    "building": "blue",
    "built": "blue",
    "challenged": "magenta",
    "doubted": "magenta",
    "scouted": "magenta",
    "verifying": "cyan",
    "verified": "cyan",
    "resolved": "cyan",
    "compressed": "cyan",
    "merged": "green",
    "dead_end": "red",
}

GRADE_STYLES = {"sound": "green", "good": "green", "weak": "yellow", "rejected": "red"}


def setup_logging(verbose: bool = False) -> None:  # noqa: FBT001, FBT002
    """Route conclave log records through a rich handler on stderr."""
    logger = logging.getLogger("conclave")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.addHandler(RichHandler(console=Console(stderr=True), show_path=False))
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def styled(value: str, styles: dict[str, str]) -> str:
    style = styles.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def open_context() -> AppContext:
    """Open a context for the project around the current directory."""
    try:
        conclave_dir = require_conclave_dir()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    return AppContext.open(conclave_dir.parent)


def install_shutdown_handler(ctx: AppContext) -> None:
    """Let SIGINT/SIGTERM stop automatic loops between steps."""

    def _handler(signum: int, frame: Optional[FrameType]) -> None:
        console.print("\n[yellow]Shutdown requested, finishing current step...[/yellow]")
        ctx.shutdown.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


@contextlib.contextmanager
def cli_errors() -> Iterator[None]:
    """Turn core errors into `Error: ...` and exit code 1."""
    try:
        yield
    except ConclaveError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def select_experiment(ctx: AppContext, slug: Optional[str]) -> ExperimentRecord:
    """The experiment named by slug, or the latest active one."""
    if slug:
        experiment = get_experiment_by_slug(ctx.conn, slug)
        if experiment is None:
            msg = f"Experiment not found: {slug}"
            raise ConclaveError(msg)
        return experiment
    experiment = get_latest_experiment(ctx.conn)
    if experiment is None:
        msg = "No active experiment. Create one with 'conclave new'."
        raise ConclaveError(msg)
    return experiment
