# Copyright (c) Syntropy Systems
"""conclave init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from conclave.agents.roles import SYNTHESIS_DIR
from conclave.config import default_config_dict, get_db_path
from conclave.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
    name: str = typer.Option(
        "",
        "--name",
        help="Project name (default: directory name)",
    ),
) -> None:
    """Initialize a new conclave project.

    Creates a .conclave directory with configuration, agent definitions
    and database, plus docs/synthesis for the shared synthesis documents.
    """
    target = path.resolve()
    conclave_dir = target / ".conclave"

    if conclave_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {conclave_dir}")
        return

    conclave_dir.mkdir(parents=True)
    agents_dir = conclave_dir / "agents"
    agents_dir.mkdir()

    config_path = conclave_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(default_config_dict(name or target.name), f, default_flow_style=False)

    # The store is per-checkout state, never committed
    _ = (conclave_dir / ".gitignore").write_text("conclave.db*\n")

    db_path = get_db_path(conclave_dir)
    init_db(db_path)

    synthesis_dir = target / SYNTHESIS_DIR
    synthesis_dir.mkdir(parents=True, exist_ok=True)

    console.print(f"[green]Initialized conclave project:[/green] {conclave_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]agents:[/dim] {agents_dir}")
    console.print(f"  [dim]synthesis:[/dim] {synthesis_dir}")
