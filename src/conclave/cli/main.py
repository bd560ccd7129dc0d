# Copyright (c) Syntropy Systems
"""Main CLI entry point for conclave."""

import typer

from conclave.cli.common import setup_logging
from conclave.cli.experiment import new, revert
from conclave.cli.init_cmd import init
from conclave.cli.metrics_cmd import baseline, compare, measure
from conclave.cli.query import breakers, dead_ends, decisions
from conclave.cli.review_cmd import audit, classify, reframe
from conclave.cli.status import status
from conclave.cli.steps import (
    build,
    challenge,
    compress,
    doubt,
    gate,
    next_cmd,
    resolve,
    run,
    scout,
    verify,
)
from conclave.cli.swarm_cmd import swarm

app = typer.Typer(
    name="conclave",
    help=(
        "Multi-agent experiment orchestration. Build, doubt, challenge and "
        "verify hypotheses, then merge what holds up."
    ),
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    setup_logging(verbose)


# Register commands
_ = app.command()(init)
_ = app.command()(classify)
_ = app.command()(reframe)
_ = app.command()(new)
_ = app.command()(status)
_ = app.command()(gate)
_ = app.command()(build)
_ = app.command()(challenge)
_ = app.command()(doubt)
_ = app.command()(scout)
_ = app.command()(verify)
_ = app.command()(resolve)
_ = app.command()(compress)
_ = app.command()(baseline)
_ = app.command()(measure)
_ = app.command()(compare)
_ = app.command(name="next")(next_cmd)
_ = app.command()(run)
_ = app.command()(swarm)
_ = app.command(name="dead-ends")(dead_ends)
_ = app.command()(decisions)
_ = app.command()(breakers)
_ = app.command()(audit)
_ = app.command()(revert)


if __name__ == "__main__":
    app()
