# Copyright (c) Syntropy Systems
"""Metrics capture and before/after comparison."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, cast

from conclave.db import get_metrics, insert_metric, transaction
from conclave.errors import ConclaveError, SubprocessFailure
from conclave.runner import run_process

if TYPE_CHECKING:
    import sqlite3

    from conclave.config import ConclaveConfig
    from conclave.context import AppContext
    from conclave.models.db import ExperimentRecord

logger = logging.getLogger(__name__)


@dataclass
class MetricComparison:
    """One tracked metric on one fixture, before and after a build."""

    fixture: str
    metric: str
    before: float
    after: float
    delta: float
    regression: bool
    gate: bool = False


def is_regression(before: float, after: float, direction: str) -> bool:
    if direction == "lower_is_better":
        return after > before
    if direction == "higher_is_better":
        return after < before
    # closer_to_gt has no ground truth to compare against yet
    return False


def parse_metrics_output(text: str) -> list[tuple[str, str, float]]:
    """Parse ``{"fixtures": {name: {metric: number}}}`` into rows.

    Non-numeric values (booleans included) are skipped. Raises ValueError
    when the text is not JSON.
    """
    data = json.loads(text)
    rows: list[tuple[str, str, float]] = []
    if not isinstance(data, dict):
        return rows
    fixtures = cast("dict[str, object]", data).get("fixtures")
    if not isinstance(fixtures, dict):
        return rows
    for fixture, metrics in cast("dict[str, object]", fixtures).items():
        if not isinstance(metrics, dict):
            continue
        for name, value in cast("dict[str, object]", metrics).items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            rows.append((str(fixture), str(name), float(value)))
    return rows


def capture_metrics(
    ctx: AppContext,
    experiment: ExperimentRecord,
    phase: str,
    *,
    strict: bool = False,
) -> int:
    """Run the metrics command and store one phase of readings.

    Any failure is logged as a warning and captures nothing, unless strict
    is set, in which case a missing command or a failed run raises.
    """
    command = ctx.config.metrics.command
    if not command:
        if strict:
            msg = "No metrics.command configured in .conclave/config.yaml"
            raise ConclaveError(msg)
        return 0

    try:
        output = run_process(["/bin/sh", "-c", command], ctx.root, ctx.config.timeouts.metrics)
        rows = parse_metrics_output(output)
    except SubprocessFailure as e:
        if strict:
            raise
        logger.warning("Metrics capture (%s) failed: %s", phase, e)
        return 0
    except ValueError as e:
        if strict:
            msg = f"Metrics output is not valid JSON: {e}"
            raise ConclaveError(msg) from e
        logger.warning("Metrics output (%s) is not valid JSON: %s", phase, e)
        return 0

    with transaction(ctx.conn):
        for fixture, name, value in rows:
            insert_metric(ctx.conn, experiment.id, phase, fixture, name, value)
    logger.info("Captured %d %s metric(s) for %s", len(rows), phase, experiment.slug)
    return len(rows)


def compare_metrics(
    conn: sqlite3.Connection, experiment_id: int, config: ConclaveConfig
) -> list[MetricComparison]:
    """Compare tracked metrics present in both phases.

    Later readings of the same fixture/metric win over earlier ones.
    """
    before = {(m.fixture, m.metric_name): m.metric_value for m in get_metrics(conn, experiment_id, "before")}
    after = {(m.fixture, m.metric_name): m.metric_value for m in get_metrics(conn, experiment_id, "after")}
    gates = config.metrics.gate_fixtures()

    fixtures = sorted({fixture for fixture, _ in [*before, *after]})
    comparisons: list[MetricComparison] = []
    for fixture in fixtures:
        for metric, tracked in config.metrics.tracked.items():
            key = (fixture, metric)
            if key not in before or key not in after:
                continue
            b, a = before[key], after[key]
            comparisons.append(
                MetricComparison(
                    fixture=fixture,
                    metric=metric,
                    before=b,
                    after=a,
                    delta=a - b,
                    regression=is_regression(b, a, tracked.direction),
                    gate=fixture in gates,
                )
            )
    return comparisons


def gate_violations(comparisons: list[MetricComparison]) -> list[MetricComparison]:
    return [c for c in comparisons if c.gate and c.regression]


def has_metrics(conn: sqlite3.Connection, experiment_id: int, phase: str) -> bool:
    return bool(get_metrics(conn, experiment_id, phase))
