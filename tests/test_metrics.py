from __future__ import annotations

import logging

import numpy as np
import pytest

from primcorresp.assignment import greedy_assign
from primcorresp.geom import extent_for_drawing
from primcorresp.metrics import RunMetrics, active_run, collect, count, stage
from primcorresp.primitives import LinePrimitive
from primcorresp.types import GidLid


def test_collect_activates_run_only_inside_block() -> None:
    assert active_run() is None
    with collect() as run:
        assert active_run() is run
        count("cost_pairs", 3)
        count("cost_pairs")
    assert active_run() is None
    assert run.cost_pairs == 4

    count("cost_pairs")
    assert run.cost_pairs == 4


def test_stage_time_accumulates_and_logs(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("stage_test")
    run = RunMetrics()

    with caplog.at_level(logging.DEBUG, logger="stage_test"):
        with collect(run):
            with stage("corresp.costs", logger):
                pass
            with stage("corresp.costs"):
                pass

    assert run.stage_seconds["corresp.costs"] >= 0.0
    assert run.timing_summary().startswith("corresp.costs=")
    assert run.timing_summary().endswith("ms")
    assert any("corresp.costs took" in record.getMessage() for record in caplog.records)


def test_unknown_counter_is_rejected() -> None:
    with pytest.raises(KeyError):
        RunMetrics().count("pairs_found")


def test_greedy_resolution_reports_accepted_and_skipped_entries() -> None:
    costs = {
        (GidLid(1, 0), GidLid(7, 0)): 0.1,
        (GidLid(1, 0), GidLid(8, 0)): 0.5,
        (GidLid(2, 0), GidLid(7, 0)): 0.2,
        (GidLid(2, 0), GidLid(8, 0)): 0.3,
    }
    with collect() as run:
        greedy_assign(costs)

    assert run.greedy_accepted == 2
    assert run.greedy_skipped == 2
    assert run.counters()["greedy_accepted"] == 2


def test_extent_retries_and_fallbacks_are_counted() -> None:
    line = LinePrimitive.from_point_direction([0.0, 0.0, 0.0], [1.0, 0.0, 0.0])
    far = LinePrimitive.from_point_direction([0.0, 9.0, 0.0], [1.0, 0.0, 0.0])
    cloud = np.array([[0.0, 0.05, 0.0], [4.0, 0.05, 0.0]])

    with collect() as run:
        extent_for_drawing(line, cloud, radius=0.01, max_iters=10)
        extent_for_drawing(far, cloud, radius=0.01, max_iters=3)

    # the first line needs three doublings to reach points 0.05 away
    assert run.extent_retries == 3 + 3
    assert run.extent_fallbacks == 1
    assert "extent_fallbacks=1" in run.counter_summary()
