from __future__ import annotations

import math
from typing import List

import pytest

from primcorresp.costs import (
    CostContext,
    angle_cost,
    build_cost_map,
    iter_gid_lids,
    overlap_cost,
    position_distance,
    resolve_cost_function,
    segment_cost,
)
from primcorresp.metrics import collect
from primcorresp.primitives import LinePrimitive, PlanePrimitive
from primcorresp.types import GidLid, PointPrimitive, PointTag


def make_line(x: float, y: float, z: float, direction=(1.0, 0.0, 0.0)) -> LinePrimitive:
    return LinePrimitive.from_point_direction([x, y, z], direction)


def make_points(rows) -> List[PointPrimitive]:
    points: List[PointPrimitive] = []
    for x, y, z, gid_a, gid_b in rows:
        pnt = PointPrimitive([x, y, z])
        if gid_a is not None:
            pnt.set_tag(PointTag.GID_A, gid_a)
        if gid_b is not None:
            pnt.set_tag(PointTag.GID_B, gid_b)
        points.append(pnt)
    return points


def test_cost_map_covers_full_cross_product() -> None:
    prims_a = {3: [make_line(0, 0, 0), make_line(1, 0, 0)], 1: [make_line(0, 1, 0)]}
    prims_b = {7: [make_line(0, 0, 1)], 8: [make_line(2, 0, 0), make_line(4, 0, 0)]}

    costs = build_cost_map(prims_a, prims_b)

    assert len(costs) == 9
    assert costs[(GidLid(3, 1), GidLid(8, 0))] == pytest.approx(1.0)
    assert costs[(GidLid(1, 0), GidLid(7, 0))] == pytest.approx(math.sqrt(2.0))
    assert costs[(GidLid(3, 0), GidLid(8, 1))] == pytest.approx(4.0)


def test_iter_gid_lids_orders_by_gid_and_counts_lids_per_patch() -> None:
    prims = {5: [make_line(0, 0, 0)], 2: [make_line(1, 0, 0), make_line(2, 0, 0)]}
    keys = [key for key, _ in iter_gid_lids(prims)]
    assert keys == [GidLid(2, 0), GidLid(2, 1), GidLid(5, 0)]


def test_cost_map_counts_pairs_in_active_run() -> None:
    with collect() as run:
        build_cost_map({1: [make_line(0, 0, 0)]}, {1: [make_line(0, 0, 0), make_line(1, 1, 1)]})
    assert run.cost_pairs == 2


def test_custom_cost_function_is_used() -> None:
    calls = []

    def constant(prim_a, prim_b, context: CostContext) -> float:
        calls.append((context.gid_a, context.gid_b))
        return 0.5

    costs = build_cost_map({1: [make_line(0, 0, 0)]}, {4: [make_line(9, 9, 9)]}, cost_fn=constant)

    assert costs == {(GidLid(1, 0), GidLid(4, 0)): 0.5}
    assert calls == [(1, 4)]


def test_angle_cost_is_unsigned() -> None:
    ctx = CostContext()
    line = make_line(0, 0, 0)
    assert angle_cost(line, make_line(0, 0, 0, (0.0, 1.0, 0.0)), ctx) == pytest.approx(math.pi / 2)
    assert angle_cost(line, make_line(3, 3, 3, (-1.0, 0.0, 0.0)), ctx) == pytest.approx(0.0, abs=1e-7)


def test_overlap_cost_uses_both_point_tags() -> None:
    points = make_points(
        [
            (0, 0, 0, 1, 7),
            (1, 0, 0, 1, 7),
            (2, 0, 0, 1, 8),
            (3, 0, 0, None, 7),
        ]
    )
    ctx = CostContext(points=points, gid_a=1, gid_b=7)
    line = make_line(0, 0, 0)

    # A population {0, 1, 2}, B population {0, 1, 3}
    assert overlap_cost(line, line, ctx) == pytest.approx(1.0 - 2.0 / 4.0)

    ctx.gid_b = 99
    assert overlap_cost(line, line, ctx) == pytest.approx(1.0)


def test_segment_cost_uses_extents() -> None:
    points = make_points(
        [
            (0, 0, 0, 1, None),
            (2, 0, 0, 1, None),
            (5, 1, 0, None, 7),
            (9, 1, 0, None, 7),
        ]
    )
    line_a = make_line(0, 0, 0)
    line_b = make_line(5, 1, 0)
    ctx = CostContext(points=points, gid_a=1, gid_b=7, extent_threshold=0.01)

    # segments [0,2] and [5,9] at y=0 and y=1: closest end points (2,0,0)-(5,1,0)
    assert segment_cost(line_a, line_b, ctx) == pytest.approx(math.hypot(3.0, 1.0))


def test_segment_cost_falls_back_to_position_without_inliers() -> None:
    ctx = CostContext(points=[], gid_a=1, gid_b=2)
    line_a = make_line(0, 0, 0)
    line_b = make_line(0, 3, 4)
    assert segment_cost(line_a, line_b, ctx) == pytest.approx(position_distance(line_a, line_b, ctx))


def test_resolve_cost_function() -> None:
    assert resolve_cost_function("position") is position_distance
    with pytest.raises(ValueError, match="Kostenfunktion"):
        resolve_cost_function("hausdorff")


def test_segment_cost_uses_plane_extents() -> None:
    points = make_points(
        [
            (0, 0, 0, 1, None),
            (2, 0, 0, 1, None),
            (5, 0, 0, None, 7),
            (6, 0, 0, None, 7),
        ]
    )
    plane = PlanePrimitive.from_point_direction([0.0, 0.0, 0.0], [0.0, 0.0, 1.0])
    other = PlanePrimitive.from_point_direction([5.0, 0.0, 0.0], [0.0, 0.0, 1.0])
    ctx = CostContext(points=points, gid_a=1, gid_b=7)

    assert segment_cost(plane, other, ctx) == pytest.approx(3.0)
