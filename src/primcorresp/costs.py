from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from .geom import angle_between, population_of, segment_distance
from .metrics import count
from .primitives import Primitive
from .types import CostKey, GidLid, NoInliersError, PointPrimitive, PointTag, PrimitiveMap

log = logging.getLogger(__name__)


@dataclass
class CostContext:
    """Point cloud shared by every cost evaluation of one run."""

    points: Sequence[PointPrimitive] = ()
    gid_a: Optional[int] = None
    gid_b: Optional[int] = None
    extent_threshold: float = 0.01
    _populations: Dict[tuple, frozenset] = field(default_factory=dict, repr=False)

    def population(self, gid: Optional[int], tag: PointTag) -> frozenset:
        if gid is None:
            return frozenset()
        key = (tag, gid)
        if key not in self._populations:
            self._populations[key] = frozenset(population_of(self.points, gid, tag))
        return self._populations[key]


CostFunction = Callable[[Primitive, Primitive, CostContext], float]


def position_distance(prim_a: Primitive, prim_b: Primitive, context: CostContext) -> float:
    return float(np.linalg.norm(prim_a.pos() - prim_b.pos()))


def segment_cost(prim_a: Primitive, prim_b: Primitive, context: CostContext) -> float:
    """Distance between the finite extents, or between positions without inliers."""
    try:
        ext_a = prim_a.get_extent(
            context.points, context.extent_threshold, sorted(context.population(context.gid_a, PointTag.GID_A))
        )
        ext_b = prim_b.get_extent(
            context.points, context.extent_threshold, sorted(context.population(context.gid_b, PointTag.GID_B))
        )
    except NoInliersError as exc:
        log.debug("segment cost falls back to position distance: %s", exc)
        return position_distance(prim_a, prim_b, context)
    return segment_distance(ext_a, ext_b)


def angle_cost(prim_a: Primitive, prim_b: Primitive, context: CostContext) -> float:
    return angle_between(prim_a.dir(), prim_b.dir())


def overlap_cost(prim_a: Primitive, prim_b: Primitive, context: CostContext) -> float:
    """One minus the Jaccard index of the two point populations."""
    pop_a = context.population(context.gid_a, PointTag.GID_A)
    pop_b = context.population(context.gid_b, PointTag.GID_B)
    union = pop_a | pop_b
    if not union:
        return 1.0
    return 1.0 - len(pop_a & pop_b) / len(union)


COST_FUNCTIONS: Dict[str, CostFunction] = {
    "position": position_distance,
    "segment": segment_cost,
    "angle": angle_cost,
    "overlap": overlap_cost,
}


def resolve_cost_function(name: str) -> CostFunction:
    try:
        return COST_FUNCTIONS[name]
    except KeyError as exc:
        raise ValueError(
            f"Unbekannte Kostenfunktion '{name}' (erlaubt: {', '.join(sorted(COST_FUNCTIONS))})"
        ) from exc


def iter_gid_lids(prims: PrimitiveMap) -> List[tuple]:
    """``(GidLid, primitive)`` pairs in ascending gid order, lids counted per patch."""
    out: List[tuple] = []
    for gid in sorted(prims):
        for lid, prim in enumerate(prims[gid]):
            out.append((GidLid(gid, lid), prim))
    return out


def build_cost_map(
    prims_a: PrimitiveMap,
    prims_b: PrimitiveMap,
    points: Sequence[PointPrimitive] = (),
    cost_fn: CostFunction = position_distance,
    extent_threshold: float = 0.01,
) -> Dict[CostKey, float]:
    """Cost of every primitive of ``prims_a`` against every primitive of ``prims_b``."""
    context = CostContext(points=points, extent_threshold=extent_threshold)
    entries_b = iter_gid_lids(prims_b)
    costs: Dict[CostKey, float] = {}
    for gid_lid_a, prim_a in iter_gid_lids(prims_a):
        context.gid_a = gid_lid_a.gid
        for gid_lid_b, prim_b in entries_b:
            context.gid_b = gid_lid_b.gid
            cost = float(cost_fn(prim_a, prim_b, context))
            log.debug("checking %s vs %s: %g", gid_lid_a, gid_lid_b, cost)
            costs[(gid_lid_a, gid_lid_b)] = cost

    count("cost_pairs", len(costs))
    return costs


def cost_summary(costs: Mapping[CostKey, float]) -> Dict[str, float]:
    if not costs:
        return {"count": 0.0}
    values = np.fromiter(costs.values(), dtype=float, count=len(costs))
    return {
        "count": float(values.size),
        "min": float(values.min()),
        "median": float(np.median(values)),
        "max": float(values.max()),
    }
