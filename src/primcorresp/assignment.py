"""Pairing of two primitive sets from a cost map.

:class:`GreedySolver` walks the cost entries in ascending order and accepts a
pair whenever both sides are still free. It never backtracks, so the result is
a valid partial matching but not necessarily the one with minimum total cost;
:func:`optimal_assign` gives that reference through the Hungarian algorithm.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Set

from .metrics import count
from .thirdparty.hungarian import solve as hungarian_solve
from .types import CostEntry, CostKey, Correspondences, GidLid

log = logging.getLogger(__name__)


class CorrespondenceInvariantError(RuntimeError):
    """A primitive was about to be matched twice."""


def sort_costs(costs: Mapping[CostKey, float]) -> List[CostEntry]:
    return sorted(CostEntry(float(cost), a, b) for (a, b), cost in costs.items())


def _insert_unique(corresps: Correspondences, a: GidLid, b: GidLid, taken_b: Set[GidLid]) -> None:
    if a in corresps:
        raise CorrespondenceInvariantError(
            f"duplicate choice for {a}: already paired with {corresps[a]}, now {b}"
        )
    if b in taken_b:
        raise CorrespondenceInvariantError(f"duplicate choice for {b}: already paired, now with {a}")
    corresps[a] = b
    taken_b.add(b)


class GreedySolver:
    BUILDING = "building"
    RESOLVED = "resolved"

    def __init__(self) -> None:
        self.state = self.BUILDING
        self._entries: List[CostEntry] = []

    def add(self, entry: CostEntry) -> None:
        if self.state != self.BUILDING:
            raise RuntimeError("GreedySolver ist bereits aufgelöst")
        self._entries.append(entry)

    def extend(self, costs: Mapping[CostKey, float]) -> None:
        for (a, b), cost in costs.items():
            self.add(CostEntry(float(cost), a, b))

    @property
    def entries(self) -> List[CostEntry]:
        return sorted(self._entries)

    def resolve(self) -> Correspondences:
        if self.state != self.BUILDING:
            raise RuntimeError("GreedySolver ist bereits aufgelöst")
        self.state = self.RESOLVED

        corresps: Correspondences = {}
        taken_a: Set[GidLid] = set()
        taken_b: Set[GidLid] = set()
        skipped = 0
        for entry in self.entries:
            if entry.a in taken_a or entry.b in taken_b:
                skipped += 1
                continue
            log.info("chose %g for %s - %s", entry.cost, entry.a, entry.b)
            taken_a.add(entry.a)
            _insert_unique(corresps, entry.a, entry.b, taken_b)
        count("greedy_accepted", len(corresps))
        count("greedy_skipped", skipped)
        return corresps


def greedy_assign(costs: Mapping[CostKey, float]) -> Correspondences:
    solver = GreedySolver()
    solver.extend(costs)
    return solver.resolve()


def optimal_assign(costs: Mapping[CostKey, float]) -> Correspondences:
    """Minimum total cost matching; every primitive of the smaller set is paired."""
    keys_a = sorted({a for a, _ in costs})
    keys_b = sorted({b for _, b in costs})
    if not keys_a or not keys_b:
        return {}
    missing = [(a, b) for a in keys_a for b in keys_b if (a, b) not in costs]
    if missing:
        a, b = missing[0]
        raise ValueError(f"Kostenmatrix unvollständig: keine Kosten für {a} - {b}")

    matrix = [[costs[(a, b)] for b in keys_b] for a in keys_a]
    corresps: Correspondences = {}
    taken_b: Set[GidLid] = set()
    for row, col in hungarian_solve(matrix):
        _insert_unique(corresps, keys_a[row], keys_b[col], taken_b)
    return corresps


ASSIGNMENT_METHODS = {
    "greedy": greedy_assign,
    "hungarian": optimal_assign,
}


def assign(costs: Mapping[CostKey, float], method: str = "greedy") -> Correspondences:
    try:
        solver = ASSIGNMENT_METHODS[method]
    except KeyError as exc:
        raise ValueError(
            f"Unbekannte Zuordnungsmethode '{method}' (erlaubt: {', '.join(sorted(ASSIGNMENT_METHODS))})"
        ) from exc
    return solver(costs)


def total_cost(corresps: Mapping[GidLid, GidLid], costs: Mapping[CostKey, float]) -> float:
    return float(sum(costs[(a, b)] for a, b in corresps.items()))


def unmatched(keys: Iterable[GidLid], matched: Iterable[GidLid]) -> List[GidLid]:
    taken = set(matched)
    return sorted(k for k in keys if k not in taken)


__all__: List[str] = [
    "CorrespondenceInvariantError",
    "GreedySolver",
    "assign",
    "greedy_assign",
    "optimal_assign",
    "sort_costs",
    "total_cost",
    "unmatched",
]
