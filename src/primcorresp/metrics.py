"""Stage timings and counters of one correspondence run.

A :class:`RunMetrics` is activated with :func:`collect`; library code reports
into whichever run is active through :func:`count` and :func:`stage`, and does
nothing when no run is being collected.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from time import perf_counter
from typing import Dict, Iterator, Optional

COUNTERS = (
    "cost_pairs",
    "greedy_accepted",
    "greedy_skipped",
    "extent_retries",
    "extent_fallbacks",
)

_ACTIVE_RUN: ContextVar[Optional["RunMetrics"]] = ContextVar("primcorresp_run_metrics", default=None)


@dataclass
class RunMetrics:
    stage_seconds: Dict[str, float] = field(default_factory=dict)
    cost_pairs: int = 0
    greedy_accepted: int = 0
    greedy_skipped: int = 0
    extent_retries: int = 0
    extent_fallbacks: int = 0

    def add_stage(self, name: str, seconds: float) -> None:
        self.stage_seconds[name] = self.stage_seconds.get(name, 0.0) + max(seconds, 0.0)

    def count(self, name: str, value: int = 1) -> None:
        if name not in COUNTERS:
            raise KeyError(f"unknown run counter {name!r}")
        setattr(self, name, getattr(self, name) + int(value))

    def counters(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in COUNTERS}

    def timing_summary(self) -> str:
        parts = [f"{name}={sec * 1000:.1f}ms" for name, sec in self.stage_seconds.items()]
        parts.append(f"total={sum(self.stage_seconds.values()) * 1000:.1f}ms")
        return " | ".join(parts)

    def counter_summary(self) -> str:
        return " | ".join(f"{name}={value}" for name, value in self.counters().items())


def active_run() -> Optional[RunMetrics]:
    return _ACTIVE_RUN.get()


@contextmanager
def collect(metrics: Optional[RunMetrics] = None) -> Iterator[RunMetrics]:
    """Make ``metrics`` (or a fresh instance) the active run inside the block."""
    run = metrics if metrics is not None else RunMetrics()
    token = _ACTIVE_RUN.set(run)
    try:
        yield run
    finally:
        _ACTIVE_RUN.reset(token)


def count(name: str, value: int = 1) -> None:
    run = _ACTIVE_RUN.get()
    if run is not None:
        run.count(name, value)


@contextmanager
def stage(name: str, logger: Optional[logging.Logger] = None) -> Iterator[None]:
    """Add the wall-clock time of the block to the active run under ``name``."""
    start = perf_counter()
    try:
        yield
    finally:
        elapsed = perf_counter() - start
        run = _ACTIVE_RUN.get()
        if run is not None:
            run.add_stage(name, elapsed)
        if logger is not None:
            logger.debug("%s took %.3f s", name, elapsed)


__all__ = ["COUNTERS", "RunMetrics", "active_run", "collect", "count", "stage"]
