from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .metrics import count
from .types import Extent, NoInliersError, PointPrimitive, PointTag

log = logging.getLogger(__name__)


def as_positions(cloud) -> np.ndarray:
    """Return an ``(N, 3)`` float array for a cloud of points or raw coordinates."""
    if isinstance(cloud, np.ndarray):
        arr = np.asarray(cloud, dtype=float)
    else:
        rows = [p.pos if isinstance(p, PointPrimitive) else p for p in cloud]
        if not rows:
            return np.zeros((0, 3), dtype=float)
        arr = np.asarray(rows, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Punktwolke muss die Form (N, 3) haben, erhalten: {arr.shape}")
    return arr


def safe_normalize(vec: np.ndarray) -> np.ndarray:
    vec = np.asarray(vec, dtype=float)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return np.zeros_like(vec)
    return vec / norm


def _select(points: np.ndarray, indices: Optional[Sequence[int]]) -> np.ndarray:
    if indices is None:
        return points
    return points[np.asarray(list(indices), dtype=int)]


def eigen_decomposition(
    cloud, indices: Optional[Sequence[int]] = None
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Centroid, eigen values and eigen vectors (columns) of the point scatter."""
    arr = _select(as_positions(cloud), indices)
    if arr.shape[0] < 2:
        raise ValueError("Eigenzerlegung benötigt mindestens zwei Punkte")

    center = arr.mean(axis=0)
    centered = arr - center
    scatter = centered.T @ centered / arr.shape[0]

    vals, vecs = np.linalg.eigh(scatter)
    if vals.shape != (3,):
        raise RuntimeError("Unexpected eigen decomposition result")
    return center, vals, vecs


def population_of(points: Iterable[PointPrimitive], gid: int, tag: PointTag) -> List[int]:
    """Indices of the points whose ``tag`` equals ``gid``."""
    return [idx for idx, pnt in enumerate(points) if pnt.get_tag(tag) == gid]


def point_to_segment_distance(point: np.ndarray, start: np.ndarray, end: np.ndarray) -> float:
    point = np.asarray(point, dtype=float)
    start = np.asarray(start, dtype=float)
    end = np.asarray(end, dtype=float)
    delta = end - start
    denom = float(delta @ delta)
    if denom == 0.0:
        return float(np.linalg.norm(point - start))
    t = float((point - start) @ delta) / denom
    t = max(0.0, min(1.0, t))
    return float(np.linalg.norm(point - (start + t * delta)))


def segment_distance(seg_a: Extent, seg_b: Extent) -> float:
    distances = [
        point_to_segment_distance(seg_a[0], seg_b[0], seg_b[1]),
        point_to_segment_distance(seg_a[1], seg_b[0], seg_b[1]),
        point_to_segment_distance(seg_b[0], seg_a[0], seg_a[1]),
        point_to_segment_distance(seg_b[1], seg_a[0], seg_a[1]),
    ]
    return min(distances)


def angle_between(dir_a: np.ndarray, dir_b: np.ndarray, unsigned: bool = True) -> float:
    """Angle in radians; with ``unsigned`` opposite directions count as parallel."""
    ua = safe_normalize(dir_a)
    ub = safe_normalize(dir_b)
    dot = float(ua @ ub)
    if unsigned:
        dot = abs(dot)
    dot = max(-1.0, min(1.0, dot))
    return math.acos(dot)


def stretch_extent(extent: Extent, stretch: float) -> Extent:
    p0, p1 = extent
    diff = p1 - p0
    half_stretch = 1.0 + (stretch - 1.0) / 2.0
    return p1 - diff * half_stretch, p0 + diff * half_stretch


def extent_for_drawing(
    prim,
    cloud,
    radius: float,
    indices: Optional[Sequence[int]] = None,
    max_iters: int = 10,
    stretch: float = 1.0,
) -> Extent:
    """Extent of ``prim`` for display purposes.

    The inlier radius is doubled after every failed attempt. After
    ``max_iters`` attempts the primitive is shown as the short segment
    ``pos -> pos + dir / 10``.
    """
    extent: Optional[Extent] = None
    tmp_radius = float(radius)
    for _ in range(max(int(max_iters), 1)):
        try:
            extent = prim.get_extent(cloud, tmp_radius, indices)
            break
        except NoInliersError:
            count("extent_retries")
            tmp_radius *= 2.0

    if extent is None:
        count("extent_fallbacks")
        log.warning(
            "get_extent exceeded max radius increase iteration count (%d), drawing unit %s",
            max_iters,
            prim,
        )
        extent = (prim.pos().copy(), prim.pos() + prim.dir() / 10.0)

    return stretch_extent(extent, stretch)
