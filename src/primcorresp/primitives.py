"""Line and plane primitives stored as fixed-length coefficient vectors.

Both kinds keep a 3-D position in ``coeffs[:3]`` and a unit vector in
``coeffs[3:6]``: the direction for lines, the normal for planes. Code that
only needs position and orientation works on either through ``pos()`` and
``dir()``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Dict, Optional, Sequence, Type

import numpy as np

from .geom import as_positions, eigen_decomposition, safe_normalize
from .types import Extent, NoInliersError, TagKind

UNIT_Z = np.array([0.0, 0.0, 1.0])


@dataclass(eq=False)
class Primitive:
    coeffs: np.ndarray
    tags: Dict[TagKind, int] = field(default_factory=dict)
    _extent: Optional[Extent] = field(default=None, repr=False)

    DIM: ClassVar[int] = 6
    KIND: ClassVar[str] = "primitive"

    def __post_init__(self) -> None:
        coeffs = np.asarray(self.coeffs, dtype=float).reshape(-1)
        if coeffs.shape != (self.DIM,):
            raise ValueError(f"{self.KIND} erwartet {self.DIM} Koeffizienten, erhalten: {coeffs.shape[0]}")
        direction = coeffs[3:6]
        norm = float(np.linalg.norm(direction))
        if norm == 0.0 or not np.isfinite(norm):
            raise ValueError(f"{self.KIND}: Richtung darf nicht Null sein ({direction.tolist()})")
        coeffs[3:6] = direction / norm
        self.coeffs = coeffs
        self.tags = {TagKind(k): int(v) for k, v in self.tags.items()}

    # ---- construction -------------------------------------------------

    @classmethod
    def from_point_direction(cls, point, direction) -> "Primitive":
        coeffs = np.concatenate([np.asarray(point, dtype=float), np.asarray(direction, dtype=float)])
        return cls(coeffs)

    @classmethod
    def from_eigen(cls, center, eigen_values, eigen_vectors) -> "Primitive":
        raise NotImplementedError

    @classmethod
    def from_points(cls, cloud, indices: Optional[Sequence[int]] = None) -> "Primitive":
        center, vals, vecs = eigen_decomposition(cloud, indices)
        return cls.from_eigen(center, vals, vecs)

    # ---- accessors ----------------------------------------------------

    def pos(self) -> np.ndarray:
        return self.coeffs[:3].copy()

    def dir(self) -> np.ndarray:
        return self.coeffs[3:6].copy()

    def set_tag(self, kind: TagKind, value: int) -> None:
        self.tags[TagKind(kind)] = int(value)

    def get_tag(self, kind: TagKind, default: Optional[int] = None) -> Optional[int]:
        return self.tags.get(TagKind(kind), default)

    def has_tag(self, kind: TagKind) -> bool:
        return TagKind(kind) in self.tags

    def copy(self) -> "Primitive":
        return type(self)(self.coeffs.copy(), dict(self.tags))

    # ---- extent cache -------------------------------------------------

    def has_extent(self) -> bool:
        return self._extent is not None

    def invalidate_extent(self) -> None:
        self._extent = None

    # ---- geometry -----------------------------------------------------

    def distance(self, point) -> float:
        raise NotImplementedError

    def project_point(self, point) -> np.ndarray:
        raise NotImplementedError

    def get_extent(self, cloud, threshold: float = 0.01, indices: Optional[Sequence[int]] = None) -> Extent:
        raise NotImplementedError(f"{self.KIND} hat keine Ausdehnungsberechnung")

    # ---- io -----------------------------------------------------------

    @staticmethod
    def file_entry_length() -> int:
        return 6

    def to_file_entry(self) -> str:
        raise NotImplementedError

    @classmethod
    def from_file_entry(cls, entries: Sequence[float]) -> "Primitive":
        raise NotImplementedError

    def __repr__(self) -> str:
        pos = ", ".join(f"{v:.4f}" for v in self.coeffs[:3])
        vec = ", ".join(f"{v:.4f}" for v in self.coeffs[3:6])
        tags = ", ".join(f"{k.value}={v}" for k, v in self.tags.items())
        return f"{type(self).__name__}(pos=[{pos}], dir=[{vec}]{', ' + tags if tags else ''})"


class LinePrimitive(Primitive):
    """Infinite 3-D line; stores direction, NOT normal."""

    KIND = "line"

    @classmethod
    def from_eigen(cls, center, eigen_values, eigen_vectors) -> "LinePrimitive":
        max_id = int(np.argmax(np.asarray(eigen_values, dtype=float)))
        return cls.from_point_direction(center, np.asarray(eigen_vectors, dtype=float)[:, max_id])

    @classmethod
    def from_end_points(cls, p0, p1) -> "LinePrimitive":
        p0 = np.asarray(p0, dtype=float)
        return cls.from_point_direction(p0, np.asarray(p1, dtype=float) - p0)

    def normal(self, plane_normal: np.ndarray = UNIT_Z) -> np.ndarray:
        """Normal of the line inside the plane with normal ``plane_normal``.

        Raises ``ValueError`` for a line parallel to ``plane_normal``.
        """
        plane_normal = np.asarray(plane_normal, dtype=float)
        direction = self.dir()
        par = direction - plane_normal * float(direction @ plane_normal)
        if float(np.linalg.norm(par)) < 1e-12:
            raise ValueError(
                f"{self!r} steht senkrecht auf der Ebene mit Normale {plane_normal.tolist()}, "
                "keine Normale in der Ebene"
            )
        return safe_normalize(np.cross(safe_normalize(par), plane_normal))

    def distance(self, point) -> float:
        return float(np.linalg.norm(np.cross(self.pos() - np.asarray(point, dtype=float), self.dir())))

    def project_point(self, point) -> np.ndarray:
        point = np.asarray(point, dtype=float)
        line_pt = self.pos()
        line_dir = self.dir()
        k = (point @ line_dir - line_pt @ line_dir) / (line_dir @ line_dir)
        return line_pt + k * line_dir

    def get_extent(self, cloud, threshold: float = 0.01, indices: Optional[Sequence[int]] = None) -> Extent:
        """End points of the segment spanned by the inliers of this line.

        The result is cached until :meth:`invalidate_extent` is called; later
        calls ignore their arguments. Offsets are measured as
        ``(p - p0) . (p0 + dir)`` against the first projected inlier ``p0``
        and the min/max tracking starts from zero, not from ``p0``'s offset.
        """
        if self._extent is not None:
            return self._extent

        points = as_positions(cloud)
        candidates = range(points.shape[0]) if indices is None else indices
        inliers = [pid for pid in candidates if self.distance(points[pid]) < threshold]
        if not inliers:
            raise NoInliersError(threshold, len(candidates))

        on_line = [self.project_point(points[pid]) for pid in inliers]

        min_dist = max_dist = 0.0
        min_id = max_id = 0
        p0 = on_line[0]
        line_dir = self.dir()
        for point_id in range(1, len(on_line)):
            dist = float((on_line[point_id] - p0) @ (p0 + line_dir))
            if dist < min_dist:
                min_dist = dist
                min_id = point_id
            elif dist > max_dist:
                max_dist = dist
                max_id = point_id

        self._extent = (on_line[min_id], on_line[max_id])
        return self._extent

    def to_file_entry(self) -> str:
        values = list(self.pos()) + list(self.normal())
        return "".join(f"{v:.9f}," for v in values)

    @classmethod
    def from_file_entry(cls, entries: Sequence[float]) -> "LinePrimitive":
        entries = np.asarray(entries, dtype=float)
        return cls.from_point_direction(entries[:3], np.cross(entries[3:6], UNIT_Z))


class PlanePrimitive(Primitive):
    """Infinite plane through ``pos()`` with unit normal ``dir()``."""

    KIND = "plane"

    @classmethod
    def from_eigen(cls, center, eigen_values, eigen_vectors) -> "PlanePrimitive":
        min_id = int(np.argmin(np.asarray(eigen_values, dtype=float)))
        return cls.from_point_direction(center, np.asarray(eigen_vectors, dtype=float)[:, min_id])

    def normal(self) -> np.ndarray:
        return self.dir()

    def distance(self, point) -> float:
        return abs(float((np.asarray(point, dtype=float) - self.pos()) @ self.dir()))

    def project_point(self, point) -> np.ndarray:
        point = np.asarray(point, dtype=float)
        normal = self.dir()
        return point - normal * float((point - self.pos()) @ normal) / float(normal @ normal)

    def get_extent(self, cloud, threshold: float = 0.01, indices: Optional[Sequence[int]] = None) -> Extent:
        """Extreme inliers along the main in-plane axis of the inlier spread.

        Cached like :meth:`LinePrimitive.get_extent`.
        """
        if self._extent is not None:
            return self._extent

        points = as_positions(cloud)
        candidates = range(points.shape[0]) if indices is None else indices
        inliers = [pid for pid in candidates if self.distance(points[pid]) < threshold]
        if not inliers:
            raise NoInliersError(threshold, len(candidates))

        on_plane = np.array([self.project_point(points[pid]) for pid in inliers])
        if on_plane.shape[0] == 1:
            self._extent = (on_plane[0], on_plane[0].copy())
            return self._extent

        center, vals, vecs = eigen_decomposition(on_plane)
        axis = vecs[:, int(np.argmax(vals))]
        offsets = (on_plane - center) @ axis
        self._extent = (on_plane[int(np.argmin(offsets))], on_plane[int(np.argmax(offsets))])
        return self._extent

    def to_file_entry(self) -> str:
        return "".join(f"{v:.9f}," for v in self.coeffs)

    @classmethod
    def from_file_entry(cls, entries: Sequence[float]) -> "PlanePrimitive":
        return cls(np.asarray(entries, dtype=float)[:6])


PRIMITIVE_KINDS: Dict[str, Type[Primitive]] = {
    LinePrimitive.KIND: LinePrimitive,
    PlanePrimitive.KIND: PlanePrimitive,
}


def primitive_class(kind: str) -> Type[Primitive]:
    try:
        return PRIMITIVE_KINDS[kind]
    except KeyError as exc:
        raise ValueError(
            f"Unbekannter Primitivtyp '{kind}' (erlaubt: {', '.join(sorted(PRIMITIVE_KINDS))})"
        ) from exc
