from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .primitives import Primitive


class TagKind(str, Enum):
    GID = "gid"
    DIR_GID = "dir_gid"
    STATUS = "status"


class PointTag(str, Enum):
    GID_A = "gid_a"
    GID_B = "gid_b"


@dataclass(frozen=True, order=True)
class GidLid:
    gid: int
    lid: int

    def __str__(self) -> str:
        return f"{self.gid}.{self.lid}"


CostKey = Tuple[GidLid, GidLid]


@dataclass(frozen=True, order=True)
class CostEntry:
    cost: float
    a: GidLid
    b: GidLid

    @property
    def key(self) -> CostKey:
        return (self.a, self.b)


@dataclass(eq=False)
class PointPrimitive:
    pos: np.ndarray
    tags: Dict[PointTag, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.pos = np.asarray(self.pos, dtype=float).reshape(3)

    def set_tag(self, kind: PointTag, value: int) -> None:
        self.tags[kind] = int(value)

    def get_tag(self, kind: PointTag, default: Optional[int] = None) -> Optional[int]:
        return self.tags.get(kind, default)

    def has_tag(self, kind: PointTag) -> bool:
        return kind in self.tags


class NoInliersError(ValueError):
    """Raised when no point of the cloud lies within the inlier threshold."""

    def __init__(self, threshold: float, candidates: int) -> None:
        super().__init__(
            f"Keine Inlier innerhalb threshold={threshold:g} ({candidates} Punkte geprüft)"
        )
        self.threshold = threshold
        self.candidates = candidates


Extent = Tuple[np.ndarray, np.ndarray]
PrimitiveMap = Dict[int, List["Primitive"]]
Correspondences = Dict[GidLid, GidLid]
