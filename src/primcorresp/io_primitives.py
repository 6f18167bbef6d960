"""Reading and writing of primitive, association, cloud and correspondence files."""
from __future__ import annotations

import csv
import io
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple, Union

import numpy as np
import open3d as o3d

from .primitives import primitive_class
from .types import Correspondences, GidLid, PointPrimitive, PointTag, PrimitiveMap, TagKind

log = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]

_PRIMITIVE_TAG_COLUMNS = (TagKind.GID, TagKind.DIR_GID, TagKind.STATUS)


def _iter_rows(path: Path) -> Iterator[Tuple[int, List[str]]]:
    with open(path, "r", encoding="utf-8", newline="") as handle:
        reader = csv.reader(handle)
        for row in reader:
            tokens = [tok.strip() for tok in row]
            while tokens and tokens[-1] == "":
                tokens.pop()
            if not tokens or tokens[0].startswith("#"):
                continue
            yield reader.line_num, tokens


def read_primitives(path: PathLike, kind: str = "line") -> PrimitiveMap:
    """Read ``x,y,z,nx,ny,nz[,gid[,dir_gid[,status]]],`` lines into patches.

    Entries without a gid form a patch of their own, keyed by their entry index.
    """
    path = Path(path)
    cls = primitive_class(kind)
    length = cls.file_entry_length()
    prims: PrimitiveMap = {}
    explicit_gids: Set[int] = set()
    index_gids: Set[int] = set()
    count = 0
    for lineno, tokens in _iter_rows(path):
        if len(tokens) < length:
            raise ValueError(f"{path}:{lineno}: erwartet mindestens {length} Werte, erhalten {len(tokens)}")
        try:
            coeffs = [float(tok) for tok in tokens[:length]]
            tag_values = [int(float(tok)) for tok in tokens[length:length + len(_PRIMITIVE_TAG_COLUMNS)]]
        except ValueError as exc:
            raise ValueError(f"{path}:{lineno}: {exc}") from exc
        prim = cls.from_file_entry(coeffs)
        for tag, value in zip(_PRIMITIVE_TAG_COLUMNS, tag_values):
            prim.set_tag(tag, value)
        if prim.has_tag(TagKind.GID):
            explicit_gids.add(prim.get_tag(TagKind.GID))
        else:
            prim.set_tag(TagKind.GID, count)
            index_gids.add(count)
        prims.setdefault(prim.get_tag(TagKind.GID), []).append(prim)
        count += 1

    clashes = sorted(explicit_gids & index_gids)
    if clashes:
        log.warning(
            "%s: entry index used as gid collides with explicit gid(s) %s, patches were merged",
            path,
            ", ".join(str(gid) for gid in clashes),
        )
    log.info("read %d primitives in %d patches from %s", count, len(prims), path)
    return prims


def save_primitives(path: PathLike, prims: PrimitiveMap) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write("# x0,y0,z0,nx,ny,nz,gid,dir_gid,status\n")
        writer = csv.writer(handle, lineterminator="\n")
        for gid in sorted(prims):
            for prim in prims[gid]:
                coeffs = prim.to_file_entry().rstrip(",").split(",")
                dir_gid = prim.get_tag(TagKind.DIR_GID, -1)
                status = prim.get_tag(TagKind.STATUS, -1)
                writer.writerow([*coeffs, gid, dir_gid, status, ""])
    return path


def read_associations(path: PathLike) -> Dict[int, Tuple[int, int]]:
    """Map point id to ``(gid, lid)``; ``lid`` is -1 when the file has no such column."""
    path = Path(path)
    assoc: Dict[int, Tuple[int, int]] = {}
    for lineno, tokens in _iter_rows(path):
        if len(tokens) < 2:
            raise ValueError(f"{path}:{lineno}: erwartet 'point_id,gid[,lid]'")
        try:
            values = [int(float(tok)) for tok in tokens[:3]]
        except ValueError as exc:
            raise ValueError(f"{path}:{lineno}: {exc}") from exc
        lid = values[2] if len(values) > 2 else -1
        assoc[values[0]] = (values[1], lid)
    return assoc


def apply_associations(
    points: Sequence[PointPrimitive], assoc: Dict[int, Tuple[int, int]], tag: PointTag
) -> int:
    """Tag every point with its gid; returns the number of points left untagged."""
    missing = 0
    for pid, pnt in enumerate(points):
        entry = assoc.get(pid)
        if entry is None:
            missing += 1
            continue
        pnt.set_tag(tag, entry[0])
    if missing:
        log.warning("%d of %d points have no %s association", missing, len(points), tag.value)
    return missing


def _read_ply(path: Path) -> np.ndarray:
    pcd = o3d.io.read_point_cloud(str(path), format="ply")
    if pcd.is_empty():
        raise ValueError(f"{path}: keine Punkte gelesen (PLY ohne vertex x/y/z?)")
    return np.asarray(pcd.points, dtype=float)


def _read_xyz(path: Path) -> np.ndarray:
    text = path.read_text(encoding="utf-8").replace(",", " ")
    table = np.loadtxt(io.StringIO(text), comments="#", ndmin=2)
    if table.size == 0:
        return np.zeros((0, 3), dtype=float)
    if table.shape[1] < 3:
        raise ValueError(f"{path}: erwartet mindestens drei Spalten (x y z)")
    return table[:, :3]


def read_cloud(path: PathLike) -> List[PointPrimitive]:
    path = Path(path)
    with open(path, "rb") as handle:
        magic = handle.read(3)
    positions = _read_ply(path) if magic == b"ply" else _read_xyz(path)
    log.info("read %d points from %s", positions.shape[0], path)
    return [PointPrimitive(pos) for pos in positions]


def save_backup(path: PathLike) -> Optional[Path]:
    """Move an existing ``path`` out of the way; returns the backup location."""
    path = Path(path)
    if not path.exists():
        return None
    backup = path.with_name(path.name + ".bak")
    index = 1
    while backup.exists():
        backup = path.with_name(f"{path.name}.bak{index}")
        index += 1
    shutil.move(str(path), str(backup))
    log.info("backed up %s to %s", path, backup)
    return backup


def write_correspondences(
    path: PathLike,
    corresps: Correspondences,
    prims_path_a: PathLike,
    prims_path_b: PathLike,
    backup: bool = True,
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if backup:
        save_backup(path)
    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write(f"# corresp between\n# {prims_path_a},{prims_path_b}\n")
        writer = csv.writer(handle, lineterminator="\n")
        for a in sorted(corresps):
            b = corresps[a]
            writer.writerow([a.gid, a.lid, b.gid, b.lid])
    return path


def read_correspondences(path: PathLike) -> Correspondences:
    path = Path(path)
    corresps: Correspondences = {}
    for lineno, tokens in _iter_rows(path):
        if len(tokens) != 4:
            raise ValueError(f"{path}:{lineno}: erwartet 'gidA,lidA,gidB,lidB'")
        try:
            gid_a, lid_a, gid_b, lid_b = (int(tok) for tok in tokens)
        except ValueError as exc:
            raise ValueError(f"{path}:{lineno}: {exc}") from exc
        corresps[GidLid(gid_a, lid_a)] = GidLid(gid_b, lid_b)
    return corresps


def build_subs(corresps: Correspondences, prims_b: PrimitiveMap) -> PrimitiveMap:
    """B primitives regrouped under the gid of their A counterpart."""
    subs: PrimitiveMap = {}
    for a in sorted(corresps):
        b = corresps[a]
        prim = prims_b[b.gid][b.lid].copy()
        prim.set_tag(TagKind.GID, a.gid)
        subs.setdefault(a.gid, []).append(prim)
    return subs
