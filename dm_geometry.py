# dm_geometry.py
# ----------------------------------------------------------------------
# Quad helpers used by the detector, the rectifier and the cascade.
#
# A quad is always a (4, 2) float32 array ordered
#   [top-left, top-right, bottom-right, bottom-left]
# in frame pixel coordinates. Nothing in here keeps state.
# ----------------------------------------------------------------------

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

Point = Tuple[float, float]


def as_points(pts) -> np.ndarray:
    """Coerce list-of-pairs / contour arrays / (4,1,2) arrays to (N, 2) float32."""
    arr = np.asarray(pts, dtype=np.float32)
    return arr.reshape(-1, 2)


def sort_corners(pts) -> np.ndarray:
    """Canonical corner order for 4 points.

    top-left minimises x+y, bottom-right maximises x+y; on an x+y tie
    top-left takes the smaller y and bottom-right the larger y. Of the two
    points left over the one with the smaller x is bottom-left, the other
    top-right.
    """
    p = as_points(pts)
    if p.shape != (4, 2):
        raise ValueError(f"expected 4 points, got {p.shape[0]}")
    # lexicographic pre-sort so duplicate points resolve the same for any input order
    p = p[np.lexsort((p[:, 1], p[:, 0]))]
    s = p.sum(axis=1)
    tl_i = int(np.lexsort((p[:, 1], s))[0])
    br_i = int(np.lexsort((-p[:, 1], -s))[0])
    if tl_i == br_i:
        # only possible when every point is the same
        tl_i, br_i = 0, 3
    rest = [i for i in range(4) if i not in (tl_i, br_i)]
    a, b = rest
    if (p[a, 0], p[a, 1]) <= (p[b, 0], p[b, 1]):
        bl_i, tr_i = a, b
    else:
        bl_i, tr_i = b, a
    return np.array([p[tl_i], p[tr_i], p[br_i], p[bl_i]], dtype=np.float32)


def polygon_area(pts) -> float:
    """Absolute shoelace area."""
    p = as_points(pts).astype(np.float64)
    if len(p) < 3:
        return 0.0
    x, y = p[:, 0], p[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)


def polygon_perimeter(pts, closed: bool = True) -> float:
    p = as_points(pts).astype(np.float64)
    if len(p) < 2:
        return 0.0
    seg = np.diff(p, axis=0)
    total = float(np.linalg.norm(seg, axis=1).sum())
    if closed:
        total += float(np.linalg.norm(p[0] - p[-1]))
    return total


def is_convex(pts) -> bool:
    """True when every turn of the closed polygon has the same sign."""
    p = as_points(pts).astype(np.float64)
    n = len(p)
    if n < 3:
        return False
    sign = 0
    for i in range(n):
        o, a, b = p[i], p[(i + 1) % n], p[(i + 2) % n]
        cross = (a[0] - o[0]) * (b[1] - a[1]) - (a[1] - o[1]) * (b[0] - a[0])
        if abs(cross) < 1e-9:
            continue
        s = 1 if cross > 0 else -1
        if sign == 0:
            sign = s
        elif s != sign:
            return False
    return sign != 0


def bbox_aspect_ratio(pts) -> float:
    """Bounding-box width / height (inf for zero height)."""
    p = as_points(pts)
    w = float(p[:, 0].max() - p[:, 0].min())
    h = float(p[:, 1].max() - p[:, 1].min())
    if h <= 0:
        return float("inf") if w > 0 else 0.0
    return w / h


def distinct_point_count(pts, tol: float = 0.5) -> int:
    p = as_points(pts)
    kept: List[np.ndarray] = []
    for q in p:
        if all(np.linalg.norm(q - k) > tol for k in kept):
            kept.append(q)
    return len(kept)


def square_corners(size: float, inset: float = 0.0) -> np.ndarray:
    lo, hi = inset, inset + size
    return np.array([[lo, lo], [hi, lo], [hi, hi], [lo, hi]], dtype=np.float32)


def perspective_matrix(quad, size: int) -> np.ndarray:
    """3x3 homography taking the canonical quad onto the size x size square."""
    src = sort_corners(quad)
    return cv2.getPerspectiveTransform(src, square_corners(float(size)))


def transform_points(pts, matrix: np.ndarray) -> np.ndarray:
    p = as_points(pts).reshape(-1, 1, 2)
    out = cv2.perspectiveTransform(p, np.asarray(matrix, dtype=np.float64))
    return out.reshape(-1, 2).astype(np.float32)


def offset_points(pts, origin: Tuple[float, float]) -> np.ndarray:
    ox, oy = origin
    return as_points(pts) + np.array([ox, oy], dtype=np.float32)


def scale_points(pts, factor: float) -> np.ndarray:
    return as_points(pts) * np.float32(factor)


def quad_to_list(quad: Optional[np.ndarray]) -> Optional[List[List[float]]]:
    """JSON-friendly view of a quad."""
    if quad is None:
        return None
    return [[round(float(x), 2), round(float(y), 2)] for x, y in as_points(quad)]


def quad_from_list(pts: Optional[Sequence[Iterable[float]]]) -> Optional[np.ndarray]:
    if not pts:
        return None
    arr = as_points([list(p) for p in pts])
    if arr.shape != (4, 2):
        return None
    return sort_corners(arr)
