# dm_rectify.py
from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from dm_geometry import as_points, distinct_point_count, perspective_matrix, polygon_area, sort_corners
from scan_errors import InvalidGeometryError


def _check_quad(quad) -> np.ndarray:
    pts = as_points(quad)
    if pts.shape != (4, 2) or not np.isfinite(pts).all():
        raise InvalidGeometryError(f"quad must be 4 finite points, got shape {pts.shape}")
    if distinct_point_count(pts) <= 3:
        raise InvalidGeometryError("quad has 3 or fewer distinct corners")
    if polygon_area(sort_corners(pts)) <= 1e-6:
        raise InvalidGeometryError("quad has zero area")
    return pts


def warp(image: np.ndarray, quad, size: int) -> np.ndarray:
    """
    Perspective-warp the region inside `quad` onto a size x size square.

    The quad corners land exactly on (0,0), (size,0), (size,size), (0,size),
    so an axis-aligned quad of side 2*size comes out as a plain 2x downscale.
    Raises InvalidGeometryError for degenerate quads.
    """
    if size < 1:
        raise ValueError(f"size must be >= 1, got {size}")
    pts = _check_quad(quad)
    M = perspective_matrix(pts, size)
    return cv2.warpPerspective(image, M, (size, size), flags=cv2.INTER_LINEAR,
                               borderMode=cv2.BORDER_REPLICATE)


def warp_with_quiet_zone(image: np.ndarray, quad, size: int, quiet_zone: int = 0) -> Tuple[np.ndarray, np.ndarray]:
    """
    Like warp(), padded with a white border of `quiet_zone` px on every side.

    Returns (patch, to_frame) where to_frame maps patch pixel coordinates back
    to frame coordinates (inverse warp composed with the padding shift).
    """
    patch = warp(image, quad, size)
    M = perspective_matrix(_check_quad(quad), size)
    shift = np.array([[1.0, 0.0, -quiet_zone], [0.0, 1.0, -quiet_zone], [0.0, 0.0, 1.0]])
    to_frame = np.linalg.inv(M) @ shift
    if quiet_zone > 0:
        white = (255,) * (1 if patch.ndim == 2 else patch.shape[2])
        patch = cv2.copyMakeBorder(patch, quiet_zone, quiet_zone, quiet_zone, quiet_zone,
                                   cv2.BORDER_CONSTANT, value=white)
    return patch, to_frame
