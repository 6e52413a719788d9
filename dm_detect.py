# dm_detect.py
# ----------------------------------------------------------------------
# Contour based quadrilateral detector for the preprocessed binary image.
#
# Only external contours are looked at: the symbol's own modules produce
# inner contours that say nothing about its outer boundary. The winning
# candidate is the largest accepted 4-gon; on equal areas the first one
# returned by cv2.findContours wins (enumeration order, not a contract).
# ----------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from dm_geometry import bbox_aspect_ratio, is_convex, polygon_area, sort_corners

log = logging.getLogger(__name__)


@dataclass
class DetectorConfig:
    min_area: float = 200.0              # px^2 at base resolution
    epsilon_ratio: float = 0.04          # approxPolyDP tolerance, share of perimeter
    aspect_range: Tuple[float, float] = (0.35, 3.0)

    def __post_init__(self) -> None:
        lo, hi = self.aspect_range
        if not (0 < lo <= hi):
            raise ValueError(f"invalid aspect_range {self.aspect_range}")
        if self.min_area < 0:
            raise ValueError("min_area must be >= 0")
        if not (0 < self.epsilon_ratio < 1):
            raise ValueError("epsilon_ratio must be in (0, 1)")


@dataclass
class QuadCandidate:
    corners: np.ndarray   # canonical order
    area: float
    aspect: float


class QuadDetector:
    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig()

    def candidates(self, binary: np.ndarray, scale: float = 1.0) -> List[QuadCandidate]:
        """All accepted 4-gons, in contour enumeration order.

        `scale` is the factor the image was resized by before preprocessing;
        the area floor shrinks with scale**2 so it stays a base-resolution value.
        """
        cfg = self.config
        min_area = cfg.min_area * scale * scale
        lo, hi = cfg.aspect_range

        contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        out: List[QuadCandidate] = []
        for cnt in contours:
            area = abs(cv2.contourArea(cnt))
            if area < min_area:
                continue
            approx = cv2.approxPolyDP(cnt, cfg.epsilon_ratio * cv2.arcLength(cnt, True), True)
            if len(approx) != 4:
                continue
            pts = approx.reshape(4, 2).astype(np.float32)
            if not is_convex(pts):
                continue
            aspect = bbox_aspect_ratio(pts)
            if not (lo <= aspect <= hi):
                continue
            corners = sort_corners(pts)
            # area of the canonical ordering; a crossed ordering would come out near zero
            quad_area = polygon_area(corners)
            if quad_area < min_area or not is_convex(corners):
                continue
            out.append(QuadCandidate(corners=corners, area=quad_area, aspect=aspect))
        return out

    def detect(self, binary: np.ndarray, scale: float = 1.0) -> Optional[np.ndarray]:
        best: Optional[QuadCandidate] = None
        for cand in self.candidates(binary, scale=scale):
            if best is None or cand.area > best.area:
                best = cand
        if best is None:
            return None
        log.debug("quad detected: area=%.0f aspect=%.2f", best.area, best.aspect)
        return best.corners
