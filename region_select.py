# region_select.py
# ----------------------------------------------------------------------
# Drag-to-select decoding on a still frame. The selection skips detection
# and rectification: the cropped region goes straight into the cascade and
# the returned corners are shifted by the selection origin.
# ----------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from dm_backends import DecodeResult
from dm_cascade import Candidate, DecoderCascade

log = logging.getLogger(__name__)

MIN_SELECTION = 8


@dataclass(frozen=True)
class Selection:
    x: int
    y: int
    width: int
    height: int

    @property
    def origin(self) -> Tuple[int, int]:
        return self.x, self.y

    @classmethod
    def from_points(cls, a: Tuple[int, int], b: Tuple[int, int]) -> "Selection":
        """Normalised selection from two drag points in any order."""
        x0, x1 = sorted((int(a[0]), int(b[0])))
        y0, y1 = sorted((int(a[1]), int(b[1])))
        return cls(x0, y0, x1 - x0, y1 - y0)

    def clipped(self, width: int, height: int) -> "Selection":
        x0 = max(0, min(self.x, width))
        y0 = max(0, min(self.y, height))
        x1 = max(0, min(self.x + self.width, width))
        y1 = max(0, min(self.y + self.height, height))
        return Selection(x0, y0, max(0, x1 - x0), max(0, y1 - y0))

    def as_rect(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height


class RegionSelector:
    def __init__(self, cascade: DecoderCascade, sink=None, min_size: int = MIN_SELECTION):
        self.cascade = cascade
        self.sink = sink
        self.min_size = int(min_size)
        self._anchor: Optional[Tuple[int, int]] = None
        self.pending: Optional[Selection] = None

    # ---- pointer interaction ----

    @property
    def dragging(self) -> bool:
        return self._anchor is not None

    def begin(self, x: int, y: int) -> None:
        # a new drag discards whatever was selected before
        self._anchor = (int(x), int(y))
        self.pending = None

    def drag(self, x: int, y: int) -> Optional[Selection]:
        """Live rectangle while dragging (for the preview)."""
        if self._anchor is None:
            return None
        return Selection.from_points(self._anchor, (x, y))

    def release(self, x: int, y: int) -> Optional[Selection]:
        if self._anchor is None:
            return None
        sel = Selection.from_points(self._anchor, (x, y))
        self._anchor = None
        self.pending = sel
        return sel

    def on_mouse(self, event, x, y, flags=None, param=None) -> None:
        """cv2.setMouseCallback adapter."""
        if event == cv2.EVENT_LBUTTONDOWN:
            self.begin(x, y)
        elif event == cv2.EVENT_MOUSEMOVE and self.dragging:
            self.drag(x, y)
        elif event == cv2.EVENT_LBUTTONUP:
            self.release(x, y)

    def take_pending(self) -> Optional[Selection]:
        sel, self.pending = self.pending, None
        return sel

    # ---- decode ----

    def select_region(self, pixels: np.ndarray, selection: Selection) -> Optional[DecodeResult]:
        """Decode only the selected area; too-small selections are dropped without decoding."""
        h, w = pixels.shape[:2]
        sel = selection.clipped(w, h)
        if sel.width < self.min_size or sel.height < self.min_size:
            log.debug("selection %s below %dx%d, ignored", sel.as_rect(), self.min_size, self.min_size)
            return None
        crop = pixels[sel.y:sel.y + sel.height, sel.x:sel.x + sel.width].copy()
        result = self.cascade.decode([Candidate(crop, origin=(float(sel.x), float(sel.y)), label="selection")])
        if self.sink is not None:
            self.sink.publish(result)
        return result
