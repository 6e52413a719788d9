# dm_cascade.py
# ----------------------------------------------------------------------
# Ordered fallback chain: candidate images x backends, first hit wins.
#
# Candidates are tried in the order given (normally rectified patch, then
# the preprocessed frame, then the raw frame); within one candidate the
# backends are tried in their configured order. A backend that raises is
# logged and skipped, it never aborts the cascade.
# ----------------------------------------------------------------------

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from dm_backends import DecodeBackend, DecodeResult, corners_or_none
from dm_geometry import offset_points, sort_corners, transform_points

log = logging.getLogger(__name__)


@dataclass
class Candidate:
    image: np.ndarray
    origin: Tuple[float, float] = (0.0, 0.0)
    # patch -> frame homography for warped candidates; overrides origin
    to_frame: Optional[np.ndarray] = None
    label: str = ""

    def to_frame_points(self, pts) -> np.ndarray:
        if self.to_frame is not None:
            return transform_points(pts, self.to_frame)
        return offset_points(pts, self.origin)


class DecoderCascade:
    def __init__(self, backends: Sequence[DecodeBackend], budget_ms: Optional[float] = None):
        self.backends: List[DecodeBackend] = list(backends)
        self.budget_ms = budget_ms
        self.attempts = 0
        self._attempts_lock = threading.Lock()

    def _attempt(self, backend: DecodeBackend, cand: Candidate) -> Optional[DecodeResult]:
        # decode() runs on the worker thread and on request handlers at once
        with self._attempts_lock:
            self.attempts += 1
        try:
            return backend.try_decode(cand.image)
        except Exception as e:
            log.debug("backend %s failed on %s: %s", getattr(backend, "name", backend), cand.label or "candidate", e)
            return None

    def decode(self, candidates: Iterable[Candidate], fallback_quad: Optional[np.ndarray] = None) -> Optional[DecodeResult]:
        start = time.monotonic()
        for cand in candidates:
            for backend in self.backends:
                res = self._attempt(backend, cand)
                if res is None or not res.text:
                    continue
                corners = corners_or_none(res.corners)
                if corners is not None:
                    corners = sort_corners(cand.to_frame_points(corners))
                elif fallback_quad is not None:
                    corners = sort_corners(fallback_quad)
                log.debug("decoded via %s on %s", getattr(backend, "name", "?"), cand.label or "candidate")
                return res.with_corners(corners)
            if self.budget_ms is not None and (time.monotonic() - start) * 1000.0 > self.budget_ms:
                log.debug("decode budget of %.0f ms exhausted", self.budget_ms)
                break
        return None
