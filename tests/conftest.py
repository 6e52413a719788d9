"""
Shared fixtures: synthetic frames and instrumented fake decoder backends.
No test assets are needed; every image is generated on the fly.
"""
from __future__ import annotations

import os
import sys
import threading
from typing import List, Optional

import cv2
import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dm_backends import DecodeResult  # noqa: E402
from dm_preprocess import to_gray  # noqa: E402

# square "symbol" drawn by square_frame(): pixels 100..200 x 60..160
SQUARE_CORNERS = np.array([[100, 60], [200, 60], [200, 160], [100, 160]], dtype=np.float32)


def make_square_frame(w: int = 320, h: int = 240, channels: int = 3) -> np.ndarray:
    frame = np.full((h, w, channels), 255, np.uint8)
    color = (0,) * channels
    cv2.rectangle(frame, (100, 60), (200, 160), color, -1)
    return frame


class FakeBackend:
    """Returns a fixed result when the image is mostly dark enough, else None."""

    def __init__(self, name: str = "fake", text: Optional[str] = "ABC123", corners=None,
                 min_dark: float = 0.05, raises: Optional[Exception] = None):
        self.name = name
        self.text = text
        self.corners = corners
        self.min_dark = min_dark
        self.raises = raises
        self.calls: List[np.ndarray] = []

    def try_decode(self, image: np.ndarray) -> Optional[DecodeResult]:
        self.calls.append(image)
        if self.raises is not None:
            raise self.raises
        if self.text is None:
            return None
        dark = float((to_gray(image) < 64).mean())
        if dark < self.min_dark:
            return None
        corners = None if self.corners is None else np.asarray(self.corners, dtype=np.float32)
        return DecodeResult(self.text, corners=corners, backend=self.name)


class BlockingBackend(FakeBackend):
    """Holds every call until `release` is set; tracks concurrent entries."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = threading.Event()
        self.entered = threading.Event()
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def try_decode(self, image):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.set()
        try:
            self.release.wait(5.0)
            return super().try_decode(image)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def square_frame() -> np.ndarray:
    return make_square_frame()


@pytest.fixture
def blank_frame() -> np.ndarray:
    return np.full((240, 320, 3), 255, np.uint8)
