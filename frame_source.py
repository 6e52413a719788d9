# frame_source.py
# ----------------------------------------------------------------------
# Frame sources for the cycle controller: live camera, video file or a
# single in-memory still. All of them hand out Frame objects with a
# monotonically increasing timestamp and raise AcquisitionError when no
# frame can be delivered.
#
# On Windows we use DirectShow; on Linux (incl. Pi OS) we use V4L2.
# ----------------------------------------------------------------------

from __future__ import annotations

import logging
import platform
import time
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from scan_errors import AcquisitionError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    pixels: np.ndarray
    timestamp: float
    index: int = 0

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


class _Clock:
    """Strictly increasing monotonic timestamps."""

    def __init__(self):
        self._last = 0.0
        self.count = 0

    def stamp(self) -> float:
        now = time.monotonic()
        if now <= self._last:
            now = self._last + 1e-6
        self._last = now
        self.count += 1
        return now


def _configure_camera(
    cap: cv2.VideoCapture,
    *,
    auto_focus: Optional[bool] = None,
    focus: Optional[float] = None,
    auto_exposure: Optional[bool] = None,
    exposure: Optional[float] = None,
) -> None:
    def _set(prop, val):
        if not cap.set(prop, float(val)):
            log.debug("camera property %s=%s not supported", prop, val)

    if auto_focus is not None and hasattr(cv2, "CAP_PROP_AUTOFOCUS"):
        _set(cv2.CAP_PROP_AUTOFOCUS, 1 if auto_focus else 0)
    if focus is not None and hasattr(cv2, "CAP_PROP_FOCUS"):
        _set(cv2.CAP_PROP_FOCUS, focus)

    if auto_exposure is not None and hasattr(cv2, "CAP_PROP_AUTO_EXPOSURE"):
        _set(cv2.CAP_PROP_AUTO_EXPOSURE, 0.25 if not auto_exposure else 0.75)
    if exposure is not None and hasattr(cv2, "CAP_PROP_EXPOSURE"):
        _set(cv2.CAP_PROP_EXPOSURE, exposure)

    # Reduce latency if supported
    if hasattr(cv2, "CAP_PROP_BUFFERSIZE"):
        _set(cv2.CAP_PROP_BUFFERSIZE, 1)


class CaptureSource:
    """cv2.VideoCapture wrapper; subclasses decide what gets opened."""

    def __init__(self):
        self._cap: Optional[cv2.VideoCapture] = None
        self._clock = _Clock()

    def _open(self) -> cv2.VideoCapture:
        raise NotImplementedError

    def _ensure_open(self) -> cv2.VideoCapture:
        if self._cap is None:
            cap = self._open()
            if not cap.isOpened():
                cap.release()
                raise AcquisitionError(f"Unable to open {self.describe()}")
            self._cap = cap
        return self._cap

    def describe(self) -> str:
        return type(self).__name__

    def is_ready(self) -> bool:
        # unopened counts as ready so the first read surfaces open failures
        return self._cap is None or self._cap.isOpened()

    def current_frame(self) -> Frame:
        cap = self._ensure_open()
        ok, pixels = cap.read()
        if not ok or pixels is None:
            raise AcquisitionError(f"Failed to read from {self.describe()}")
        return Frame(pixels, self._clock.stamp(), self._clock.count)

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


class CameraSource(CaptureSource):
    def __init__(
        self,
        index: int = 0,
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        auto_focus: Optional[bool] = None,
        focus: Optional[float] = None,
        auto_exposure: Optional[bool] = None,
        exposure: Optional[float] = None,
    ):
        super().__init__()
        self.index = index
        self.width = width
        self.height = height
        self._props = dict(auto_focus=auto_focus, focus=focus, auto_exposure=auto_exposure, exposure=exposure)

    def describe(self) -> str:
        return f"camera index {self.index}"

    def _open(self) -> cv2.VideoCapture:
        api = cv2.CAP_DSHOW if platform.system() == "Windows" else cv2.CAP_V4L2
        cap = cv2.VideoCapture(self.index, api)
        if self.width:
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        if cap.isOpened():
            _configure_camera(cap, **self._props)
        return cap


class VideoFileSource(CaptureSource):
    def __init__(self, path: str):
        super().__init__()
        self.path = path

    def describe(self) -> str:
        return f"video file {self.path}"

    def _open(self) -> cv2.VideoCapture:
        return cv2.VideoCapture(self.path)


class StillImageSource:
    """A single in-memory image served as an endless stream of identical frames."""

    def __init__(self, pixels: np.ndarray):
        if pixels is None or pixels.size == 0:
            raise AcquisitionError("still image is empty")
        self.pixels = pixels
        self._clock = _Clock()

    def is_ready(self) -> bool:
        return True

    def current_frame(self) -> Frame:
        return Frame(self.pixels, self._clock.stamp(), self._clock.count)

    def close(self) -> None:
        pass
