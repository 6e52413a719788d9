# result_sink.py
# ----------------------------------------------------------------------
# Where scan results go: decoded text, the persisted quad for the overlay,
# and session status messages.
# ----------------------------------------------------------------------

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from dm_backends import DecodeResult

log = logging.getLogger(__name__)

BORDER_BGR: Tuple[int, int, int] = (0x22, 0x57, 0xFF)  # #FF5722


class ResultSink(Protocol):
    def publish(self, result: Optional[DecodeResult]) -> None:
        """Decoded result, or None for 'no symbol currently located'."""

    def render(self, pixels: np.ndarray, corners: Optional[np.ndarray]) -> None:
        ...

    def status(self, message: str, fatal: bool = False) -> None:
        ...


@dataclass
class RecordingSink:
    """Keeps everything in memory. Thread-safe; used by tests and app.py."""
    results: List[Optional[DecodeResult]] = field(default_factory=list)
    renders: List[Optional[np.ndarray]] = field(default_factory=list)
    messages: List[Tuple[str, bool]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def publish(self, result: Optional[DecodeResult]) -> None:
        with self._lock:
            self.results.append(result)

    def render(self, pixels: np.ndarray, corners: Optional[np.ndarray]) -> None:
        with self._lock:
            self.renders.append(None if corners is None else np.array(corners, copy=True))

    def status(self, message: str, fatal: bool = False) -> None:
        with self._lock:
            self.messages.append((message, fatal))

    @property
    def last_result(self) -> Optional[DecodeResult]:
        with self._lock:
            for r in reversed(self.results):
                if r is not None:
                    return r
        return None


def draw_border(pixels: np.ndarray, corners: Optional[np.ndarray], thickness: Optional[int] = None) -> np.ndarray:
    """Copy of `pixels` with the quad outlined; the input is never touched."""
    out = pixels.copy()
    if corners is None:
        return out
    if out.ndim == 2:
        out = cv2.cvtColor(out, cv2.COLOR_GRAY2BGR)
    color = BORDER_BGR + ((255,) if out.shape[2] == 4 else ())
    t = thickness or max(3, int(round(out.shape[1] * 0.004)))
    pts = np.round(np.asarray(corners, dtype=np.float32)).astype(np.int32).reshape(-1, 1, 2)
    cv2.polylines(out, [pts], True, color, t, cv2.LINE_AA)
    return out


class OverlaySink:
    """OpenCV preview window with the persistent border and the last decoded text."""

    def __init__(self, window: str = "DataMatrix Scanner", show: bool = True):
        self.window = window
        self.show = show
        self.last_text: Optional[str] = None
        self.selection: Optional[Tuple[int, int, int, int]] = None
        self.key: int = -1
        self.messages: List[Tuple[str, bool]] = []
        if self.show:
            cv2.namedWindow(self.window, cv2.WINDOW_NORMAL)

    def publish(self, result: Optional[DecodeResult]) -> None:
        if result is not None:
            self.last_text = result.text
            log.info("decoded (%s): %s", result.backend or "?", result.text)

    def render(self, pixels: np.ndarray, corners: Optional[np.ndarray]) -> None:
        overlay = draw_border(pixels, corners)
        if self.selection is not None:
            x, y, w, h = self.selection
            cv2.rectangle(overlay, (x, y), (x + w, y + h), (255, 255, 255), 1)
        if self.last_text and corners is not None:
            cv2.putText(overlay, self.last_text[:48], (10, overlay.shape[0] - 18),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.7, (0, 255, 0), 2, cv2.LINE_AA)
        if self.show:
            cv2.imshow(self.window, overlay)
            self.key = cv2.waitKey(1) & 0xFF

    def status(self, message: str, fatal: bool = False) -> None:
        self.messages.append((message, fatal))
        if fatal:
            log.error("%s", message)
        else:
            log.info("%s", message)

    def close(self) -> None:
        if self.show:
            cv2.destroyWindow(self.window)
