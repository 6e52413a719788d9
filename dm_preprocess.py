# dm_preprocess.py
# ----------------------------------------------------------------------
# Frame -> binary image tuned for small, low-contrast DataMatrix module grids.
#
#   gray -> CLAHE (4x4 tiles) -> unsharp mask -> adaptive Gaussian threshold
#        -> morphological close
#
# The threshold is inverted so the dark modules end up as foreground (255);
# that is what the contour detector wants. Decoders want the opposite
# polarity, see decode_view().
# ----------------------------------------------------------------------

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

log = logging.getLogger(__name__)


# ---- Image utilities ----

def to_gray(image: np.ndarray) -> np.ndarray:
    """Single-channel uint8 view of a 1/3/4 channel image (BGR / BGRA order)."""
    if image.ndim == 2:
        gray = image
    elif image.shape[2] == 4:
        gray = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    elif image.shape[2] == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    else:
        gray = image[:, :, 0]
    if gray.dtype != np.uint8:
        gray = cv2.convertScaleAbs(gray)
    return gray


def unsharp_mask(gray: np.ndarray, sigma: float = 3.0, amount: float = 0.5) -> np.ndarray:
    # (1 + amount) * img - amount * blur(img)
    blur = cv2.GaussianBlur(gray, (0, 0), sigma)
    return cv2.addWeighted(gray, 1 + amount, blur, -amount, 0)


def adaptive_bw(gray: np.ndarray, block_size: int = 21, c: float = 7.0, invert: bool = True) -> np.ndarray:
    mode = cv2.THRESH_BINARY_INV if invert else cv2.THRESH_BINARY
    return cv2.adaptiveThreshold(gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, mode, block_size, c)


def close_gaps(binary: np.ndarray, ksize: int = 3) -> np.ndarray:
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (ksize, ksize))
    return cv2.morphologyEx(binary, cv2.MORPH_CLOSE, kernel)


def decode_view(binary: np.ndarray) -> np.ndarray:
    """Dark-modules-on-light copy of a preprocessed binary image."""
    return cv2.bitwise_not(binary)


@dataclass
class PreprocessConfig:
    clahe_clip: float = 2.0
    clahe_grid: Tuple[int, int] = (4, 4)
    sharpen_sigma: float = 3.0
    sharpen_amount: float = 0.5
    block_size: int = 21
    threshold_c: float = 7.0
    close_ksize: int = 3

    def __post_init__(self) -> None:
        if self.block_size < 3 or self.block_size % 2 == 0:
            raise ValueError(f"block_size must be odd and >= 3, got {self.block_size}")
        if self.close_ksize < 1:
            raise ValueError(f"close_ksize must be >= 1, got {self.close_ksize}")


class Preprocessor:
    """Stateless per call; holds one lazily created CLAHE instance."""

    def __init__(self, config: Optional[PreprocessConfig] = None):
        self.config = config or PreprocessConfig()
        self._clahe = None
        self._clahe_failed = False

    @property
    def enhancement_available(self) -> bool:
        return not self._clahe_failed

    def _enhancer(self):
        if self._clahe is None and not self._clahe_failed:
            try:
                self._clahe = cv2.createCLAHE(
                    clipLimit=self.config.clahe_clip, tileGridSize=self.config.clahe_grid
                )
            except Exception as e:
                self._clahe_failed = True
                log.warning("CLAHE unavailable, continuing without contrast enhancement: %s", e)
        return self._clahe

    def enhance(self, gray: np.ndarray) -> np.ndarray:
        enhancer = self._enhancer()
        if enhancer is None:
            return gray
        try:
            return enhancer.apply(gray)
        except cv2.error as e:
            self._clahe_failed = True
            self._clahe = None
            log.warning("CLAHE failed, continuing without contrast enhancement: %s", e)
            return gray

    def preprocess(self, image: np.ndarray) -> np.ndarray:
        """Binary (0/255) image, modules as foreground, same size as the input."""
        cfg = self.config
        gray = to_gray(image)
        enhanced = self.enhance(gray)
        sharp = unsharp_mask(enhanced, sigma=cfg.sharpen_sigma, amount=cfg.sharpen_amount)
        binary = adaptive_bw(sharp, block_size=cfg.block_size, c=cfg.threshold_c, invert=True)
        return close_gaps(binary, cfg.close_ksize)
