"""
Detector tests on hand-built binary images (foreground = 255) and on
preprocessed synthetic frames.
"""
from __future__ import annotations

import cv2
import numpy as np
import pytest

from conftest import SQUARE_CORNERS
from dm_detect import DetectorConfig, QuadDetector
from dm_geometry import is_convex, polygon_area
from dm_preprocess import Preprocessor


def _binary_with(*rects, size=(240, 320)) -> np.ndarray:
    img = np.zeros(size, np.uint8)
    for x, y, w, h in rects:
        cv2.rectangle(img, (x, y), (x + w - 1, y + h - 1), 255, -1)
    return img


def test_detects_single_square():
    quad = QuadDetector().detect(_binary_with((50, 40, 80, 80)))
    assert quad is not None
    assert quad.shape == (4, 2)
    assert np.allclose(quad, [[50, 40], [129, 40], [129, 119], [50, 119]], atol=1.0)


@pytest.mark.parametrize("rect", [
    (10, 100, 300, 40),   # aspect 7.5
    (140, 5, 30, 200),    # aspect 0.15
    (20, 20, 12, 12),     # 144 px^2 < 200
    (200, 200, 5, 5),
])
def test_rejects_out_of_bounds_shapes(rect):
    assert QuadDetector().detect(_binary_with(rect)) is None


def test_aspect_bounds_are_inclusive_range():
    det = QuadDetector()
    # 88 x 30 px fill -> contour bbox 87 x 29, aspect exactly 3.0
    assert det.detect(_binary_with((20, 20, 88, 30))) is not None
    assert det.detect(_binary_with((20, 20, 100, 30))) is None


def test_rejects_non_quadrilaterals():
    img = np.zeros((240, 320), np.uint8)
    tri = np.array([[50, 200], [150, 40], [250, 200]], np.int32)
    cv2.fillPoly(img, [tri], 255)
    assert QuadDetector().detect(img) is None


def test_largest_candidate_wins():
    img = _binary_with((10, 10, 40, 40), (150, 60, 100, 100), (70, 180, 30, 30))
    quad = QuadDetector().detect(img)
    assert quad is not None
    assert quad[0][0] == pytest.approx(150, abs=1)
    assert quad[0][1] == pytest.approx(60, abs=1)


def test_rotated_quad_is_canonicalised():
    img = np.zeros((300, 300), np.uint8)
    box = cv2.boxPoints(((150, 150), (120, 100), 20)).astype(np.int32)
    cv2.fillPoly(img, [box], 255)
    quad = QuadDetector().detect(img)
    assert quad is not None
    s = quad.sum(axis=1)
    assert np.argmin(s) == 0
    assert np.argmax(s) == 2
    assert quad[1][0] > quad[3][0]


def test_inner_contours_are_ignored():
    img = _binary_with((40, 40, 120, 120))
    img[60:140, 60:140] = 0
    cv2.rectangle(img, (80, 80), (120, 120), 255, -1)
    quad = QuadDetector().detect(img)
    assert np.allclose(quad[0], [40, 40], atol=1.0)
    assert np.allclose(quad[2], [159, 159], atol=1.0)


def test_min_area_scales_with_prescale():
    img = _binary_with((20, 20, 12, 12))   # 144 px^2
    assert QuadDetector().detect(img) is None
    assert QuadDetector().detect(img, scale=0.5) is not None


def test_candidates_lists_every_accepted_quad():
    img = _binary_with((10, 10, 40, 40), (150, 60, 100, 100))
    cands = QuadDetector().candidates(img)
    assert len(cands) == 2
    assert sorted(round(c.area) for c in cands)[-1] > 9000


def test_detects_square_after_preprocessing(square_frame):
    quad = QuadDetector().detect(Preprocessor().preprocess(square_frame))
    assert quad is not None
    assert np.abs(quad - SQUARE_CORNERS).max() <= 3.0


def test_blank_frame_detects_nothing(blank_frame):
    assert QuadDetector().detect(Preprocessor().preprocess(blank_frame)) is None


def test_config_validation():
    with pytest.raises(ValueError):
        DetectorConfig(aspect_range=(3.0, 0.35))
    with pytest.raises(ValueError):
        DetectorConfig(epsilon_ratio=0)


def test_diamond_comes_out_convex():
    img = np.zeros((300, 300), np.uint8)
    diamond = np.array([[150, 50], [250, 150], [150, 250], [50, 150]], np.int32)
    cv2.fillPoly(img, [diamond], 255)
    quad = QuadDetector().detect(img)
    assert quad is not None
    assert is_convex(quad)
    assert polygon_area(quad) > 15000
    assert np.abs(quad[0] - [150, 50]).max() <= 2
    assert np.abs(quad[2] - [150, 250]).max() <= 2
