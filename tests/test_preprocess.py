from __future__ import annotations

import logging

import cv2
import numpy as np
import pytest

import dm_preprocess
from dm_preprocess import PreprocessConfig, Preprocessor, decode_view, to_gray


def test_output_is_binary_same_size(square_frame):
    out = Preprocessor().preprocess(square_frame)
    assert out.shape == square_frame.shape[:2]
    assert out.dtype == np.uint8
    assert set(np.unique(out)).issubset({0, 255})


def test_modules_are_foreground(square_frame):
    out = Preprocessor().preprocess(square_frame)
    # the dark square's boundary is foreground, the white background is not
    assert out[60:63, 120:180].max() == 255
    assert out[0:40, 0:60].max() == 0


def test_blank_frame_has_no_foreground(blank_frame):
    assert Preprocessor().preprocess(blank_frame).max() == 0


def test_deterministic_and_input_untouched(square_frame):
    before = square_frame.copy()
    p = Preprocessor()
    a = p.preprocess(square_frame)
    b = p.preprocess(square_frame)
    assert np.array_equal(a, b)
    assert np.array_equal(square_frame, before)


def test_enhancer_is_created_once(monkeypatch, square_frame):
    calls = []
    real = cv2.createCLAHE

    def _counting(*args, **kwargs):
        calls.append(1)
        return real(*args, **kwargs)

    monkeypatch.setattr(dm_preprocess.cv2, "createCLAHE", _counting)
    p = Preprocessor()
    for _ in range(3):
        p.preprocess(square_frame)
    assert len(calls) == 1


def test_missing_enhancer_degrades_gracefully(monkeypatch, caplog, square_frame):
    def _broken(*args, **kwargs):
        raise cv2.error("CLAHE not built")

    monkeypatch.setattr(dm_preprocess.cv2, "createCLAHE", _broken)
    p = Preprocessor()
    with caplog.at_level(logging.WARNING, logger="dm_preprocess"):
        out = p.preprocess(square_frame)
    assert out.shape == square_frame.shape[:2]
    assert not p.enhancement_available
    assert any("CLAHE" in r.getMessage() for r in caplog.records)
    gray = to_gray(square_frame)
    assert np.array_equal(p.enhance(gray), gray)


@pytest.mark.parametrize("channels", [1, 3, 4])
def test_to_gray_accepts_channel_layouts(channels):
    shape = (20, 30) if channels == 1 else (20, 30, channels)
    img = np.full(shape, 200, np.uint8)
    g = to_gray(img)
    assert g.shape == (20, 30)
    assert int(g[0, 0]) == 200


def test_decode_view_flips_polarity():
    b = np.array([[0, 255]], np.uint8)
    assert decode_view(b).tolist() == [[255, 0]]


def test_config_rejects_even_block_size():
    with pytest.raises(ValueError):
        PreprocessConfig(block_size=20)
