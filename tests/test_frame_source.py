from __future__ import annotations

import numpy as np
import pytest

from frame_source import StillImageSource, VideoFileSource
from scan_errors import AcquisitionError


def test_still_frames_have_increasing_timestamps(square_frame):
    src = StillImageSource(square_frame)
    assert src.is_ready()
    frames = [src.current_frame() for _ in range(5)]
    stamps = [f.timestamp for f in frames]
    assert all(b > a for a, b in zip(stamps, stamps[1:]))
    assert [f.index for f in frames] == [1, 2, 3, 4, 5]
    assert (frames[0].width, frames[0].height) == (320, 240)


def test_empty_still_is_rejected():
    with pytest.raises(AcquisitionError):
        StillImageSource(np.zeros((0, 0), np.uint8))


def test_missing_video_file_raises_on_first_read(tmp_path):
    src = VideoFileSource(str(tmp_path / "missing.mp4"))
    assert src.is_ready()
    with pytest.raises(AcquisitionError):
        src.current_frame()
    src.close()


def test_acquisition_error_is_runtime_error(tmp_path):
    with pytest.raises(RuntimeError):
        VideoFileSource(str(tmp_path / "missing.avi")).current_frame()
