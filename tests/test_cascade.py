from __future__ import annotations

import threading

import numpy as np
import pytest

from conftest import FakeBackend
from dm_cascade import Candidate, DecoderCascade

DARK = np.zeros((40, 40), np.uint8)
LIGHT = np.full((40, 40), 255, np.uint8)
LOCAL_CORNERS = [[2, 3], [30, 3], [30, 33], [2, 33]]


def test_first_hit_short_circuits():
    a = FakeBackend("a", text="FIRST")
    b = FakeBackend("b", text="SECOND")
    res = DecoderCascade([a, b]).decode([Candidate(DARK)])
    assert res.text == "FIRST"
    assert res.backend == "a"
    assert len(a.calls) == 1
    assert len(b.calls) == 0


def test_later_backend_tried_after_miss():
    a = FakeBackend("a", text=None)
    b = FakeBackend("b", text="OK")
    cascade = DecoderCascade([a, b])
    assert cascade.decode([Candidate(DARK)]).backend == "b"
    assert cascade.attempts == 2


def test_raising_backend_is_skipped(caplog):
    boom = FakeBackend("boom", raises=RuntimeError("decoder crashed"))
    ok = FakeBackend("ok", text="X")
    res = DecoderCascade([boom, ok]).decode([Candidate(DARK)])
    assert res is not None and res.backend == "ok"
    assert len(boom.calls) == 1


def test_candidates_tried_in_order_backends_within():
    a = FakeBackend("a")
    b = FakeBackend("b")
    cands = [Candidate(LIGHT, label="first"), Candidate(DARK, label="second")]
    res = DecoderCascade([a, b]).decode(cands)
    assert res.backend == "a"
    # LIGHT misses on both backends before DARK is reached
    assert [c is LIGHT for c in a.calls] == [True, False]
    assert [c is LIGHT for c in b.calls] == [True]


def test_corners_shifted_by_origin():
    be = FakeBackend(corners=LOCAL_CORNERS)
    res = DecoderCascade([be]).decode([Candidate(DARK, origin=(100.0, 50.0))])
    assert np.allclose(res.corners, [[102, 53], [130, 53], [130, 83], [102, 83]])


def test_corners_mapped_through_homography():
    be = FakeBackend(corners=LOCAL_CORNERS)
    to_frame = np.diag([2.0, 2.0, 1.0])
    res = DecoderCascade([be]).decode([Candidate(DARK, to_frame=to_frame, origin=(999.0, 999.0))])
    assert np.allclose(res.corners, [[4, 6], [60, 6], [60, 66], [4, 66]])


def test_backend_corners_are_canonicalised():
    shuffled = [LOCAL_CORNERS[2], LOCAL_CORNERS[0], LOCAL_CORNERS[3], LOCAL_CORNERS[1]]
    res = DecoderCascade([FakeBackend(corners=shuffled)]).decode([Candidate(DARK)])
    assert np.allclose(res.corners, LOCAL_CORNERS)


def test_fallback_quad_when_backend_has_no_corners():
    quad = np.array([[10, 10], [50, 10], [50, 50], [10, 50]], np.float32)
    res = DecoderCascade([FakeBackend()]).decode([Candidate(DARK)], fallback_quad=quad)
    assert np.allclose(res.corners, quad)


def test_no_corners_no_fallback():
    res = DecoderCascade([FakeBackend()]).decode([Candidate(DARK)])
    assert res.corners is None


def test_all_miss_returns_none():
    a, b = FakeBackend("a", text=None), FakeBackend("b", text=None)
    cascade = DecoderCascade([a, b])
    assert cascade.decode([Candidate(DARK), Candidate(LIGHT), Candidate(DARK)]) is None
    assert cascade.attempts == 6


def test_empty_text_counts_as_miss():
    a = FakeBackend("a", text="")
    b = FakeBackend("b", text="real")
    assert DecoderCascade([a, b]).decode([Candidate(DARK)]).text == "real"


def test_budget_stops_after_current_candidate(monkeypatch):
    import dm_cascade

    clock = {"t": 0.0}

    def _tick():
        clock["t"] += 1.0
        return clock["t"]

    monkeypatch.setattr(dm_cascade.time, "monotonic", _tick)
    be = FakeBackend(text=None)
    cascade = DecoderCascade([be], budget_ms=500)
    assert cascade.decode([Candidate(LIGHT), Candidate(DARK), Candidate(DARK)]) is None
    assert len(be.calls) == 1


@pytest.mark.parametrize("budget", [None, 10_000])
def test_budget_not_hit(budget):
    be = FakeBackend(text=None)
    DecoderCascade([be], budget_ms=budget).decode([Candidate(LIGHT), Candidate(LIGHT)])
    assert len(be.calls) == 2


def test_attempts_counted_across_threads():
    cascade = DecoderCascade([FakeBackend("a", text=None), FakeBackend("b", text=None)])

    def _hammer():
        for _ in range(200):
            cascade.decode([Candidate(LIGHT)])

    workers = [threading.Thread(target=_hammer) for _ in range(8)]
    for t in workers:
        t.start()
    for t in workers:
        t.join()
    assert cascade.attempts == 8 * 200 * 2
