from __future__ import annotations

import numpy as np
import pytest

from app import create_app
from conftest import FakeBackend, make_square_frame
from dm_backends import encode_image_payload
from dm_cascade import DecoderCascade
from scan_settings import ScanConfig


@pytest.fixture
def backend():
    return FakeBackend("fake", text="SVC-1")


@pytest.fixture
def client(backend):
    app = create_app(ScanConfig(), cascade=DecoderCascade([backend]))
    app.testing = True
    return app.test_client()


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["backends"] == ["fake"]
    assert isinstance(body["installed"], list)


def test_decode_full_frame(client):
    resp = client.post("/api/decode", json=encode_image_payload(make_square_frame()))
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ok"] is True
    assert body["result"]["text"] == "SVC-1"
    assert body["result"]["backend"] == "fake"
    corners = np.array(body["result"]["corners"], np.float32)
    assert np.abs(corners - [[100, 60], [200, 60], [200, 160], [100, 160]]).max() <= 3.0


def test_decode_miss_returns_null_result(client):
    resp = client.post("/api/decode", json=encode_image_payload(np.full((60, 80), 255, np.uint8)))
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "result": None}


def test_decode_region(client, backend):
    body = encode_image_payload(make_square_frame())
    body["region"] = {"x": 110, "y": 70, "width": 40, "height": 30}
    resp = client.post("/api/decode", json=body)
    assert resp.status_code == 200
    assert resp.get_json()["result"]["text"] == "SVC-1"
    assert backend.calls[0].shape[:2] == (30, 40)


def test_tiny_region_is_not_decoded(client, backend):
    body = encode_image_payload(make_square_frame())
    body["region"] = [110, 70, 3, 3]
    resp = client.post("/api/decode", json=body)
    assert resp.get_json() == {"ok": True, "result": None}
    assert backend.calls == []


@pytest.mark.parametrize("body", [
    {},
    {"width": 2, "height": 2, "pixels": "AA=="},
    {"width": 2, "height": 2, "channels": 1, "pixels": "AAAAAA==", "region": {"x": 1}},
])
def test_malformed_request(client, body):
    resp = client.post("/api/decode", json=body)
    assert resp.status_code == 400
    assert resp.get_json()["ok"] is False


def test_non_json_body(client):
    resp = client.post("/api/decode", data=b"\x00\x01", content_type="application/octet-stream")
    assert resp.status_code == 400


def test_no_backends_is_503():
    app = create_app(ScanConfig(), cascade=DecoderCascade([]))
    resp = app.test_client().post("/api/decode", json=encode_image_payload(make_square_frame()))
    assert resp.status_code == 503


def test_service_never_uses_remote(monkeypatch):
    import app as app_module

    seen = {}

    def _fake_build(names, **kwargs):
        seen["names"] = list(names)
        return [FakeBackend("local")]

    monkeypatch.setattr(app_module, "build_backends", _fake_build)
    app = create_app(ScanConfig(backends=["remote", "zxingcpp"], remote_url="http://elsewhere"))
    assert seen["names"] == ["zxingcpp"]
    assert app.test_client().get("/api/health").get_json()["backends"] == ["local"]
