# app.py
from __future__ import annotations

# Standard library
import logging
import os
from typing import Any, Dict, Optional

# Third-party
from flask import Flask, jsonify, request

# Local Files/Helpers
from dm_backends import available_backends, build_backends, decode_image_payload
from dm_cascade import DecoderCascade
from frame_cycle import FramePipeline
from region_select import RegionSelector, Selection
from scan_errors import BackendUnavailableError
from scan_settings import ScanConfig, load_settings

log = logging.getLogger(__name__)


# -------------------------------------------------------------------
# Helper Functions
# -------------------------------------------------------------------

def _local_cascade(cfg: ScanConfig) -> DecoderCascade:
    # the service must never call itself through the remote backend
    names = [n for n in cfg.backends if n.strip().lower() != "remote"] or ["auto"]
    try:
        return DecoderCascade(build_backends(names), budget_ms=cfg.decode_budget_ms)
    except BackendUnavailableError as e:
        log.warning("decode service starting without backends: %s", e)
        return DecoderCascade([])


def _parse_region(raw: Any) -> Optional[Selection]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return Selection(int(raw["x"]), int(raw["y"]), int(raw["width"]), int(raw["height"]))
    x, y, w, h = raw
    return Selection(int(x), int(y), int(w), int(h))


# -------------------------------------------------------------------
# Flask setup
# -------------------------------------------------------------------

def create_app(cfg: Optional[ScanConfig] = None, cascade: Optional[DecoderCascade] = None) -> Flask:
    cfg = cfg or load_settings(os.getenv("DMSCAN_CONFIG") or None)
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = 64 * 1024 * 1024

    cascade = cascade if cascade is not None else _local_cascade(cfg)
    pipeline = FramePipeline(rectified_size=cfg.rectified_size, quiet_zone=cfg.quiet_zone,
                             max_process_side=cfg.max_process_side)
    app.extensions["dm_cascade"] = cascade

    # -------------------------------------------------------------------
    # Routes: API
    # -------------------------------------------------------------------
    @app.get("/api/health")
    def api_health():
        return jsonify({
            "ok": True,
            "backends": [b.name for b in cascade.backends],
            "installed": available_backends(),
        })

    @app.post("/api/decode")
    def api_decode():
        """
        Accepts { width, height, channels, pixels: base64 raw uint8, region?: {x,y,width,height} }
        and returns { ok, result: {text, format, corners, backend} | null }.
        """
        if not cascade.backends:
            return jsonify({"ok": False, "error": "No decoder backend available"}), 503

        body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
        try:
            image = decode_image_payload(body)
            region = _parse_region(body.get("region"))
        except (ValueError, KeyError, TypeError) as e:
            return jsonify({"ok": False, "error": str(e)}), 400

        try:
            if region is not None:
                result = RegionSelector(cascade, min_size=cfg.min_selection).select_region(image, region)
            else:
                analysis = pipeline.analyze(image)
                result = cascade.decode(analysis.candidates, fallback_quad=analysis.quad)
        except Exception as e:
            app.logger.exception("decode failed: %s", e)
            return jsonify({"ok": False, "error": str(e)}), 500

        return jsonify({"ok": True, "result": None if result is None else result.to_dict()})

    return app


# -------------------------------------------------------------------
# Main
# -------------------------------------------------------------------
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    # Raspberry Pi / LAN: point other scanners at http://<host>:5000 with --backend remote
    create_app().run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=(os.getenv("FLASK_DEBUG") == "1"))
