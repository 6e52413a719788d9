#!/usr/bin/env python3
"""
Overview
Live DataMatrix scanner. Frames come from a camera, a video file or a still
image; every frame is preprocessed (CLAHE, unsharp mask, adaptive threshold,
close), searched for the symbol's outer quadrilateral, rectified, and handed
to an ordered cascade of decoder backends. The decoded text and the symbol's
corner points in frame coordinates are printed as JSON.

Special Features
- **Preview never waits on decode**: a background worker runs the cascade
  while the preview keeps rendering the last known border.
- **Throttled decode**: at most one cascade in flight; frames arriving while it
  runs only refresh the overlay.
- **Backend cascade**: rectified patch -> preprocessed frame -> raw frame,
  each tried against zxing-cpp, pylibdmtx, pyzbar and/or a remote decode
  service in the configured order.
- **Region select** (`--select`): drag a rectangle on a still image to decode
  just that area.

Usage examples
  python Code_Scanner.py --timeout 20 --width 1280 --height 720
  python Code_Scanner.py --video label.mp4 --no-gui --backend zxingcpp,pylibdmtx
  python Code_Scanner.py --image-npy frame.npy --select
  python Code_Scanner.py --backend remote --remote-url http://pi.local:5000

Notes
- On Windows we use DirectShow; on Linux (incl. Pi OS) we use V4L2 by default.
- Settings can also come from a YAML file (--config) or DMSCAN_* variables in
  the environment / a .env file, see scan_settings.py.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cv2
import numpy as np

from dm_backends import available_backends, build_backends
from dm_cascade import DecoderCascade
from dm_detect import DetectorConfig, QuadDetector
from dm_preprocess import PreprocessConfig, Preprocessor
from frame_cycle import FrameCycleController
from frame_source import CameraSource, StillImageSource, VideoFileSource
from region_select import RegionSelector
from result_sink import OverlaySink, RecordingSink, draw_border
from scan_errors import AcquisitionError, BackendUnavailableError
from scan_settings import ScanConfig, load_settings

log = logging.getLogger("Code_Scanner")

cv2.setUseOptimized(True)


@dataclass
class ScanResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    message: str = ""
    backend: Optional[str] = None


# ------------------------------ Wiring ------------------------------

def build_cascade(cfg: ScanConfig) -> DecoderCascade:
    backends = build_backends(cfg.backends, remote_url=cfg.remote_url, remote_timeout_s=cfg.remote_timeout_s)
    log.debug("decoder cascade: %s", ", ".join(b.name for b in backends))
    return DecoderCascade(backends, budget_ms=cfg.decode_budget_ms)


def build_controller(cfg: ScanConfig, source, sink, *, cascade: Optional[DecoderCascade] = None,
                     stop_on_first: bool = True) -> FrameCycleController:
    return FrameCycleController(
        source,
        cascade or build_cascade(cfg),
        sink,
        preprocessor=Preprocessor(PreprocessConfig(clahe_grid=(cfg.clahe_grid, cfg.clahe_grid),
                                                   block_size=cfg.block_size)),
        detector=QuadDetector(DetectorConfig(min_area=cfg.min_area, epsilon_ratio=cfg.epsilon_ratio,
                                             aspect_range=cfg.aspect_range)),
        rectified_size=cfg.rectified_size,
        quiet_zone=cfg.quiet_zone,
        max_process_side=cfg.max_process_side,
        frame_interval_s=cfg.frame_interval_s,
        stop_on_first=stop_on_first,
    )


# ------------------------------ Entry points ------------------------------

def scan_stream(cfg: ScanConfig, *, video: Optional[str] = None, image: Optional[np.ndarray] = None) -> ScanResult:
    """Scan a camera / video / still image until the first decode, a timeout or cancel.

    Returns a ScanResult: {success, data, message, backend}
    """
    try:
        cascade = build_cascade(cfg)
    except BackendUnavailableError as e:
        return ScanResult(False, message=str(e))

    if image is not None:
        source = StillImageSource(image)
    elif video:
        source = VideoFileSource(video)
    else:
        source = CameraSource(cfg.camera_index, width=cfg.width, height=cfg.height,
                              auto_focus=cfg.auto_focus, auto_exposure=cfg.auto_exposure,
                              exposure=cfg.exposure)

    sink = OverlaySink(show=cfg.show_window) if cfg.show_window else RecordingSink()
    controller = build_controller(cfg, source, sink, cascade=cascade)

    def _cancelled() -> bool:
        return isinstance(sink, OverlaySink) and sink.key in (27, ord("q"), ord("c"))

    try:
        if image is not None:
            # one cycle is enough for a still frame
            controller.start()
            controller.tick()
            controller.wait_idle(cfg.timeout_s or None)
            result = controller.last_result
            if result is not None:
                sink.render(image, result.corners)
            controller.stop()
        else:
            result = controller.run(timeout_s=cfg.timeout_s, should_stop=_cancelled)
    finally:
        source.close()
        if isinstance(sink, OverlaySink):
            sink.close()

    if result is not None:
        return ScanResult(True, data=result.to_dict(), message="OK", backend=result.backend)
    if _cancelled():
        return ScanResult(False, message="Cancelled by user.")
    fatal = [m for m, is_fatal in sink.messages if is_fatal]
    if fatal:
        return ScanResult(False, message=fatal[0])
    return ScanResult(False, message="No DataMatrix code decoded.")


def select_and_decode(cfg: ScanConfig, image: np.ndarray) -> ScanResult:
    """Show a still image, let the user drag a rectangle, decode that region (Esc to quit)."""
    try:
        cascade = build_cascade(cfg)
    except BackendUnavailableError as e:
        return ScanResult(False, message=str(e))

    sink = OverlaySink(window="Select region", show=True)
    selector = RegionSelector(cascade, sink, min_size=cfg.min_selection)
    cv2.setMouseCallback(sink.window, selector.on_mouse)
    last = None
    try:
        while True:
            sink.render(image, None if last is None else last.corners)
            if sink.key == 27:
                break
            sel = selector.take_pending()
            if sel is None:
                continue
            sink.selection = sel.as_rect()
            res = selector.select_region(image, sel)
            if res is not None:
                last = res
                sink.render(draw_border(image, res.corners), None)
                time.sleep(0.5)
                break
    finally:
        sink.close()
    if last is None:
        return ScanResult(False, message="No DataMatrix code decoded in the selection.")
    return ScanResult(True, data=last.to_dict(), message="OK", backend=last.backend)


# ------------------------------ CLI ------------------------------

def _on_off(v: Optional[str]) -> Optional[bool]:
    return None if v is None else v == "on"


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Scan a DataMatrix symbol and print a JSON result.")
    src = parser.add_mutually_exclusive_group()
    src.add_argument("--camera", type=int, default=None)
    src.add_argument("--video", type=str, default=None)
    src.add_argument("--image-npy", type=str, default=None, help="still frame saved with numpy.save")
    parser.add_argument("--config", type=str, default=None)
    parser.add_argument("--timeout", type=float, default=None)
    parser.add_argument("--width", type=int, default=None)
    parser.add_argument("--height", type=int, default=None)
    parser.add_argument("--no-gui", action="store_true")
    parser.add_argument("--select", action="store_true")
    parser.add_argument("--backend", type=str, default=None,
                        help="comma separated priority list: auto, zxingcpp, pylibdmtx, pyzbar, remote")
    parser.add_argument("--remote-url", type=str, default=None)
    parser.add_argument("--decode-budget-ms", type=float, default=None)
    parser.add_argument("--max-process-side", type=int, default=None)
    parser.add_argument("--auto-focus", choices=["on", "off"], default=None)
    parser.add_argument("--auto-exposure", choices=["on", "off"], default=None)
    parser.add_argument("--exposure", type=float, default=None)
    parser.add_argument("--list-backends", action="store_true")
    parser.add_argument("--log-level", default="WARNING")
    parser.add_argument("--output", type=str, default=None)

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.list_backends:
        print(json.dumps({"available": available_backends()}, indent=2))
        return

    try:
        cfg = load_settings(
            args.config,
            camera_index=args.camera,
            timeout_s=args.timeout,
            width=args.width,
            height=args.height,
            show_window=(False if args.no_gui else None),
            backends=args.backend,
            remote_url=args.remote_url,
            decode_budget_ms=args.decode_budget_ms,
            max_process_side=args.max_process_side,
            auto_focus=_on_off(args.auto_focus),
            auto_exposure=_on_off(args.auto_exposure),
            exposure=args.exposure,
        )
    except (ValueError, FileNotFoundError) as e:
        print(json.dumps({"success": False, "error": f"Bad configuration: {e}"}, indent=2))
        sys.exit(2)

    image = None
    if args.image_npy:
        try:
            image = np.load(args.image_npy)
        except (OSError, ValueError) as e:
            print(json.dumps({"success": False, "error": f"Cannot load {args.image_npy}: {e}"}, indent=2))
            sys.exit(2)

    try:
        if args.select:
            if image is None or not cfg.show_window:
                print(json.dumps({"success": False, "error": "--select needs --image-npy and a GUI"}, indent=2))
                sys.exit(2)
            res = select_and_decode(cfg, image)
        else:
            res = scan_stream(cfg, video=args.video, image=image)
    except AcquisitionError as e:
        res = ScanResult(False, message=str(e))

    if not res.success:
        print(json.dumps({"success": False, "error": res.message}, indent=2))
        sys.exit(1)

    payload = {
        "success": True,
        "source": "datamatrix_scanner",
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "backend": res.backend,
        "result": res.data,
    }
    txt = json.dumps(payload, indent=2, ensure_ascii=False)
    print(txt)
    if args.output:
        try:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(txt)
        except OSError as e:
            print(json.dumps({"success": False, "error": f"Failed to write output: {e}"}), file=sys.stderr)


if __name__ == "__main__":
    main()
