# dm_backends.py
# ----------------------------------------------------------------------
# Decoder backends for DataMatrix symbols.
#
# Every backend takes one image buffer and returns at most one DecodeResult
# (text + optional corners in that image's own coordinate space). Local
# backends are optional imports detected once at import time:
#
#   zxingcpp   (pip install zxing-cpp)   preferred
#   pylibdmtx  (pip install pylibdmtx)   needs libdmtx
#   pyzbar     (pip install pyzbar)      needs zbar
#
# The remote backend posts the image to the decode service in app.py.
# ----------------------------------------------------------------------

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np
import requests

from dm_geometry import as_points, quad_from_list, quad_to_list, sort_corners
from dm_preprocess import to_gray
from scan_errors import BackendUnavailableError

log = logging.getLogger(__name__)

# ------------------------------ Optional imports ------------------------------
ZXING: Optional[object] = None
DMTX_DECODE = None
ZBAR_DECODE = None

try:
    import zxingcpp as _zxingcpp  # type: ignore

    ZXING = _zxingcpp
except ImportError:  # pragma: no cover
    pass

try:
    from pylibdmtx.pylibdmtx import decode as _dmtx_decode  # type: ignore

    DMTX_DECODE = _dmtx_decode
except ImportError:  # pragma: no cover
    pass
except OSError as e:  # pragma: no cover - python package present, libdmtx missing
    log.debug("pylibdmtx installed but libdmtx could not be loaded: %s", e)

try:
    from pyzbar.pyzbar import decode as _zbar_decode  # type: ignore

    ZBAR_DECODE = _zbar_decode
except ImportError:  # pragma: no cover
    pass
except OSError as e:  # pragma: no cover
    log.debug("pyzbar installed but zbar could not be loaded: %s", e)

LOCAL_ORDER: List[str] = ["zxingcpp", "pylibdmtx", "pyzbar"]

DATAMATRIX = "DataMatrix"


# ------------------------------ Result / contract ------------------------------
@dataclass(frozen=True)
class DecodeResult:
    text: str
    format: str = DATAMATRIX
    corners: Optional[np.ndarray] = field(default=None, compare=False)
    backend: Optional[str] = None
    raw: Optional[bytes] = field(default=None, compare=False)

    def with_corners(self, corners: Optional[np.ndarray]) -> "DecodeResult":
        return DecodeResult(self.text, self.format, corners, self.backend, self.raw)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "format": self.format,
            "corners": quad_to_list(self.corners),
            "backend": self.backend,
        }


class DecodeBackend(Protocol):
    name: str

    def try_decode(self, image: np.ndarray) -> Optional[DecodeResult]:
        ...


@dataclass
class LocalBackend:
    """A named decode function; what the registry below hands out."""
    name: str
    decode_fn: Callable[[np.ndarray], Optional[DecodeResult]]

    def try_decode(self, image: np.ndarray) -> Optional[DecodeResult]:
        res = self.decode_fn(to_gray(image))
        if res is None or not res.text:
            return None
        return DecodeResult(res.text, res.format, res.corners, self.name, res.raw)


def _text_from_bytes(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1", errors="replace")


# ------------------------------ Backend wrappers ------------------------------

def _zxing_decode(gray: np.ndarray) -> Optional[DecodeResult]:
    assert ZXING is not None
    fmt = getattr(getattr(ZXING, "BarcodeFormat", None), "DataMatrix", None)
    attempts: List[Dict[str, Any]] = []
    if fmt is not None:
        attempts.append({"formats": fmt, "try_rotate": True})
        attempts.append({"formats": fmt})
    attempts.append({})
    results = None
    for kwargs in attempts:
        try:
            results = ZXING.read_barcodes(gray, **kwargs)
            break
        except TypeError:
            continue
    for r in results or []:
        if getattr(r, "valid", True) is False:
            continue
        if DATAMATRIX.lower() not in str(getattr(r, "format", DATAMATRIX)).lower():
            continue
        text = getattr(r, "text", "") or ""
        raw = getattr(r, "bytes", None)
        if not text and raw:
            text = _text_from_bytes(bytes(raw))
        if not text:
            continue
        corners = None
        pos = getattr(r, "position", None)
        if pos is not None:
            try:
                corners = np.array(
                    [[pos.top_left.x, pos.top_left.y],
                     [pos.top_right.x, pos.top_right.y],
                     [pos.bottom_right.x, pos.bottom_right.y],
                     [pos.bottom_left.x, pos.bottom_left.y]],
                    dtype=np.float32,
                )
            except AttributeError:
                corners = None
        return DecodeResult(text, DATAMATRIX, corners, raw=bytes(raw) if raw else None)
    return None


def _pylibdmtx_decode(gray: np.ndarray) -> Optional[DecodeResult]:
    assert DMTX_DECODE is not None
    h = gray.shape[0]
    for shrink in (1, 2):
        for threshold in (None, 60):
            kw: Dict[str, Any] = {"max_count": 1, "shrink": shrink}
            if threshold is not None:
                kw["threshold"] = threshold
            res = DMTX_DECODE(gray, **kw)
            if not res:
                continue
            d = res[0]
            raw = bytes(d.data)
            rect = getattr(d, "rect", None)
            corners = None
            if rect is not None and rect.width and rect.height:
                # libdmtx measures y from the bottom edge of the image
                left = float(rect.left)
                top = float(h - rect.top - rect.height)
                right, bottom = left + rect.width, top + rect.height
                corners = np.array([[left, top], [right, top], [right, bottom], [left, bottom]],
                                   dtype=np.float32)
            return DecodeResult(_text_from_bytes(raw), DATAMATRIX, corners, raw=raw)
    return None


def _pyzbar_decode(gray: np.ndarray) -> Optional[DecodeResult]:
    assert ZBAR_DECODE is not None
    for r in ZBAR_DECODE(gray):
        if getattr(r, "type", "").upper() != "DATAMATRIX":
            continue
        raw = bytes(r.data)
        corners = None
        poly = getattr(r, "polygon", None) or []
        if len(poly) == 4:
            corners = sort_corners([(p.x, p.y) for p in poly])
        elif getattr(r, "rect", None) is not None and r.rect.width and r.rect.height:
            x, y, w, hh = r.rect.left, r.rect.top, r.rect.width, r.rect.height
            corners = np.array([[x, y], [x + w, y], [x + w, y + hh], [x, y + hh]], dtype=np.float32)
        return DecodeResult(_text_from_bytes(raw), DATAMATRIX, corners, raw=raw)
    return None


_LOCAL_DECODERS: Dict[str, Callable[[np.ndarray], Optional[DecodeResult]]] = {
    "zxingcpp": _zxing_decode,
    "pylibdmtx": _pylibdmtx_decode,
    "pyzbar": _pyzbar_decode,
}


def _installed() -> Dict[str, bool]:
    return {"zxingcpp": ZXING is not None, "pylibdmtx": DMTX_DECODE is not None, "pyzbar": ZBAR_DECODE is not None}


def available_backends() -> List[str]:
    flags = _installed()
    return [name for name in LOCAL_ORDER if flags[name]]


# ------------------------------ Remote backend ------------------------------

def encode_image_payload(image: np.ndarray) -> Dict[str, Any]:
    """Raw-pixel JSON body shared by the remote backend and app.py."""
    img = np.ascontiguousarray(image, dtype=np.uint8)
    channels = 1 if img.ndim == 2 else int(img.shape[2])
    return {
        "width": int(img.shape[1]),
        "height": int(img.shape[0]),
        "channels": channels,
        "pixels": base64.b64encode(img.tobytes()).decode("ascii"),
    }


def decode_image_payload(body: Dict[str, Any]) -> np.ndarray:
    """Inverse of encode_image_payload; ValueError on malformed input."""
    try:
        w, h = int(body["width"]), int(body["height"])
        channels = int(body.get("channels", 1))
        buf = base64.b64decode(body["pixels"], validate=True)
    except (KeyError, TypeError, ValueError) as e:
        raise ValueError(f"malformed image payload: {e}") from e
    if w <= 0 or h <= 0 or channels not in (1, 3, 4):
        raise ValueError(f"bad image geometry {w}x{h}x{channels}")
    if len(buf) != w * h * channels:
        raise ValueError(f"pixel buffer is {len(buf)} bytes, expected {w * h * channels}")
    arr = np.frombuffer(buf, dtype=np.uint8)
    shape = (h, w) if channels == 1 else (h, w, channels)
    return arr.reshape(shape).copy()


@dataclass
class RemoteBackend:
    """Posts the image to a decode service; timeouts and HTTP errors count as a miss."""
    url: str
    timeout_s: float = 2.0
    name: str = "remote"
    session: Optional[requests.Session] = None

    def _endpoint(self) -> str:
        base = self.url.rstrip("/")
        return base if base.endswith("/api/decode") else base + "/api/decode"

    def try_decode(self, image: np.ndarray) -> Optional[DecodeResult]:
        poster = self.session or requests
        try:
            resp = poster.post(self._endpoint(), json=encode_image_payload(to_gray(image)), timeout=self.timeout_s)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            log.debug("remote decode failed: %s", e)
            return None
        if not data or not data.get("ok"):
            return None
        result = data.get("result")
        if not result or not result.get("text"):
            return None
        corners = quad_from_list(result.get("corners"))
        return DecodeResult(
            str(result["text"]),
            str(result.get("format") or DATAMATRIX),
            corners,
            self.name,
        )


# ------------------------------ Registry ------------------------------

def build_backends(
    names: Sequence[str] = ("auto",),
    *,
    remote_url: Optional[str] = None,
    remote_timeout_s: float = 2.0,
) -> List[DecodeBackend]:
    """
    Backends in the given priority order. "auto" expands to every installed
    local backend (zxingcpp -> pylibdmtx -> pyzbar). Asking for a backend that
    is not installed raises BackendUnavailableError.
    """
    flags = _installed()
    out: List[DecodeBackend] = []
    seen = set()
    for raw_name in names:
        name = raw_name.strip().lower()
        if not name or name in seen:
            continue
        if name == "auto":
            for local in available_backends():
                if local not in seen:
                    out.append(LocalBackend(local, _LOCAL_DECODERS[local]))
                    seen.add(local)
            continue
        if name == "remote":
            if not remote_url:
                raise BackendUnavailableError("remote backend requested without a remote_url")
            out.append(RemoteBackend(remote_url, remote_timeout_s))
        elif name in _LOCAL_DECODERS:
            if not flags[name]:
                raise BackendUnavailableError(
                    f"Decoder backend '{name}' is not installed. Install one of:"
                    "  pip install zxing-cpp   (recommended)"
                    "  pip install pylibdmtx   (needs libdmtx)"
                    "  pip install pyzbar   (needs zbar)"
                )
            out.append(LocalBackend(name, _LOCAL_DECODERS[name]))
        else:
            raise BackendUnavailableError(f"Unknown decoder backend '{raw_name}'")
        seen.add(name)
    if remote_url and "remote" not in seen and "auto" in [n.strip().lower() for n in names]:
        out.append(RemoteBackend(remote_url, remote_timeout_s))
    if not out:
        raise BackendUnavailableError("No decoder backend is available")
    return out


def corners_or_none(pts) -> Optional[np.ndarray]:
    if pts is None:
        return None
    arr = as_points(pts)
    return arr if arr.shape == (4, 2) else None
