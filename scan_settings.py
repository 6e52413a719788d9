# scan_settings.py
# ----------------------------------------------------------------------
# Scanner configuration.
#
#   defaults  <-  optional YAML file  <-  .env / DMSCAN_* environment
#             <-  explicit keyword overrides (CLI flags)
#
# Example scanner.yaml:
#   backends: [zxingcpp, pylibdmtx]
#   remote_url: http://pi.local:5000
#   rectified_size: 240
#   detector:
#     min_area: 300
# ----------------------------------------------------------------------

from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

ENV_PREFIX = "DMSCAN_"


@dataclass
class ScanConfig:
    camera_index: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    backends: List[str] = field(default_factory=lambda: ["auto"])
    remote_url: Optional[str] = None
    remote_timeout_s: float = 2.0
    frame_interval_s: float = 0.03
    decode_budget_ms: Optional[float] = None
    rectified_size: int = 200
    quiet_zone: int = 16
    min_selection: int = 8
    min_area: float = 200.0
    epsilon_ratio: float = 0.04
    aspect_range: Tuple[float, float] = (0.35, 3.0)
    clahe_grid: int = 4
    block_size: int = 21
    max_process_side: Optional[int] = None
    timeout_s: float = 0.0
    show_window: bool = True
    auto_focus: Optional[bool] = None
    auto_exposure: Optional[bool] = None
    exposure: Optional[float] = None

    def validate(self) -> "ScanConfig":
        if self.rectified_size < 16:
            raise ValueError("rectified_size must be >= 16")
        if self.quiet_zone < 0:
            raise ValueError("quiet_zone must be >= 0")
        if self.min_selection < 1:
            raise ValueError("min_selection must be >= 1")
        if self.block_size < 3 or self.block_size % 2 == 0:
            raise ValueError("block_size must be odd and >= 3")
        if self.clahe_grid < 1:
            raise ValueError("clahe_grid must be >= 1")
        if self.remote_timeout_s <= 0:
            raise ValueError("remote_timeout_s must be > 0")
        if self.frame_interval_s < 0:
            raise ValueError("frame_interval_s must be >= 0")
        lo, hi = self.aspect_range
        if not (0 < lo <= hi):
            raise ValueError(f"aspect_range invalid: {self.aspect_range}")
        if not self.backends:
            raise ValueError("backends must not be empty")
        return self


_BOOL_TRUE = {"1", "true", "yes", "on"}
_BOOL_FALSE = {"0", "false", "no", "off"}


def _to_bool(key: str, v: Any) -> Optional[bool]:
    if v is None or isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in _BOOL_TRUE:
        return True
    if s in _BOOL_FALSE:
        return False
    if s in ("", "none", "auto"):
        return None
    raise ValueError(f"{key}: expected a boolean, got {v!r}")


def _coerce(key: str, value: Any) -> Any:
    """Convert YAML/env values to the field's type; ValueError names the key."""
    if value is None:
        return None
    try:
        if key in ("camera_index", "rectified_size", "quiet_zone", "min_selection", "clahe_grid", "block_size"):
            return int(value)
        if key in ("width", "height", "max_process_side"):
            return None if str(value).strip().lower() in ("", "none") else int(value)
        if key in ("remote_timeout_s", "frame_interval_s", "min_area", "epsilon_ratio", "timeout_s"):
            return float(value)
        if key in ("decode_budget_ms", "exposure"):
            return None if str(value).strip().lower() in ("", "none") else float(value)
        if key in ("show_window", "auto_focus", "auto_exposure"):
            b = _to_bool(key, value)
            return bool(b) if key == "show_window" else b
        if key == "backends":
            if isinstance(value, str):
                return [p.strip() for p in value.split(",") if p.strip()]
            return [str(p).strip() for p in value]
        if key == "aspect_range":
            if isinstance(value, str):
                value = [p for p in value.split(",") if p.strip()]
            lo, hi = value
            return float(lo), float(hi)
        if key == "remote_url":
            s = str(value).strip()
            return s or None
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key}: invalid value {value!r} ({e})") from e
    return value


_FIELD_NAMES = {f.name for f in fields(ScanConfig)}


def _flatten_yaml(data: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in (data or {}).items():
        if k == "detector" and isinstance(v, dict):
            for dk, dv in v.items():
                out[dk] = dv
        elif k == "camera" and isinstance(v, dict):
            for ck, cv in v.items():
                out["camera_index" if ck == "index" else ck] = cv
        else:
            out[k] = v
    return out


def _read_yaml(path: pathlib.Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return _flatten_yaml(data.get("scanner", data))


def _read_env() -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name in _FIELD_NAMES:
        raw = os.getenv(ENV_PREFIX + name.upper())
        if raw is not None:
            out[name] = raw
    return out


def load_settings(path: Optional[str] = None, *, env_file: Optional[str] = None, **overrides: Any) -> ScanConfig:
    """Build a validated ScanConfig; None-valued overrides are ignored."""
    load_dotenv(dotenv_path=env_file, override=False)

    merged: Dict[str, Any] = {}
    if path:
        p = pathlib.Path(path)
        if not p.exists():
            raise FileNotFoundError(f"config file not found: {p}")
        merged.update(_read_yaml(p))
    merged.update(_read_env())
    merged.update({k: v for k, v in overrides.items() if v is not None})

    unknown = sorted(set(merged) - _FIELD_NAMES)
    if unknown:
        raise ValueError(f"unknown setting(s): {', '.join(unknown)}")

    cfg = replace(ScanConfig(), **{k: _coerce(k, v) for k, v in merged.items()})
    return cfg.validate()
