# ward_monitor/config.py
import copy
import logging
import os

import yaml

from .errors import ConfigError

DEFAULTS = {
    "cameras": [],
    "yolo": {"weights": "yolov8n.pt", "conf": 0.25, "iou": 0.45, "imgsz": 416, "classes": ["person"]},
    "health": {
        "frozen_seconds": 8,
        "sample_every": 0.8,
        "black_luma_threshold": 18,
        "black_ratio_threshold": 0.92,
        "black_consecutive": 2,
        "watchdog_every": 0.4,
    },
    "scene": {
        "sample_every": 0.9,
        "motion_threshold": 28,
        "grid_x": 6,
        "grid_y": 4,
        "presence_min": 0.004,
        "crowd_min_cells": 7,
    },
    "fall": {
        "drop_threshold": 0.12,
        "drop_window": 1.4,
        "still_confirm": 0.9,
        "still_expiry": 4.5,
        "cooldown": 12.0,
    },
    "inactivity": {"watch_after_seconds": 90, "risk_after_seconds": 240},
    "alerts": {"watch": 60, "risk": 30, "critical": 12},
    "evidence": {"pre_seconds": 3},
    "bus": {"api_url": None},
    "logging": {"level": "INFO"},
}

CAMERA_DEFAULTS = {"role": None, "pixels": True, "fps_cap": 15, "loop": True}


def _merge(base, override):
    out = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path=None) -> dict:
    """Load YAML config over DEFAULTS. Missing file means defaults only."""
    path = path or os.environ.get("WARD_MONITOR_CONFIG", "config.yaml")
    raw = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return normalize(_merge(DEFAULTS, raw))


def normalize(cfg: dict) -> dict:
    cams = []
    seen = set()
    for cam in cfg.get("cameras") or []:
        if "id" not in cam or "source" not in cam:
            raise ConfigError(f"camera entry needs 'id' and 'source': {cam}")
        if cam["id"] in seen:
            raise ConfigError(f"duplicate camera id {cam['id']}")
        seen.add(cam["id"])
        c = dict(CAMERA_DEFAULTS)
        c.update(cam)
        c.setdefault("name", cam["id"])
        cams.append(c)
    cfg["cameras"] = cams
    return cfg


def setup_logging(cfg: dict):
    level = str((cfg.get("logging") or {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
