"""
plan_config.py — defaults, quality profiles and overrides for plan-measure

Precedence (later wins):
  quality profile  ->  JSON config file  ->  PLAN_MEASURE_* environment  ->  CLI flags

Profiles trade tile granularity for speed, the same way the OCR tooling trades
angles/DPIs for runtime:
  fast      big tiles, thin overlap, wide batches
  standard  512 px tiles with 64 px overlap
  max       small tiles with a wide overlap (more seam protection, more classifier calls)
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from plan_model import read_json


# -----------------------------
# Defaults
# -----------------------------
DEFAULT_PROFILE = "standard"
DEFAULT_DPI = 300

DEFAULT_TILE_SIZE = 512
DEFAULT_TILE_OVERLAP = 64
DEFAULT_BATCH_SIZE = 20
DEFAULT_MAX_WORKERS = 8

DEFAULT_SCALE_RATIO = 100
MIN_OCR_CONFIDENCE = 0.60
COVERAGE_THRESHOLD_PCT = 95.0
INDEX_BUCKET_PX = 512

ENV_PREFIX = "PLAN_MEASURE_"


def quality_profile(name: str) -> Dict[str, Any]:
    if name == "fast":
        return {"tile_size": 1024, "overlap": 32, "batch_size": 40, "max_workers": 8}
    if name == "standard":
        return {
            "tile_size": DEFAULT_TILE_SIZE,
            "overlap": DEFAULT_TILE_OVERLAP,
            "batch_size": DEFAULT_BATCH_SIZE,
            "max_workers": DEFAULT_MAX_WORKERS,
        }
    if name == "max":
        return {"tile_size": 384, "overlap": 96, "batch_size": 12, "max_workers": 12}
    raise ValueError(f"Unknown quality profile: {name!r} (expected fast|standard|max)")


@dataclass
class PipelineConfig:
    profile: str = DEFAULT_PROFILE
    dpi: int = DEFAULT_DPI

    tile_size: int = DEFAULT_TILE_SIZE
    overlap: int = DEFAULT_TILE_OVERLAP
    batch_size: int = DEFAULT_BATCH_SIZE
    max_workers: int = DEFAULT_MAX_WORKERS

    default_scale_ratio: int = DEFAULT_SCALE_RATIO
    min_ocr_confidence: float = MIN_OCR_CONFIDENCE
    calibrate_frame: bool = True
    ocr_lang: str = "eng"
    tesseract_cmd: Optional[str] = None

    coverage_threshold: float = COVERAGE_THRESHOLD_PCT
    index_bucket_px: int = INDEX_BUCKET_PX

    label_background: bool = False
    dimension_text: bool = False
    assumed_heights_mm: Dict[str, float] = field(default_factory=lambda: {"wall": 2800.0, "column": 2800.0})

    verbose: bool = False

    def validate(self) -> "PipelineConfig":
        if self.tile_size <= 0:
            raise ValueError(f"tile_size must be positive, got {self.tile_size}")
        if not (0 <= self.overlap < self.tile_size):
            raise ValueError(f"overlap must satisfy 0 <= overlap < tile_size, got {self.overlap} / {self.tile_size}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.default_scale_ratio < 1:
            raise ValueError(f"default_scale_ratio must be >= 1, got {self.default_scale_ratio}")
        if not (0.0 <= self.coverage_threshold <= 100.0):
            raise ValueError(f"coverage_threshold must be within 0..100, got {self.coverage_threshold}")
        if self.dpi <= 0:
            raise ValueError(f"dpi must be positive, got {self.dpi}")
        return self

    def apply(self, overrides: Mapping[str, Any]) -> "PipelineConfig":
        known = {f.name: f for f in dataclasses.fields(self)}
        values = dataclasses.asdict(self)
        for k, v in overrides.items():
            if v is None:
                continue
            if k not in known:
                raise ValueError(f"Unknown config key: {k!r}")
            values[k] = v
        return PipelineConfig(**values)

    def to_json(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d.pop("tesseract_cmd", None)
        return d

    @staticmethod
    def from_profile(name: str) -> "PipelineConfig":
        return PipelineConfig(profile=name, **quality_profile(name))


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if env.get(ENV_PREFIX + "DEFAULT_SCALE"):
        raw = env[ENV_PREFIX + "DEFAULT_SCALE"].strip()
        out["default_scale_ratio"] = int(raw.split(":")[-1])
    if env.get(ENV_PREFIX + "WORKERS"):
        out["max_workers"] = int(env[ENV_PREFIX + "WORKERS"])
    if env.get(ENV_PREFIX + "BATCH_SIZE"):
        out["batch_size"] = int(env[ENV_PREFIX + "BATCH_SIZE"])
    if env.get(ENV_PREFIX + "TESSERACT_CMD"):
        out["tesseract_cmd"] = env[ENV_PREFIX + "TESSERACT_CMD"]
    if env.get(ENV_PREFIX + "OCR_LANG"):
        out["ocr_lang"] = env[ENV_PREFIX + "OCR_LANG"]
    return out


def load_config(
    path: Optional[Union[str, Path]] = None,
    profile: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PipelineConfig:
    env = os.environ if env is None else env
    file_values: Dict[str, Any] = {}
    if path:
        obj = read_json(path)
        if not isinstance(obj, dict):
            raise ValueError(f"Config file must hold a JSON object: {path}")
        file_values = obj

    name = profile or file_values.get("profile") or env.get(ENV_PREFIX + "PROFILE") or DEFAULT_PROFILE
    cfg = PipelineConfig.from_profile(str(name))
    cfg = cfg.apply({k: v for k, v in file_values.items() if k != "profile"})
    cfg = cfg.apply(_env_overrides(env))
    if overrides:
        cfg = cfg.apply(overrides)
    return cfg.validate()
