"""
plan_model.py — shared records for the plan-to-measurement pipeline

Every stage hands one of these records to the next one:

  Plan            raster geometry (never mutated)
  Scale           OCR'd notation + calibrated pixels-per-millimetre (+ provenance)
  Tile            one rectangle of the tile grid
  TileAnnotation  classifier output for one tile (local coordinates)
  Element         stitched, globally placed classified region
  CoverageReport  how much of the plan received a classification
  Measurement     real-world dimensions of one element

DEGRADED STATES ARE DATA
- An estimated scale, a failed tile, low coverage or a skipped measurement is
  recorded on the record itself. Only a plan that cannot be loaded is fatal.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union


# -----------------------------
# Version / label set
# -----------------------------
PIPELINE_VERSION = "1.0.0"

EPS = 1e-10

ELEMENT_LABELS = (
    "wall", "door", "window", "slab", "column",
    "staircase", "opening", "corridor", "insulation", "ceiling",
)
# Labels for regions that cannot be typed with confidence. They are kept, never dropped.
SENTINEL_LABELS = ("unclear", "undefined", "irrelevant", "incomplete")
CLASSIFICATION_LABELS = ELEMENT_LABELS + SENTINEL_LABELS

OVERLAP_EDGES = ("left", "right", "top", "bottom")


def normalize_label(label: Any) -> str:
    s = str(label or "").strip().lower()
    return s if s in CLASSIFICATION_LABELS else "undefined"

def is_sentinel(label: str) -> bool:
    return label in SENTINEL_LABELS


# -----------------------------
# Filesystem / formatting
# -----------------------------
def now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()

def ensure_dir(p: Union[str, Path]) -> Path:
    p = Path(p)
    p.mkdir(parents=True, exist_ok=True)
    return p

def read_json(path: Union[str, Path]) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)

def write_json(path: Union[str, Path], obj: Any) -> None:
    path = Path(path)
    ensure_dir(path.parent)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)

def write_text(path: Union[str, Path], text: str) -> None:
    path = Path(path)
    ensure_dir(path.parent)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)

def stable_id(*parts: Any) -> str:
    h = hashlib.sha1()
    for p in parts:
        h.update(str(p).encode("utf-8"))
        h.update(b"|")
    return h.hexdigest()[:12]


# -----------------------------
# Audit logging (append-only)
# -----------------------------
class AuditLogger:
    def __init__(self, ndjson_path: Path):
        self.path = Path(ndjson_path)
        ensure_dir(self.path.parent)

    def log(self, event: str, payload: Dict[str, Any]) -> None:
        rec = {"ts": now_iso(), "event": event, "payload": payload}
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False) + "\n")


# -----------------------------
# Error taxonomy
# -----------------------------
class PlanPipelineError(RuntimeError):
    pass

class PlanLoadError(PlanPipelineError):
    """The raster could not be loaded. The only fatal condition of a run."""

class ScaleDetectionFailure(PlanPipelineError):
    pass

class TileAnalysisFailure(PlanPipelineError):
    def __init__(self, tile_id: str, message: str):
        super().__init__(f"{tile_id}: {message}")
        self.tile_id = tile_id

class CoverageIncomplete(PlanPipelineError):
    def __init__(self, report: "CoverageReport"):
        super().__init__(
            f"coverage {report.coverage_percentage:.1f}% below {report.threshold:.1f}% "
            f"({report.missing_pixels} pixels unannotated)"
        )
        self.report = report

class MeasurementFailure(PlanPipelineError):
    def __init__(self, element_id: str, reason: str):
        super().__init__(f"{element_id}: {reason}")
        self.element_id = element_id
        self.reason = reason


# -----------------------------
# Plan / Scale
# -----------------------------
@dataclass(frozen=True)
class Plan:
    width: int
    height: int
    dpi: int = 300
    format: str = "png"
    source: str = ""

    def __post_init__(self) -> None:
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise ValueError(f"Plan dimensions must be positive, got {self.width}x{self.height}")
        if int(self.dpi) <= 0:
            raise ValueError(f"Plan dpi must be positive, got {self.dpi}")

    @property
    def total_pixels(self) -> int:
        return int(self.width) * int(self.height)

    def to_json(self) -> Dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "total_pixels": self.total_pixels,
            "dpi": self.dpi,
            "format": self.format,
            "source": self.source,
        }

    @staticmethod
    def from_json(obj: Dict[str, Any]) -> "Plan":
        return Plan(
            width=int(obj["width"]),
            height=int(obj["height"]),
            dpi=int(obj.get("dpi", 300)),
            format=str(obj.get("format", "png")),
            source=str(obj.get("source", "")),
        )

@dataclass(frozen=True)
class Scale:
    notation: str
    ratio: int
    pixels_per_millimeter: float
    estimated: bool = False
    source: str = "footer"          # footer|title_block|legend|bottom_strip|default|manual
    ocr_text: str = ""
    ocr_confidence: float = 0.0
    calibration: str = "dpi"        # frame|dpi
    calibration_deviation: Optional[float] = None  # frame vs dpi, relative
    sheet: Optional[str] = None
    warnings: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not (self.pixels_per_millimeter > 0):
            raise ValueError(f"pixels_per_millimeter must be > 0, got {self.pixels_per_millimeter!r}")
        if int(self.ratio) <= 0:
            raise ValueError(f"Scale ratio must be positive, got {self.ratio!r}")

    @property
    def millimeters_per_pixel(self) -> float:
        return 1.0 / self.pixels_per_millimeter

    def to_json(self) -> Dict[str, Any]:
        return {
            "notation": self.notation,
            "ratio": self.ratio,
            "pixels_per_millimeter": self.pixels_per_millimeter,
            "estimated": self.estimated,
            "source": self.source,
            "ocr_text": self.ocr_text,
            "ocr_confidence": self.ocr_confidence,
            "calibration": self.calibration,
            "calibration_deviation": self.calibration_deviation,
            "sheet": self.sheet,
            "warnings": list(self.warnings),
        }

    @staticmethod
    def from_json(obj: Dict[str, Any]) -> "Scale":
        return Scale(
            notation=str(obj["notation"]),
            ratio=int(obj["ratio"]),
            pixels_per_millimeter=float(obj["pixels_per_millimeter"]),
            estimated=bool(obj.get("estimated", False)),
            source=str(obj.get("source", "footer")),
            ocr_text=str(obj.get("ocr_text", "")),
            ocr_confidence=float(obj.get("ocr_confidence", 0.0)),
            calibration=str(obj.get("calibration", "dpi")),
            calibration_deviation=obj.get("calibration_deviation"),
            sheet=obj.get("sheet"),
            warnings=tuple(obj.get("warnings") or ()),
        )


# -----------------------------
# Geometry records
# -----------------------------
Rect = Tuple[int, int, int, int]  # x1, y1, x2, y2 (half-open)

@dataclass(frozen=True)
class PixelBounds:
    start_x: int
    start_y: int
    end_x: int
    end_y: int

    @property
    def width(self) -> int:
        return self.end_x - self.start_x

    @property
    def height(self) -> int:
        return self.end_y - self.start_y

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def as_rect(self) -> Rect:
        return (self.start_x, self.start_y, self.end_x, self.end_y)

    def to_json(self) -> Dict[str, int]:
        return {
            "start_x": self.start_x, "start_y": self.start_y,
            "end_x": self.end_x, "end_y": self.end_y,
            "width": self.width, "height": self.height,
        }

@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int

    @property
    def x2(self) -> int:
        return self.x + self.width

    @property
    def y2(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    def as_rect(self) -> Rect:
        return (self.x, self.y, self.x2, self.y2)

    @staticmethod
    def from_rect(r: Rect) -> "BoundingBox":
        x1, y1, x2, y2 = r
        return BoundingBox(int(x1), int(y1), int(x2 - x1), int(y2 - y1))

    def to_json(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

@dataclass(frozen=True)
class Tile:
    tile_id: str
    index: int
    grid_x: int
    grid_y: int
    bounds: PixelBounds
    overlap_edges: frozenset = frozenset()

    @property
    def grid_position(self) -> Tuple[int, int]:
        return (self.grid_x, self.grid_y)

    @property
    def pixel_count(self) -> int:
        return self.bounds.area

    def to_json(self) -> Dict[str, Any]:
        return {
            "tile_id": self.tile_id,
            "index": self.index,
            "grid_position": {"x": self.grid_x, "y": self.grid_y},
            "pixel_bounds": self.bounds.to_json(),
            "overlap_edges": [e for e in OVERLAP_EDGES if e in self.overlap_edges],
        }


# -----------------------------
# Classification records
# -----------------------------
@dataclass(frozen=True)
class Region:
    bounds: BoundingBox          # tile-local
    classification: str
    confidence: float
    edge_strength: Optional[float] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "local_bounds": self.bounds.to_json(),
            "classification": self.classification,
            "confidence": self.confidence,
            "edge_strength": self.edge_strength,
        }

@dataclass
class TileAnnotation:
    tile: Tile
    regions: List[Region] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None
    elapsed_s: float = 0.0

    @property
    def tile_id(self) -> str:
        return self.tile.tile_id

    def to_json(self) -> Dict[str, Any]:
        return {
            "tile_id": self.tile_id,
            "success": self.success,
            "error": self.error,
            "elapsed_s": round(self.elapsed_s, 4),
            "regions": [r.to_json() for r in self.regions],
        }

@dataclass(frozen=True)
class Element:
    element_id: str
    classification: str
    confidence: float
    bounding_box: Optional[BoundingBox]
    pixel_area: int = 0
    source_tiles: Tuple[str, ...] = ()
    edge_strength: Optional[float] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "classification": self.classification,
            "confidence": self.confidence,
            "bounding_box": self.bounding_box.to_json() if self.bounding_box else None,
            "pixel_area": self.pixel_area,
            "source_tiles": list(self.source_tiles),
            "edge_strength": self.edge_strength,
        }

@dataclass(frozen=True)
class CoverageReport:
    total_pixels: int
    annotated_pixels: int
    threshold: float = 95.0

    @property
    def coverage_percentage(self) -> float:
        if self.total_pixels <= 0:
            return 0.0
        return self.annotated_pixels / self.total_pixels * 100.0

    @property
    def complete(self) -> bool:
        return self.coverage_percentage >= self.threshold

    @property
    def missing_pixels(self) -> int:
        return max(0, self.total_pixels - self.annotated_pixels)

    def raise_if_incomplete(self) -> None:
        if not self.complete:
            raise CoverageIncomplete(self)

    def to_json(self) -> Dict[str, Any]:
        return {
            "total_pixels": self.total_pixels,
            "annotated_pixels": self.annotated_pixels,
            "missing_pixels": self.missing_pixels,
            "coverage_percentage": round(self.coverage_percentage, 4),
            "threshold": self.threshold,
            "complete": self.complete,
        }


# -----------------------------
# Measurement records
# -----------------------------
@dataclass(frozen=True)
class Measurement:
    element_id: str
    classification: str
    status: str = "measured"        # measured|skipped
    dimensions: Dict[str, Dict[str, float]] = field(default_factory=dict)
    area: Optional[Dict[str, float]] = None
    volume: Optional[Dict[str, float]] = None
    orientation_deg: Optional[float] = None
    confidence: float = 0.0
    confidence_level: str = "very_low"
    confidence_factors: Dict[str, Optional[float]] = field(default_factory=dict)
    classification_confidence: float = 0.0
    tolerance_band: Dict[str, float] = field(default_factory=dict)
    standard_compliance: Dict[str, Any] = field(default_factory=dict)
    requires_manual_review: bool = False
    estimated_scale: bool = False
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "measured"

    def to_json(self) -> Dict[str, Any]:
        return {
            "element_id": self.element_id,
            "classification": self.classification,
            "status": self.status,
            "dimensions": self.dimensions,
            "area": self.area,
            "volume": self.volume,
            "orientation_deg": self.orientation_deg,
            "confidence": self.confidence,
            "confidence_level": self.confidence_level,
            "confidence_factors": self.confidence_factors,
            "classification_confidence": self.classification_confidence,
            "tolerance_band": self.tolerance_band,
            "standard_compliance": self.standard_compliance,
            "requires_manual_review": self.requires_manual_review,
            "estimated_scale": self.estimated_scale,
            "reason": self.reason,
        }

@dataclass
class TypeSummary:
    count: int = 0
    total_area: float = 0.0
    total_volume: float = 0.0
    average_confidence: float = 0.0

    def to_json(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "total_area": self.total_area,
            "total_volume": self.total_volume,
            "average_confidence": self.average_confidence,
        }

@dataclass
class MeasurementSummary:
    total: int
    successful: int
    failed: int
    success_rate: float
    by_type: Dict[str, TypeSummary]
    average_confidence: float
    standard_checked: int
    standard_compliance_pct: float
    requires_review: int
    total_area: float
    total_volume: float

    def iter_types(self) -> Iterator[Tuple[str, TypeSummary]]:
        return iter(sorted(self.by_type.items()))

    def to_json(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "success_rate": self.success_rate,
            "by_type": {k: v.to_json() for k, v in self.iter_types()},
            "average_confidence": self.average_confidence,
            "standard_checked": self.standard_checked,
            "standard_compliance_pct": self.standard_compliance_pct,
            "requires_review": self.requires_review,
            "total_area": self.total_area,
            "total_volume": self.total_volume,
        }
