"""
tile_analysis.py — batched, bounded-concurrency classification of plan tiles

Coordinator contract:
  - tiles are dispatched in batches (default 20) onto ONE ThreadPoolExecutor
  - a batch is fully joined before the next batch is submitted
  - each worker crops its own tile raster (tile_source(tile)), so at most one batch of
    tile buffers is alive at a time
  - a tile that fails (classifier exception / malformed output) becomes a
    TileAnnotation(success=False) and is counted; the run goes on
  - progress(completed, total) is called after every batch; returning False cancels
    before the next batch starts
  - annotations come back in tile order, whatever order the workers finish in

Classifier backends are injected. RuleBasedClassifier is the OpenCV reference backend.
"""

from __future__ import annotations

import math
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import cv2
import numpy as np

from plan_config import DEFAULT_BATCH_SIZE, DEFAULT_MAX_WORKERS
from plan_model import (
    BoundingBox,
    Region,
    Tile,
    TileAnalysisFailure,
    TileAnnotation,
    normalize_label,
)


# -----------------------------
# Classifier output normalisation
# -----------------------------
def _parse_bbox(raw: Any, tile: Tile) -> Optional[BoundingBox]:
    tw, th = tile.bounds.width, tile.bounds.height
    if raw is None:
        return BoundingBox(0, 0, tw, th)
    if isinstance(raw, Mapping):
        x = raw.get("x", 0)
        y = raw.get("y", 0)
        w = raw.get("width", raw.get("w"))
        h = raw.get("height", raw.get("h"))
    elif isinstance(raw, (list, tuple)) and len(raw) == 4:
        x, y, w, h = raw
    else:
        raise ValueError(f"unreadable bounding box: {raw!r}")
    if w is None or h is None:
        raise ValueError(f"bounding box without size: {raw!r}")

    x1 = max(0, min(tw, int(round(float(x)))))
    y1 = max(0, min(th, int(round(float(y)))))
    x2 = max(x1, min(tw, int(round(float(x) + float(w)))))
    y2 = max(y1, min(th, int(round(float(y) + float(h)))))
    if x2 <= x1 or y2 <= y1:
        return None
    return BoundingBox(x1, y1, x2 - x1, y2 - y1)

def _clamp_confidence(v: Any) -> float:
    try:
        c = float(v)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(c):
        return 0.0
    return max(0.0, min(1.0, c))

def normalize_classifier_output(raw: Any, tile: Tile) -> List[Region]:
    """
    Accepts one dict or a list of dicts:
      {classification|label, confidence, bounding_box|bbox: [x, y, w, h] | {x, y, width, height}}
    Missing box -> whole tile. Unknown labels -> "undefined" (kept, never dropped).
    """
    if raw is None:
        return []
    items = [raw] if isinstance(raw, Mapping) else raw
    if not isinstance(items, (list, tuple)):
        raise ValueError(f"classifier returned {type(raw).__name__}, expected dict or list")

    regions: List[Region] = []
    for item in items:
        if not isinstance(item, Mapping):
            raise ValueError(f"classifier region is {type(item).__name__}, expected dict")
        label = normalize_label(item.get("classification", item.get("label")))
        box = _parse_bbox(item.get("bounding_box", item.get("bbox")), tile)
        if box is None:
            continue
        edge = item.get("edge_strength")
        regions.append(Region(
            bounds=box,
            classification=label,
            confidence=_clamp_confidence(item.get("confidence", 0.0)),
            edge_strength=None if edge is None else _clamp_confidence(edge),
        ))
    return regions

def resolve_classifier(classifier: Any) -> Callable[[np.ndarray, Dict[str, Any]], Any]:
    if hasattr(classifier, "classify"):
        return lambda img, ctx: classifier.classify(img, ctx)
    if hasattr(classifier, "classify_region"):
        return lambda img, ctx: classifier.classify_region(img)
    if callable(classifier):
        return lambda img, ctx: classifier(img, ctx)
    raise TypeError(f"Not a classifier: {classifier!r} (needs classify(), classify_region() or __call__)")


# -----------------------------
# Coordinator
# -----------------------------
@dataclass
class TileAnalysisResult:
    annotations: List[TileAnnotation] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    total: int = 0
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return self.succeeded + self.failed

    def failures(self) -> List[TileAnnotation]:
        return [a for a in self.annotations if not a.success]

    def to_json(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "failures": [{"tile_id": a.tile_id, "error": a.error} for a in self.failures()],
        }


class TileAnalysisCoordinator:
    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE, max_workers: int = DEFAULT_MAX_WORKERS,
                 verbose: bool = False):
        if int(batch_size) < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if int(max_workers) < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.batch_size = int(batch_size)
        self.max_workers = int(max_workers)
        self.verbose = verbose

    def _analyze_one(self, tile: Tile, classify: Callable, tile_source: Callable[[Tile], np.ndarray],
                     context: Mapping[str, Any]) -> TileAnnotation:
        t0 = time.perf_counter()
        ctx = dict(context)
        ctx.update({
            "tile_id": tile.tile_id,
            "grid_position": tile.grid_position,
            "pixel_bounds": tile.bounds.to_json(),
            "overlap_edges": sorted(tile.overlap_edges),
        })
        try:
            img = tile_source(tile)
            raw = classify(img, ctx)
            regions = normalize_classifier_output(raw, tile)
        except Exception as e:
            err = TileAnalysisFailure(tile.tile_id, f"{type(e).__name__}: {e}")
            return TileAnnotation(tile=tile, regions=[], success=False, error=str(err),
                                  elapsed_s=time.perf_counter() - t0)
        return TileAnnotation(tile=tile, regions=regions, success=True, elapsed_s=time.perf_counter() - t0)

    def analyze_all(
        self,
        tiles: Sequence[Tile],
        classifier: Any,
        tile_source: Callable[[Tile], np.ndarray],
        context: Optional[Mapping[str, Any]] = None,
        progress: Optional[Callable[[int, int], Any]] = None,
    ) -> TileAnalysisResult:
        classify = resolve_classifier(classifier)
        context = context or {}
        total = len(tiles)
        result = TileAnalysisResult(total=total)
        done: Dict[int, TileAnnotation] = {}

        completed = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as ex:
            for b0 in range(0, total, self.batch_size):
                batch = list(enumerate(tiles[b0:b0 + self.batch_size], start=b0))
                futures = {
                    ex.submit(self._analyze_one, tile, classify, tile_source, context): pos
                    for pos, tile in batch
                }
                for fut in as_completed(futures):
                    ann = fut.result()
                    done[futures[fut]] = ann
                    if ann.success:
                        result.succeeded += 1
                    else:
                        result.failed += 1
                        if self.verbose:
                            print(f"[tiles] failed {ann.error}")

                completed += len(batch)
                if self.verbose:
                    print(f"[tiles] {completed}/{total} analysed ({result.failed} failed)")
                if progress is not None and progress(completed, total) is False:
                    result.cancelled = completed < total
                    break

        result.annotations = [done[i] for i in sorted(done)]
        return result


# -----------------------------
# Reference classifier (OpenCV contours + size rules in mm)
# -----------------------------
class RuleBasedClassifier:
    """
    Dark strokes -> external contours -> bounding rectangles, typed by real-world size.

      door     700 <= long <= 2000, short < 300           0.85
      window   600 <= long <= 3000, 100 <= short <= 300   0.80
      wall     80 <= short <= 500, long > 5 * short       0.90
      column   200 <= short, long <= 800, squarish        0.60
      slab     short >= 2000                              0.50
      tiny     short < 20 mm                              irrelevant 0.10
      else                                                unclear 0.30

    A contour touching a tile edge shared with a neighbour is cut off: its long side is
    only a lower bound, so it can still prove a wall but never a door or window
    (otherwise "incomplete" 0.30; the neighbouring tile sees the rest).
    """

    def __init__(self, pixels_per_millimeter: Optional[float] = None, min_area_px: int = 100,
                 label_background: bool = False):
        self.pixels_per_millimeter = pixels_per_millimeter
        self.min_area_px = int(min_area_px)
        self.label_background = label_background

    @staticmethod
    def classify_dimensions(long_mm: float, short_mm: float):
        if 700 <= long_mm <= 2000 and short_mm < 300:
            return ("door", 0.85)
        if 600 <= long_mm <= 3000 and 100 <= short_mm <= 300:
            return ("window", 0.80)
        if 80 <= short_mm <= 500 and long_mm > 5 * short_mm:
            return ("wall", 0.90)
        if short_mm >= 200 and long_mm <= 800 and long_mm <= 1.5 * short_mm:
            return ("column", 0.60)
        if short_mm >= 2000:
            return ("slab", 0.50)
        if short_mm < 20:
            return ("irrelevant", 0.10)
        return ("unclear", 0.30)

    @staticmethod
    def classify_truncated(long_min_mm: float, short_mm: float):
        if 80 <= short_mm <= 500 and long_min_mm > 5 * short_mm:
            return ("wall", 0.90)
        if short_mm >= 2000:
            return ("slab", 0.50)
        if short_mm < 20:
            return ("irrelevant", 0.10)
        return ("incomplete", 0.30)

    @staticmethod
    def _touches(x: int, y: int, cw: int, ch: int, w: int, h: int, edges) -> bool:
        return (
            ("left" in edges and x <= 0)
            or ("top" in edges and y <= 0)
            or ("right" in edges and x + cw >= w)
            or ("bottom" in edges and y + ch >= h)
        )

    @staticmethod
    def _edge_strength(near_edges: np.ndarray, x: int, y: int, w: int, h: int) -> float:
        """Share of the box border that sits on (or 1 px next to) a Canny edge."""
        ring = np.concatenate([
            near_edges[y, x:x + w], near_edges[y + h - 1, x:x + w],
            near_edges[y:y + h, x], near_edges[y:y + h, x + w - 1],
        ])
        if ring.size == 0:
            return 0.0
        return float(np.count_nonzero(ring)) / float(ring.size)

    def classify(self, image: np.ndarray, context: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        ctx = context or {}
        ppmm = float(ctx.get("pixels_per_millimeter") or self.pixels_per_millimeter or 0.0)
        if ppmm <= 0:
            raise ValueError("RuleBasedClassifier needs pixels_per_millimeter (constructor or context)")

        shared = set(ctx.get("overlap_edges", ()))
        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
        h, w = gray.shape[:2]
        out: List[Dict[str, Any]] = []
        if self.label_background:
            out.append({"classification": "irrelevant", "confidence": 0.05, "bounding_box": [0, 0, w, h]})
        if h == 0 or w == 0 or int(gray.max()) == int(gray.min()):
            return out

        _, bw = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY_INV | cv2.THRESH_OTSU)
        contours, _ = cv2.findContours(bw, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        edges = cv2.dilate(cv2.Canny(gray, 60, 160), np.ones((3, 3), np.uint8))

        for c in contours:
            x, y, cw, ch = cv2.boundingRect(c)
            if cw * ch < self.min_area_px:
                continue
            long_mm = max(cw, ch) / ppmm
            short_mm = min(cw, ch) / ppmm
            if self._touches(x, y, cw, ch, w, h, shared):
                label, conf = self.classify_truncated(long_mm, short_mm)
            else:
                label, conf = self.classify_dimensions(long_mm, short_mm)
            out.append({
                "classification": label,
                "confidence": conf,
                "bounding_box": [x, y, cw, ch],
                "edge_strength": round(self._edge_strength(edges, x, y, cw, ch), 4),
            })
        return out
