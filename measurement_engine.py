"""
measurement_engine.py — pixel geometry -> real-world dimensions, tolerance and confidence

Conversions (pixels_per_millimeter comes from the resolved Scale):
  mm = px / ppmm            m  = mm / 1000
  m² = px_area / ppmm² / 1e6
  m³ = area_mm² * height_mm / 1e9      (walls + columns, assumed storey height)

Rounding: linear 1 mm, area 0.01 m², volume 0.001 m³, angles 0.1°.
Orientation is axis-aligned only: elements are bounding boxes, so 0.0 (horizontal) or 90.0 (vertical).

Escape routes (critical findings, nothing is dropped):
  door clear width (long side) < 800 mm      ASR A2.3 / DIN EN 1125
  corridor width (short side)  < 1200 mm     ASR A2.3

Confidence (0..1) is a weighted sum; a factor without evidence scores a neutral 0.5:
  boundary clarity 0.3 | catalog match 0.2 | dimension text 0.2 | rectangularity 0.2 | neighbours 0.1
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from plan_model import (
    Element,
    Measurement,
    MeasurementFailure,
    MeasurementSummary,
    Scale,
    TypeSummary,
    is_sentinel,
)


# -----------------------------
# Policy tables
# -----------------------------
TOLERANCE_MM = {"door": 2.0, "window": 2.0, "wall": 5.0, "column": 5.0}
DEFAULT_TOLERANCE_MM = 10.0

DEFAULT_HEIGHTS_MM = {"wall": 2800.0, "column": 2800.0}

# DIN 18100 door widths, common window widths, DIN wall thicknesses
STANDARD_CATALOG = {
    "door": ("length", (625, 750, 875, 1000, 1250)),
    "window": ("length", (600, 900, 1200, 1500, 1800)),
    "wall": ("thickness", (100, 115, 175, 240, 300, 365)),
}
CATALOG_MATCH_MM = 10.0

CONFIDENCE_WEIGHTS = {
    "boundary_clarity": 0.3,
    "standard_match": 0.2,
    "annotation_match": 0.2,
    "regularity": 0.2,
    "neighbor_consistency": 0.1,
}
NEUTRAL_FACTOR = 0.5

CONFIDENCE_LEVELS = ((0.85, "high"), (0.70, "medium"), (0.50, "low"))

NEIGHBOR_RADIUS_MM = 3000.0
NEIGHBOR_THICKNESS_TOL = 0.10

ANNOTATION_SEARCH_MM = 1000.0
ANNOTATION_MATCH_TOL = 0.02

ESCAPE_DOOR_MIN_MM = 800.0
CORRIDOR_MIN_MM = 1200.0


def pixels_to_mm(px: float, pixels_per_millimeter: float) -> float:
    return float(px) / float(pixels_per_millimeter)

def mm_to_pixels(mm: float, pixels_per_millimeter: float) -> float:
    return float(mm) * float(pixels_per_millimeter)

def confidence_level(c: float) -> str:
    for threshold, name in CONFIDENCE_LEVELS:
        if c >= threshold:
            return name
    return "very_low"

def tolerance_for(classification: str) -> float:
    return TOLERANCE_MM.get(classification, DEFAULT_TOLERANCE_MM)

def _linear(mm: float) -> Dict[str, float]:
    v = int(round(mm))
    return {"millimeters": v, "meters": round(v / 1000.0, 3)}

def check_standard(classification: str, length_mm: float, thickness_mm: float) -> Dict[str, Any]:
    entry = STANDARD_CATALOG.get(classification)
    if entry is None:
        return {"checked": False}
    which, sizes = entry
    value = length_mm if which == "length" else thickness_mm
    nearest = min(sizes, key=lambda s: abs(s - value))
    delta = value - nearest
    return {
        "checked": True,
        "dimension": which,
        "value_mm": int(round(value)),
        "nearest_standard_mm": nearest,
        "deviation_mm": int(round(delta)),
        "compliant": abs(delta) <= CATALOG_MATCH_MM,
    }


@dataclass
class _Geometry:
    width_mm: float
    height_mm: float
    length_mm: float
    thickness_mm: float
    area_mm2: float
    center_mm: Tuple[float, float]
    orientation_deg: float


class MeasurementEngine:
    def __init__(self, assumed_heights_mm: Optional[Dict[str, float]] = None, verbose: bool = False):
        self.assumed_heights_mm = dict(DEFAULT_HEIGHTS_MM if assumed_heights_mm is None else assumed_heights_mm)
        self.verbose = verbose

    # -------------------------
    # Geometry
    # -------------------------
    @staticmethod
    def _geometry(el: Element, ppmm: float) -> _Geometry:
        bb = el.bounding_box
        if bb is None:
            raise MeasurementFailure(el.element_id, "missing bounding box")
        if bb.width <= 0 or bb.height <= 0:
            raise MeasurementFailure(el.element_id, f"degenerate bounding box {bb.width}x{bb.height}")

        w_mm = pixels_to_mm(bb.width, ppmm)
        h_mm = pixels_to_mm(bb.height, ppmm)
        px_area = el.pixel_area if el.pixel_area > 0 else bb.area
        return _Geometry(
            width_mm=w_mm,
            height_mm=h_mm,
            length_mm=max(w_mm, h_mm),
            thickness_mm=min(w_mm, h_mm),
            area_mm2=px_area / (ppmm * ppmm),
            center_mm=(pixels_to_mm(bb.x + bb.width / 2.0, ppmm), pixels_to_mm(bb.y + bb.height / 2.0, ppmm)),
            orientation_deg=0.0 if bb.width >= bb.height else 90.0,
        )

    # -------------------------
    # Confidence factors
    # -------------------------
    @staticmethod
    def _regularity(el: Element) -> Optional[float]:
        bb = el.bounding_box
        if bb is None or bb.area <= 0 or el.pixel_area <= 0:
            return None
        return min(1.0, el.pixel_area / float(bb.area))

    @staticmethod
    def _annotation_match(el: Element, geo: _Geometry, annotations: Optional[Sequence[Any]], ppmm: float) -> Optional[float]:
        if not annotations:
            return None
        bb = el.bounding_box
        reach = mm_to_pixels(ANNOTATION_SEARCH_MM, ppmm)
        x1, y1, x2, y2 = bb.x - reach, bb.y - reach, bb.x2 + reach, bb.y2 + reach
        nearby = []
        for a in annotations:
            cx, cy = a.center
            if x1 <= cx <= x2 and y1 <= cy <= y2:
                nearby.append(a.value_mm)
        if not nearby:
            return None
        best = min(
            min(abs(v - geo.length_mm) / max(geo.length_mm, 1.0), abs(v - geo.thickness_mm) / max(geo.thickness_mm, 1.0))
            for v in nearby
        )
        if best <= ANNOTATION_MATCH_TOL:
            return 1.0
        return max(0.0, 1.0 - best * 5.0)

    @staticmethod
    def _neighbor_cell(center_mm: Tuple[float, float]) -> Tuple[int, int]:
        return (int(center_mm[0] // NEIGHBOR_RADIUS_MM), int(center_mm[1] // NEIGHBOR_RADIUS_MM))

    @classmethod
    def _neighbor_buckets(cls, geos: List[Optional[_Geometry]],
                          elements: Sequence[Element]) -> Dict[Tuple[str, int, int], List[int]]:
        buckets: Dict[Tuple[str, int, int], List[int]] = defaultdict(list)
        for j, g in enumerate(geos):
            if g is not None:
                cx, cy = cls._neighbor_cell(g.center_mm)
                buckets[(elements[j].classification, cx, cy)].append(j)
        return buckets

    @classmethod
    def _neighbor_consistency(cls, idx: int, geos: List[Optional[_Geometry]], elements: Sequence[Element],
                              buckets: Dict[Tuple[str, int, int], List[int]]) -> Optional[float]:
        me, geo = elements[idx], geos[idx]
        cx, cy = cls._neighbor_cell(geo.center_mm)
        peers = []
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                for j in buckets.get((me.classification, cx + dx, cy + dy), ()):
                    g = geos[j]
                    if j != idx and math.dist(geo.center_mm, g.center_mm) <= NEIGHBOR_RADIUS_MM:
                        peers.append(g)
        if not peers:
            return None
        close = sum(
            1 for g in peers
            if abs(g.thickness_mm - geo.thickness_mm) <= NEIGHBOR_THICKNESS_TOL * max(geo.thickness_mm, 1.0)
        )
        return close / len(peers)

    # -------------------------
    # Measure
    # -------------------------
    def measure_one(self, el: Element, scale: Scale, geo: _Geometry, neighbor: Optional[float],
                    annotations: Optional[Sequence[Any]] = None) -> Measurement:
        ppmm = scale.pixels_per_millimeter
        std = check_standard(el.classification, geo.length_mm, geo.thickness_mm)

        factors: Dict[str, Optional[float]] = {
            "boundary_clarity": el.edge_strength,
            "standard_match": (1.0 if std["compliant"] else 0.0) if std["checked"] else None,
            "annotation_match": self._annotation_match(el, geo, annotations, ppmm),
            "regularity": self._regularity(el),
            "neighbor_consistency": neighbor,
        }
        score = sum(
            CONFIDENCE_WEIGHTS[k] * (NEUTRAL_FACTOR if v is None else float(v))
            for k, v in factors.items()
        )
        score = round(max(0.0, min(1.0, score)), 4)

        area_mm2 = geo.area_mm2
        volume = None
        height = self.assumed_heights_mm.get(el.classification)
        if height:
            volume = {
                "cubic_meters": round(area_mm2 * height / 1e9, 3),
                "assumed_height_mm": height,
            }

        tol = tolerance_for(el.classification)
        review = is_sentinel(el.classification) or (std["checked"] and not std["compliant"])

        return Measurement(
            element_id=el.element_id,
            classification=el.classification,
            status="measured",
            dimensions={
                "width": _linear(geo.width_mm),
                "height": _linear(geo.height_mm),
                "length": _linear(geo.length_mm),
                "thickness": _linear(geo.thickness_mm),
            },
            area={
                "square_millimeters": round(area_mm2),
                "square_meters": round(area_mm2 / 1e6, 2),
            },
            volume=volume,
            orientation_deg=round(geo.orientation_deg, 1),
            confidence=score,
            confidence_level=confidence_level(score),
            confidence_factors={k: (None if v is None else round(float(v), 4)) for k, v in factors.items()},
            classification_confidence=el.confidence,
            tolerance_band={
                "plus_minus_mm": tol,
                "length_min_mm": int(round(geo.length_mm - tol)),
                "length_max_mm": int(round(geo.length_mm + tol)),
            },
            standard_compliance=std,
            requires_manual_review=review,
            estimated_scale=scale.estimated,
        )

    def measure(self, elements: Iterable[Element], scale: Scale,
                dimension_annotations: Optional[Sequence[Any]] = None) -> List[Measurement]:
        elements = list(elements)
        ppmm = scale.pixels_per_millimeter

        geos: List[Optional[_Geometry]] = []
        errors: List[Optional[MeasurementFailure]] = []
        for el in elements:
            try:
                geos.append(self._geometry(el, ppmm))
                errors.append(None)
            except MeasurementFailure as e:
                geos.append(None)
                errors.append(e)

        buckets = self._neighbor_buckets(geos, elements)
        out: List[Measurement] = []
        for i, el in enumerate(elements):
            geo = geos[i]
            if geo is None:
                if self.verbose:
                    print(f"[measure] skipped {errors[i]}")
                out.append(Measurement(
                    element_id=el.element_id,
                    classification=el.classification,
                    status="skipped",
                    classification_confidence=el.confidence,
                    requires_manual_review=True,
                    estimated_scale=scale.estimated,
                    reason=errors[i].reason,
                ))
                continue
            neighbor = self._neighbor_consistency(i, geos, elements, buckets)
            out.append(self.measure_one(el, scale, geo, neighbor, dimension_annotations))

        if self.verbose:
            ok = sum(1 for m in out if m.ok)
            print(f"[measure] {ok}/{len(out)} measured at {scale.notation} ({ppmm:.5f} px/mm)")
        return out

    # -------------------------
    # Summary
    # -------------------------
    @staticmethod
    def summarize(measurements: Iterable[Measurement]) -> MeasurementSummary:
        ms = list(measurements)
        ok = [m for m in ms if m.ok]

        groups: Dict[str, List[Measurement]] = {}
        for m in ok:
            groups.setdefault(m.classification, []).append(m)

        by_type: Dict[str, TypeSummary] = {}
        for label in sorted(groups):
            g = groups[label]
            by_type[label] = TypeSummary(
                count=len(g),
                total_area=round(sum(m.area["square_meters"] for m in g if m.area), 2),
                total_volume=round(sum(m.volume["cubic_meters"] for m in g if m.volume), 3),
                average_confidence=round(sum(m.confidence for m in g) / len(g), 4),
            )

        checked = [m for m in ok if m.standard_compliance.get("checked")]
        compliant = sum(1 for m in checked if m.standard_compliance.get("compliant"))

        return MeasurementSummary(
            total=len(ms),
            successful=len(ok),
            failed=len(ms) - len(ok),
            success_rate=round(len(ok) / len(ms) * 100.0, 2) if ms else 0.0,
            by_type=by_type,
            average_confidence=round(sum(m.confidence for m in ok) / len(ok), 4) if ok else 0.0,
            standard_checked=len(checked),
            standard_compliance_pct=round(compliant / len(checked) * 100.0, 2) if checked else 0.0,
            requires_review=sum(1 for m in ms if m.requires_manual_review),
            # total == sum of the rounded per-type totals, exactly
            total_area=sum((t.total_area for t in by_type.values()), 0.0),
            total_volume=sum((t.total_volume for t in by_type.values()), 0.0),
        )


# -----------------------------
# Escape-route findings
# -----------------------------
def critical_findings(measurements: Iterable[Measurement],
                      door_min_mm: float = ESCAPE_DOOR_MIN_MM,
                      corridor_min_mm: float = CORRIDOR_MIN_MM) -> List[Dict[str, Any]]:
    """Doors and corridors too narrow for an escape route. Skipped records are not checked."""
    out: List[Dict[str, Any]] = []
    for m in measurements:
        if not m.ok:
            continue
        if m.classification == "door":
            width = m.dimensions["length"]["millimeters"]
            if width < door_min_mm:
                out.append({
                    "type": "escape_route_door",
                    "severity": "critical",
                    "element_id": m.element_id,
                    "width_mm": width,
                    "required_mm": door_min_mm,
                    "standard": "ASR A2.3 / DIN EN 1125",
                    "description": f"Door width {width}mm < {door_min_mm:.0f}mm required",
                })
        elif m.classification == "corridor":
            width = m.dimensions["thickness"]["millimeters"]
            if width < corridor_min_mm:
                out.append({
                    "type": "corridor_width",
                    "severity": "high",
                    "element_id": m.element_id,
                    "width_mm": width,
                    "required_mm": corridor_min_mm,
                    "standard": "ASR A2.3",
                    "description": f"Corridor width {width}mm < {corridor_min_mm:.0f}mm required",
                })
    return out
