"""
scale_resolver.py — drawing scale (1:N) detection + pixel calibration

Two independent questions:
  1) WHICH ratio does the plan declare?   -> OCR of the footer (then title block, legend, bottom strip)
  2) HOW MANY raster pixels is one paper millimetre?
       -> detected drawing frame vs ISO 216 sheet minus ISO 5457 margins
       -> falls back to DPI when no trustworthy frame is found

pixels_per_millimeter (real-world mm) = pixels_per_paper_mm / ratio

RULES
- OCR trouble never fails a run. Every attempt that does not yield a notation is recorded
  as a warning; when all locations fail the configured default is used with estimated=True.
- The frame is only trusted when both axes agree and it roughly matches the DPI.
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from plan_config import DEFAULT_SCALE_RATIO, MIN_OCR_CONFIDENCE
from plan_model import Plan, Rect, Scale, ScaleDetectionFailure
from plan_ocr import SCALE_WHITELIST, to_gray


# -----------------------------
# Search locations (fractions of the page: x1, y1, x2, y2)
# -----------------------------
FOOTER_REGION = (0.75, 0.92, 1.0, 1.0)

SCALE_REGIONS: Tuple[Tuple[str, Tuple[float, float, float, float]], ...] = (
    ("footer", FOOTER_REGION),
    ("title_block", (0.60, 0.75, 1.0, 1.0)),
    ("legend", (0.70, 0.0, 1.0, 0.25)),
    ("bottom_strip", (0.0, 0.90, 1.0, 1.0)),
)

MIN_RATIO = 1
MAX_RATIO = 5000
COMMON_RATIOS = (1, 2, 5, 10, 20, 25, 50, 100, 200, 250, 500, 1000, 2000, 2500, 5000)


# -----------------------------
# Notation parsing
# -----------------------------
_ONE = r"([1Il|])"
_SEP = r"\s*[:;]\s*"
_N = r"(\d{1,5})(?!\d)"

SCALE_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("massstab", re.compile(r"ma(?:ß|ss|b|s)stab\s*[:.]?\s*" + _ONE + _SEP + _N, re.IGNORECASE)),
    ("scale", re.compile(r"scale\s*[:.]?\s*" + _ONE + _SEP + _N, re.IGNORECASE)),
    ("m", re.compile(r"\bM\s*[:.]?\s*" + _ONE + _SEP + _N)),
    ("ratio", re.compile(r"(?<![\d])" + _ONE + _SEP + _N)),
)


@dataclass(frozen=True)
class ScaleMatch:
    ratio: int
    notation: str
    pattern: str
    warning: Optional[str] = None


def parse_scale_notation(text: str) -> Optional[ScaleMatch]:
    """
    First pattern (in priority order) with a ratio inside 1..5000 wins.
    OCR confusions l / I / | for the leading 1 and ';' for ':' are accepted.
    """
    if not text:
        return None
    for name, rx in SCALE_PATTERNS:
        for m in rx.finditer(text):
            n = int(m.group(2))
            if n < MIN_RATIO or n > MAX_RATIO:
                continue
            warn = None
            if n not in COMMON_RATIOS:
                warn = f"uncommon scale ratio 1:{n}"
            return ScaleMatch(ratio=n, notation=f"1:{n}", pattern=name, warning=warn)
    return None


# -----------------------------
# Sheet sizes / frame
# -----------------------------
ISO_SHEETS_MM = {
    "A0": (841.0, 1189.0),
    "A1": (594.0, 841.0),
    "A2": (420.0, 594.0),
    "A3": (297.0, 420.0),
    "A4": (210.0, 297.0),
}
BINDING_MARGIN_MM = 20.0
EDGE_MARGIN_MM = 10.0

SHEET_MATCH_TOLERANCE = 0.15
FRAME_AXIS_TOLERANCE = 0.05
FRAME_DPI_TOLERANCE = 0.15
FRAME_MIN_PAGE_FRACTION = 0.40
FRAME_MAX_SIDE_PX = 2400

MM_PER_INCH = 25.4


def nearest_sheet(width_mm: float, height_mm: float) -> Tuple[Optional[str], float, float, float]:
    """Returns (name, sheet_w_mm, sheet_h_mm, relative_error), oriented like the raster."""
    best: Tuple[Optional[str], float, float, float] = (None, 0.0, 0.0, float("inf"))
    for name, (a, b) in ISO_SHEETS_MM.items():
        for sw, sh in ((a, b), (b, a)):
            err = max(abs(width_mm - sw) / sw, abs(height_mm - sh) / sh)
            if err < best[3]:
                best = (name, sw, sh, err)
    return best

def frame_extent_mm(sheet_w_mm: float, sheet_h_mm: float) -> Tuple[float, float]:
    # binding edge on the left
    return (
        sheet_w_mm - BINDING_MARGIN_MM - EDGE_MARGIN_MM,
        sheet_h_mm - 2 * EDGE_MARGIN_MM,
    )

def _adaptive_inv(gray: np.ndarray) -> np.ndarray:
    return cv2.adaptiveThreshold(
        gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY_INV, 31, 10
    )

def build_frame_mask(gray: np.ndarray) -> np.ndarray:
    """Long horizontal + vertical strokes only (frame, grid lines); text and hatching drop out."""
    h, w = gray.shape[:2]
    bw = _adaptive_inv(gray)

    hk = max(25, w // 18)
    vk = max(25, h // 18)

    horiz = cv2.morphologyEx(
        bw, cv2.MORPH_OPEN,
        cv2.getStructuringElement(cv2.MORPH_RECT, (hk, 1)),
        iterations=1
    )
    vert = cv2.morphologyEx(
        bw, cv2.MORPH_OPEN,
        cv2.getStructuringElement(cv2.MORPH_RECT, (1, vk)),
        iterations=1
    )
    mask = cv2.bitwise_or(horiz, vert)
    mask = cv2.dilate(mask, np.ones((3, 3), np.uint8), iterations=1)
    return mask

def detect_drawing_frame(gray: np.ndarray, max_side: int = FRAME_MAX_SIDE_PX) -> Optional[Rect]:
    gray = to_gray(gray)
    h, w = gray.shape[:2]
    if h < 50 or w < 50:
        return None

    s = min(1.0, float(max_side) / float(max(h, w)))
    small = gray if s >= 1.0 else cv2.resize(gray, None, fx=s, fy=s, interpolation=cv2.INTER_AREA)
    sh, sw = small.shape[:2]

    mask = build_frame_mask(small)
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    best = None
    best_area = 0
    for c in contours:
        x, y, cw, ch = cv2.boundingRect(c)
        area = cw * ch
        if area > best_area:
            best, best_area = (x, y, cw, ch), area

    if best is None or best_area < FRAME_MIN_PAGE_FRACTION * sw * sh:
        return None

    x, y, cw, ch = best
    return (
        int(round(x / s)), int(round(y / s)),
        int(round((x + cw) / s)), int(round((y + ch) / s)),
    )

def calibrate_pixels_per_millimeter(
    plan: Plan, ratio: int, gray: Optional[np.ndarray] = None, use_frame: bool = True
) -> Tuple[float, str, Optional[float], Optional[str], List[str]]:
    """
    Returns (pixels_per_millimeter, method, deviation_vs_dpi, sheet, warnings).
    method is "frame" when the drawn frame was trusted, else "dpi".
    """
    warnings: List[str] = []
    dpi_px_per_paper_mm = plan.dpi / MM_PER_INCH
    fallback = dpi_px_per_paper_mm / ratio

    name, sw, sh, err = nearest_sheet(plan.width / dpi_px_per_paper_mm, plan.height / dpi_px_per_paper_mm)
    if err > SHEET_MATCH_TOLERANCE:
        name = None

    if not use_frame or gray is None:
        return (fallback, "dpi", None, name, warnings)

    if name is None:
        warnings.append("frame calibration rejected: page size matches no ISO 216 sheet")
        return (fallback, "dpi", None, None, warnings)

    frame = detect_drawing_frame(gray)
    if frame is None:
        warnings.append("frame calibration rejected: no drawing frame found")
        return (fallback, "dpi", None, name, warnings)

    fw_mm, fh_mm = frame_extent_mm(sw, sh)
    x1, y1, x2, y2 = frame
    px_x = (x2 - x1) / fw_mm
    px_y = (y2 - y1) / fh_mm
    mean = (px_x + px_y) / 2.0

    if abs(px_x - px_y) / mean > FRAME_AXIS_TOLERANCE:
        warnings.append(f"frame calibration rejected: axes disagree ({px_x:.4f} vs {px_y:.4f} px/mm)")
        return (fallback, "dpi", None, name, warnings)

    deviation = abs(mean - dpi_px_per_paper_mm) / dpi_px_per_paper_mm
    if deviation > FRAME_DPI_TOLERANCE:
        warnings.append(f"frame calibration rejected: {deviation * 100:.1f}% off the DPI value")
        return (fallback, "dpi", deviation, name, warnings)

    return (mean / ratio, "frame", deviation, name, warnings)


# -----------------------------
# Resolver
# -----------------------------
def region_rect(plan: Plan, frac: Sequence[float]) -> Rect:
    fx1, fy1, fx2, fy2 = frac
    x1 = int(plan.width * fx1)
    y1 = int(plan.height * fy1)
    x2 = max(x1 + 1, min(plan.width, int(round(plan.width * fx2))))
    y2 = max(y1 + 1, min(plan.height, int(round(plan.height * fy2))))
    return (min(x1, plan.width - 1), min(y1, plan.height - 1), x2, y2)

def _ocr_fields(res: Any) -> Tuple[str, float]:
    if res is None:
        return ("", 0.0)
    if isinstance(res, dict):
        text, conf = res.get("text", ""), res.get("confidence", 0.0)
    else:
        text, conf = getattr(res, "text", ""), getattr(res, "confidence", 0.0)
    conf = float(conf or 0.0)
    if conf > 1.0:
        conf = conf / 100.0
    return (str(text or ""), max(0.0, min(1.0, conf)))


class ScaleResolver:
    def __init__(
        self,
        ocr: Any = None,
        default_ratio: int = DEFAULT_SCALE_RATIO,
        min_ocr_confidence: float = MIN_OCR_CONFIDENCE,
        calibrate_frame: bool = True,
        verbose: bool = False,
    ):
        self.ocr = ocr
        self.default_ratio = int(default_ratio)
        self.min_ocr_confidence = float(min_ocr_confidence)
        self.calibrate_frame = calibrate_frame
        self.verbose = verbose

    def _read_region(self, gray: np.ndarray, plan: Plan, name: str,
                     frac: Sequence[float]) -> Tuple[ScaleMatch, str, float]:
        if self.ocr is None:
            raise ScaleDetectionFailure(f"{name}: no OCR backend")
        x1, y1, x2, y2 = region_rect(plan, frac)
        crop = gray[y1:y2, x1:x2]
        try:
            res = self.ocr.ocr(crop, SCALE_WHITELIST)
        except Exception as e:
            raise ScaleDetectionFailure(f"{name}: OCR error: {e}") from e

        text, conf = _ocr_fields(res)
        if not text.strip():
            raise ScaleDetectionFailure(f"{name}: no text")
        if conf < self.min_ocr_confidence:
            raise ScaleDetectionFailure(f"{name}: OCR confidence {conf:.2f} below {self.min_ocr_confidence:.2f}")
        match = parse_scale_notation(text)
        if match is None:
            raise ScaleDetectionFailure(f"{name}: no scale notation in {text.strip()!r}")
        return (match, text, conf)

    def resolve_scale(self, plan: Plan, image: Any) -> Scale:
        gray = to_gray(image) if image is not None else None
        failures: List[str] = []

        for name, frac in SCALE_REGIONS:
            if gray is None:
                failures.append(f"{name}: no image")
                break
            try:
                match, text, conf = self._read_region(gray, plan, name, frac)
            except ScaleDetectionFailure as e:
                failures.append(str(e))
                if self.verbose:
                    print(f"[scale] {e}")
                continue

            ppmm, method, dev, sheet, cal_warn = calibrate_pixels_per_millimeter(
                plan, match.ratio, gray, use_frame=self.calibrate_frame
            )
            warnings = list(failures) + cal_warn
            if match.warning:
                warnings.append(match.warning)
            if self.verbose:
                print(f"[scale] {match.notation} from {name} (conf {conf:.2f}, {method}: {ppmm:.5f} px/mm)")
            return Scale(
                notation=match.notation,
                ratio=match.ratio,
                pixels_per_millimeter=ppmm,
                estimated=False,
                source=name,
                ocr_text=text.strip(),
                ocr_confidence=round(conf, 4),
                calibration=method,
                calibration_deviation=dev,
                sheet=sheet,
                warnings=tuple(warnings),
            )

        ratio = self.default_ratio
        ppmm, method, dev, sheet, cal_warn = calibrate_pixels_per_millimeter(
            plan, ratio, gray, use_frame=self.calibrate_frame
        )
        print(f"[scale] WARNING: no scale notation found; using default 1:{ratio} (estimated)", file=sys.stderr)
        return Scale(
            notation=f"1:{ratio}",
            ratio=ratio,
            pixels_per_millimeter=ppmm,
            estimated=True,
            source="default",
            calibration=method,
            calibration_deviation=dev,
            sheet=sheet,
            warnings=tuple(failures + cal_warn),
        )


def manual_scale(plan: Plan, notation: str, image: Any = None, calibrate_frame: bool = True) -> Scale:
    """User-supplied notation ("1:50", "M 1:50" or just "50"); still calibrated against the frame."""
    raw = str(notation).strip()
    match = parse_scale_notation(raw if ":" in raw or ";" in raw else f"1:{raw}")
    if match is None:
        raise ValueError(f"Invalid scale notation: {notation!r} (expected 1:N with N in {MIN_RATIO}..{MAX_RATIO})")
    gray = to_gray(image) if image is not None else None
    ppmm, method, dev, sheet, cal_warn = calibrate_pixels_per_millimeter(plan, match.ratio, gray, use_frame=calibrate_frame)
    warnings = list(cal_warn)
    if match.warning:
        warnings.append(match.warning)
    return Scale(
        notation=match.notation,
        ratio=match.ratio,
        pixels_per_millimeter=ppmm,
        estimated=False,
        source="manual",
        ocr_text=raw,
        ocr_confidence=1.0,
        calibration=method,
        calibration_deviation=dev,
        sheet=sheet,
        warnings=tuple(warnings),
    )
