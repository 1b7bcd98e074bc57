#!/usr/bin/env python3
"""
plan_measure.py — construction plan raster -> calibrated element measurements (CLI + pipeline)

PIPELINE
  load plan (PDF page via pdf2image, raster via Pillow)
    -> ScaleResolver           scale notation + pixels per millimetre
    -> TileGrid                overlapping tiles, coverage proof
    -> TileAnalysisCoordinator batched classifier calls (failures isolated per tile)
    -> AnnotationStitcher      one global annotation, no double-counted overlap
    -> MeasurementEngine       mm / m² / m³, tolerance bands, confidence, DIN catalog
    -> report.json + report.md + audit.ndjson

DEGRADED RUNS STILL PRODUCE A REPORT
- estimated scale, rejected frame calibration, failed tiles, low coverage, skipped measurements
  and cancellation are listed under "flags". Only an unloadable plan stops a run.

WORKFLOW (typical)
  python plan_measure.py scale plan.pdf
  python plan_measure.py tiles plan.pdf --profile max
  python plan_measure.py measure plan.pdf --out out/plan1 --verbose
  python plan_measure.py measure plan.png --out out/plan2 --scale 1:50 --strict-coverage
  python plan_measure.py report out/plan1/report.json

Install minimum:
  pip install numpy opencv-python-headless Pillow pytesseract pdf2image tabulate
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError
from tabulate import tabulate

from annotation_stitcher import AnnotationStitcher
from measurement_engine import MeasurementEngine, critical_findings
from plan_config import DEFAULT_DPI, PipelineConfig, load_config
from plan_model import (
    PIPELINE_VERSION,
    AuditLogger,
    CoverageReport,
    Element,
    Measurement,
    MeasurementSummary,
    Plan,
    PlanLoadError,
    Scale,
    ensure_dir,
    now_iso,
    read_json,
    write_json,
    write_text,
)
from plan_ocr import TesseractOcr, scan_dimension_annotations
from scale_resolver import ScaleResolver, manual_scale
from tile_analysis import RuleBasedClassifier, TileAnalysisCoordinator, TileAnalysisResult
from tile_grid import TileGrid, crop_tile


MAX_PLAN_PIXELS = 400_000_000
EDGE_STRENGTH_MAX_PIXELS = 4_000_000

Image.MAX_IMAGE_PIXELS = MAX_PLAN_PIXELS


# -----------------------------
# Plan loading
# -----------------------------
def try_import_pdf2image():
    try:
        import pdf2image  # type: ignore
        return pdf2image
    except Exception:
        return None


@dataclass
class PlanRaster:
    plan: Plan
    gray: np.ndarray

    @staticmethod
    def from_array(arr: np.ndarray, dpi: int = DEFAULT_DPI, source: str = "<array>") -> "PlanRaster":
        arr = np.asarray(arr)
        if arr.ndim == 3:
            arr = cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)
        if arr.ndim != 2 or arr.size == 0:
            raise PlanLoadError(f"Not a 2-D raster: shape {arr.shape}")
        h, w = arr.shape[:2]
        return PlanRaster(Plan(width=w, height=h, dpi=int(dpi), format="array", source=source), arr.astype(np.uint8))


def load_plan(path: Union[str, Path], dpi: Optional[int] = None, page: int = 1) -> PlanRaster:
    p = Path(path)
    if not p.exists():
        raise PlanLoadError(f"Plan not found: {p}")

    if p.suffix.lower() == ".pdf":
        pdf2image = try_import_pdf2image()
        if pdf2image is None:
            raise PlanLoadError("PDF plans need pdf2image. Install: pip install pdf2image (and poppler).")
        render_dpi = int(dpi or DEFAULT_DPI)
        try:
            imgs = pdf2image.convert_from_path(str(p), dpi=render_dpi, first_page=int(page), last_page=int(page))
        except Exception as e:
            raise PlanLoadError(f"Could not render {p} page {page}: {e}") from e
        if not imgs:
            raise PlanLoadError(f"No page {page} in {p}")
        img, fmt = imgs[0], "pdf"
    else:
        try:
            img = Image.open(p)
            img.load()
        except (OSError, UnidentifiedImageError, Image.DecompressionBombError) as e:
            raise PlanLoadError(f"Could not read raster {p}: {e}") from e
        fmt = (img.format or p.suffix.lstrip(".")).lower()
        info_dpi = img.info.get("dpi")
        render_dpi = int(dpi or (round(float(info_dpi[0])) if info_dpi and info_dpi[0] else 0) or DEFAULT_DPI)

    gray = np.array(img.convert("L"))
    h, w = gray.shape[:2]
    if w == 0 or h == 0:
        raise PlanLoadError(f"Empty raster: {p}")
    plan = Plan(width=w, height=h, dpi=render_dpi, format=fmt, source=str(p))
    return PlanRaster(plan=plan, gray=gray)


# -----------------------------
# Element evidence
# -----------------------------
def border_edge_strength(gray: np.ndarray, rect, pad: int = 2) -> Optional[float]:
    x1, y1, x2, y2 = rect
    h, w = gray.shape[:2]
    cx1, cy1 = max(0, x1 - pad), max(0, y1 - pad)
    cx2, cy2 = min(w, x2 + pad), min(h, y2 + pad)
    if (cx2 - cx1) * (cy2 - cy1) > EDGE_STRENGTH_MAX_PIXELS or cx2 - cx1 < 3 or cy2 - cy1 < 3:
        return None

    crop = gray[cy1:cy2, cx1:cx2]
    near = cv2.dilate(cv2.Canny(crop, 60, 160), np.ones((3, 3), np.uint8))
    bx1, by1 = x1 - cx1, y1 - cy1
    bx2, by2 = min(near.shape[1], x2 - cx1) - 1, min(near.shape[0], y2 - cy1) - 1
    ring = np.concatenate([
        near[by1, bx1:bx2 + 1], near[by2, bx1:bx2 + 1],
        near[by1:by2 + 1, bx1], near[by1:by2 + 1, bx2],
    ])
    if ring.size == 0:
        return None
    return round(float(np.count_nonzero(ring)) / float(ring.size), 4)

def attach_edge_strength(elements: List[Element], gray: np.ndarray) -> List[Element]:
    out = []
    for el in elements:
        if el.edge_strength is None and el.bounding_box is not None:
            el = dataclasses.replace(el, edge_strength=border_edge_strength(gray, el.bounding_box.as_rect()))
        out.append(el)
    return out


# -----------------------------
# Pipeline
# -----------------------------
@dataclass
class PipelineReport:
    plan: Plan
    scale: Scale
    grid: Dict[str, Any]
    analysis: TileAnalysisResult
    coverage: CoverageReport
    elements: List[Element]
    measurements: List[Measurement]
    summary: MeasurementSummary
    flags: List[str] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    stitch_stats: Dict[str, Any] = field(default_factory=dict)
    dimension_annotations: List[Any] = field(default_factory=list)
    consistency_issues: List[Dict[str, Any]] = field(default_factory=list)
    critical_findings: List[Dict[str, Any]] = field(default_factory=list)
    config: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)

    def to_json(self) -> Dict[str, Any]:
        return {
            "version": PIPELINE_VERSION,
            "created_at": self.created_at,
            "plan": self.plan.to_json(),
            "scale": self.scale.to_json(),
            "grid": self.grid,
            "analysis": self.analysis.to_json(),
            "coverage": self.coverage.to_json(),
            "stitch": self.stitch_stats,
            "elements": [e.to_json() for e in self.elements],
            "measurements": [m.to_json() for m in self.measurements],
            "summary": self.summary.to_json(),
            "critical_findings": list(self.critical_findings),
            "consistency_issues": list(self.consistency_issues),
            "dimension_annotations": [a.to_json() for a in self.dimension_annotations],
            "flags": list(self.flags),
            "timings": self.timings,
            "config": self.config,
        }


class PlanMeasurementPipeline:
    def __init__(self, config: Optional[PipelineConfig] = None, classifier: Any = None,
                 ocr: Any = None, audit: Optional[AuditLogger] = None):
        self.config = (config or PipelineConfig()).validate()
        self.classifier = classifier
        self.ocr = ocr
        self.audit = audit

    def _log(self, event: str, payload: Dict[str, Any]) -> None:
        if self.audit is not None:
            self.audit.log(event, payload)

    def _get_ocr(self) -> Any:
        if self.ocr is None:
            try:
                self.ocr = TesseractOcr(lang=self.config.ocr_lang, tesseract_cmd=self.config.tesseract_cmd)
            except RuntimeError as e:
                print(f"[scale] WARNING: {e}", file=sys.stderr)
                return None
        return self.ocr

    def resolve_scale(self, raster: PlanRaster, scale: Union[Scale, str, None] = None) -> Scale:
        cfg = self.config
        if isinstance(scale, Scale):
            return scale
        if scale:
            return manual_scale(raster.plan, str(scale), raster.gray, calibrate_frame=cfg.calibrate_frame)
        resolver = ScaleResolver(
            ocr=self._get_ocr(),
            default_ratio=cfg.default_scale_ratio,
            min_ocr_confidence=cfg.min_ocr_confidence,
            calibrate_frame=cfg.calibrate_frame,
            verbose=cfg.verbose,
        )
        return resolver.resolve_scale(raster.plan, raster.gray)

    def run(self, raster: PlanRaster, progress: Optional[Callable[[int, int], Any]] = None,
            scale: Union[Scale, str, None] = None) -> PipelineReport:
        cfg = self.config
        plan, gray = raster.plan, raster.gray
        timings: Dict[str, float] = {}
        self._log("run_start", {"plan": plan.to_json(), "config": cfg.to_json()})

        t0 = time.perf_counter()
        sc = self.resolve_scale(raster, scale)
        timings["scale_s"] = round(time.perf_counter() - t0, 4)
        self._log("scale", sc.to_json())

        t0 = time.perf_counter()
        grid = TileGrid(plan, cfg.tile_size, cfg.overlap)
        grid_info = grid.to_json()
        grid_info["uncovered_pixels"] = grid.uncovered_pixels()
        timings["tiles_s"] = round(time.perf_counter() - t0, 4)
        if cfg.verbose:
            print(f"[tiles] {grid.tiles_x}x{grid.tiles_y} = {len(grid)} tiles ({cfg.tile_size}px, overlap {cfg.overlap}px)")
        self._log("tiles", grid_info)

        classifier = self.classifier or RuleBasedClassifier(
            pixels_per_millimeter=sc.pixels_per_millimeter,
            label_background=cfg.label_background,
        )
        context = {
            "pixels_per_millimeter": sc.pixels_per_millimeter,
            "scale": sc.notation,
            "dpi": plan.dpi,
        }
        t0 = time.perf_counter()
        coordinator = TileAnalysisCoordinator(cfg.batch_size, cfg.max_workers, verbose=cfg.verbose)
        analysis = coordinator.analyze_all(grid.tiles, classifier, lambda t: crop_tile(gray, t), context, progress)
        timings["analysis_s"] = round(time.perf_counter() - t0, 4)
        self._log("analysis", analysis.to_json())

        t0 = time.perf_counter()
        stitcher = AnnotationStitcher(cfg.coverage_threshold, cfg.index_bucket_px, verbose=cfg.verbose)
        stitched = stitcher.stitch(analysis.annotations, plan)
        elements = attach_edge_strength(stitched.elements, gray)
        timings["stitch_s"] = round(time.perf_counter() - t0, 4)
        self._log("stitch", {"coverage": stitched.coverage.to_json(), "stats": stitched.stats})

        dims: List[Any] = []
        if cfg.dimension_text:
            ocr = self._get_ocr()
            if ocr is not None:
                t0 = time.perf_counter()
                dims = scan_dimension_annotations(gray, grid.tiles, ocr, threads=cfg.max_workers)
                timings["dimension_text_s"] = round(time.perf_counter() - t0, 4)
                self._log("dimension_text", {"count": len(dims)})

        t0 = time.perf_counter()
        engine = MeasurementEngine(assumed_heights_mm=cfg.assumed_heights_mm, verbose=cfg.verbose)
        measurements = engine.measure(elements, sc, dims)
        summary = engine.summarize(measurements)
        findings = critical_findings(measurements)
        for f in findings:
            print(f"[measure] CRITICAL: {f['element_id']} {f['description']} ({f['standard']})", file=sys.stderr)
        timings["measure_s"] = round(time.perf_counter() - t0, 4)
        self._log("measure", summary.to_json())

        flags: List[str] = []
        if sc.estimated:
            flags.append("estimated_scale")
        if any(w.startswith("frame calibration rejected") for w in sc.warnings):
            flags.append("frame_calibration_rejected")
        if analysis.failed:
            flags.append("tile_failures")
        if not stitched.coverage.complete:
            flags.append("coverage_incomplete")
        if summary.failed:
            flags.append("skipped_measurements")
        if stitched.issues:
            flags.append("consistency_issues")
        if findings:
            flags.append("critical_findings")
        if analysis.cancelled:
            flags.append("cancelled")
        self._log("run_done", {"flags": flags, "critical_findings": findings, "timings": timings})

        return PipelineReport(
            plan=plan,
            scale=sc,
            grid=grid_info,
            analysis=analysis,
            coverage=stitched.coverage,
            elements=elements,
            measurements=measurements,
            summary=summary,
            flags=flags,
            timings=timings,
            stitch_stats=stitched.stats,
            dimension_annotations=dims,
            consistency_issues=stitched.issues,
            critical_findings=findings,
            config=cfg.to_json(),
        )


# -----------------------------
# Report
# -----------------------------
def render_table(rows: List[List[Any]]) -> str:
    return tabulate(rows[1:], headers=rows[0], tablefmt="github")

def _dim(m: Dict[str, Any], key: str) -> str:
    d = (m.get("dimensions") or {}).get(key)
    return "" if not d else str(d["millimeters"])

def report_markdown(report: Dict[str, Any]) -> str:
    plan = report["plan"]
    sc = report["scale"]
    cov = report["coverage"]
    summ = report["summary"]

    lines: List[str] = []
    lines.append("# Plan Measurement Report")
    lines.append("")
    lines.append(f"- Pipeline version: {report.get('version', PIPELINE_VERSION)}")
    lines.append(f"- Created: {report.get('created_at', '')}")
    lines.append(f"- Plan: `{plan.get('source', '')}` ({plan['width']} x {plan['height']} px @ {plan.get('dpi')} dpi)")
    lines.append("")

    lines.append("## Flags")
    lines.append("")
    flags = report.get("flags") or []
    if flags:
        for f in flags:
            lines.append(f"- {f}")
    else:
        lines.append("- none")
    lines.append("")

    lines.append("## Critical findings")
    lines.append("")
    findings = report.get("critical_findings") or []
    if findings:
        rows = [["element", "type", "severity", "width_mm", "required_mm", "standard"]]
        for f in findings:
            rows.append([f["element_id"], f["type"], f["severity"], f["width_mm"], f["required_mm"], f["standard"]])
        lines.append(render_table(rows))
    else:
        lines.append("- none")
    lines.append("")

    issues = report.get("consistency_issues") or []
    if issues:
        lines.append("## Consistency checks")
        lines.append("")
        for i in issues:
            lines.append(f"- {i['type']} `{i['element_id']}` ({i['classification']}): {i['issue']}")
        lines.append("")

    lines.append("## Scale")
    lines.append("")
    rows = [["notation", "px/mm", "estimated", "source", "calibration", "sheet", "ocr_conf"]]
    rows.append([
        sc["notation"], f"{sc['pixels_per_millimeter']:.5f}", sc.get("estimated"), sc.get("source"),
        sc.get("calibration"), sc.get("sheet") or "", sc.get("ocr_confidence"),
    ])
    lines.append(render_table(rows))
    for w in sc.get("warnings") or []:
        lines.append(f"- WARNING: {w}")
    lines.append("")

    lines.append("## Coverage")
    lines.append("")
    rows = [["total_px", "annotated_px", "coverage_%", "threshold_%", "complete"]]
    rows.append([cov["total_pixels"], cov["annotated_pixels"], f"{cov['coverage_percentage']:.2f}",
                 cov["threshold"], cov["complete"]])
    lines.append(render_table(rows))
    analysis = report.get("analysis") or {}
    if analysis.get("failed"):
        lines.append("")
        lines.append(f"Failed tiles: {analysis['failed']} of {analysis.get('total')}")
        for f in analysis.get("failures") or []:
            lines.append(f"- {f['error']}")
    lines.append("")

    lines.append("## Summary by type")
    lines.append("")
    rows = [["type", "count", "area_m2", "volume_m3", "avg_conf"]]
    for label, t in sorted((summ.get("by_type") or {}).items()):
        rows.append([label, t["count"], f"{t['total_area']:.2f}", f"{t['total_volume']:.3f}", f"{t['average_confidence']:.2f}"])
    rows.append(["TOTAL", summ["successful"], f"{summ['total_area']:.2f}", f"{summ['total_volume']:.3f}",
                 f"{summ['average_confidence']:.2f}"])
    lines.append(render_table(rows))
    lines.append("")
    lines.append(f"- Measured: {summ['successful']} / {summ['total']} ({summ['success_rate']:.1f}%)")
    lines.append(f"- Standard compliance: {summ['standard_compliance_pct']:.1f}% of {summ['standard_checked']} checked")
    lines.append(f"- Requires manual review: {summ['requires_review']}")
    lines.append("")

    lines.append("## Measurements")
    lines.append("")
    rows = [["element", "type", "status", "length_mm", "thickness_mm", "area_m2", "volume_m3", "±mm", "conf", "review"]]
    for m in report.get("measurements") or []:
        rows.append([
            m["element_id"], m["classification"], m["status"],
            _dim(m, "length"), _dim(m, "thickness"),
            "" if not m.get("area") else f"{m['area']['square_meters']:.2f}",
            "" if not m.get("volume") else f"{m['volume']['cubic_meters']:.3f}",
            (m.get("tolerance_band") or {}).get("plus_minus_mm", ""),
            f"{m['confidence']:.2f} ({m['confidence_level']})" if m["status"] == "measured" else (m.get("reason") or ""),
            "yes" if m.get("requires_manual_review") else "",
        ])
    lines.append(render_table(rows))
    lines.append("")
    return "\n".join(lines)


# -----------------------------
# Commands
# -----------------------------
def _parse_ratio(s: Optional[str]) -> Optional[int]:
    if s is None:
        return None
    return int(str(s).strip().split(":")[-1])

def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    overrides = {
        "dpi": getattr(args, "dpi", None),
        "tile_size": getattr(args, "tile_size", None),
        "overlap": getattr(args, "overlap", None),
        "batch_size": getattr(args, "batch_size", None),
        "max_workers": getattr(args, "workers", None),
        "coverage_threshold": getattr(args, "coverage_threshold", None),
        "default_scale_ratio": _parse_ratio(getattr(args, "default_scale", None)),
        "label_background": True if getattr(args, "label_background", False) else None,
        "dimension_text": True if getattr(args, "dimension_text", False) else None,
        "verbose": True if getattr(args, "verbose", False) else None,
    }
    return load_config(getattr(args, "config", None), getattr(args, "profile", None), overrides=overrides)

def cmd_scale(args: argparse.Namespace) -> None:
    cfg = config_from_args(args)
    raster = load_plan(args.plan, dpi=args.dpi, page=args.page)
    sc = PlanMeasurementPipeline(cfg).resolve_scale(raster, args.scale)
    rows = [["notation", "px/mm", "mm/px", "estimated", "source", "calibration", "sheet"]]
    rows.append([sc.notation, f"{sc.pixels_per_millimeter:.5f}", f"{sc.millimeters_per_pixel:.3f}",
                 sc.estimated, sc.source, sc.calibration, sc.sheet or ""])
    print(render_table(rows))
    for w in sc.warnings:
        print(f"  warning: {w}")

def cmd_tiles(args: argparse.Namespace) -> None:
    cfg = config_from_args(args)
    raster = load_plan(args.plan, dpi=args.dpi, page=args.page)
    grid = TileGrid(raster.plan, cfg.tile_size, cfg.overlap)
    print(f"Plan {raster.plan.width} x {raster.plan.height} px -> {grid.tiles_x} x {grid.tiles_y} = {len(grid)} tiles "
          f"({cfg.tile_size}px, overlap {cfg.overlap}px)")
    rows = [["tile", "x1", "y1", "x2", "y2", "overlap"]]
    for t in grid.tiles[: max(0, int(args.limit))]:
        b = t.bounds
        rows.append([t.tile_id, b.start_x, b.start_y, b.end_x, b.end_y, ",".join(sorted(t.overlap_edges))])
    print(render_table(rows))
    if len(grid) > args.limit:
        print(f"... {len(grid) - args.limit} more")
    print(f"Uncovered pixels: {grid.uncovered_pixels()}")

def cmd_measure(args: argparse.Namespace) -> None:
    cfg = config_from_args(args)
    out_dir = ensure_dir(Path(args.out).resolve())
    audit = AuditLogger(out_dir / "audit.ndjson")

    raster = load_plan(args.plan, dpi=args.dpi, page=args.page)
    audit.log("load", raster.plan.to_json())

    pipeline = PlanMeasurementPipeline(cfg, audit=audit)
    report = pipeline.run(raster, scale=args.scale)
    data = report.to_json()

    json_path = out_dir / "report.json"
    md_path = out_dir / "report.md"
    write_json(json_path, data)
    write_text(md_path, report_markdown(data))
    audit.log("report", {"json": str(json_path), "markdown": str(md_path)})

    s = report.summary
    print(f"Scale {report.scale.notation}{' (estimated)' if report.scale.estimated else ''}; "
          f"coverage {report.coverage.coverage_percentage:.2f}%; "
          f"{s.successful}/{s.total} elements measured")
    if report.flags:
        print(f"Flags: {', '.join(report.flags)}")
    print(f"Wrote {json_path}")
    print(f"Wrote {md_path}")

    if args.strict_coverage and not report.coverage.complete:
        print(f"ERROR: coverage {report.coverage.coverage_percentage:.2f}% below "
              f"{report.coverage.threshold:.1f}%", file=sys.stderr)
        raise SystemExit(2)

def cmd_report(args: argparse.Namespace) -> None:
    src = Path(args.report).resolve()
    data = read_json(src)
    out = Path(args.out) if args.out else src.with_suffix(".md")
    write_text(out, report_markdown(data))
    print(f"Wrote {out}")


# -----------------------------
# CLI plumbing
# -----------------------------
def _add_plan_args(s: argparse.ArgumentParser) -> None:
    s.add_argument("plan", help="Plan path (PDF/PNG/JPG/TIFF).")
    s.add_argument("--page", type=int, default=1, help="PDF page (1-based).")
    s.add_argument("--dpi", type=int, default=None, help="Render DPI for PDFs / override for rasters.")
    s.add_argument("--profile", default=None, choices=["fast", "standard", "max"])
    s.add_argument("--config", default=None, help="JSON config file.")
    s.add_argument("--verbose", action="store_true")

def build_cli() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="plan-measure", description="Construction plan measurement pipeline.")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("scale", help="Detect the drawing scale.")
    _add_plan_args(s)
    s.add_argument("--scale", default=None, help="Use this notation instead of OCR (e.g. 1:50).")
    s.add_argument("--default-scale", default=None, help="Fallback when no notation is found (e.g. 1:100).")
    s.set_defaults(func=cmd_scale)

    s = sub.add_parser("tiles", help="Show the tile grid and its coverage check.")
    _add_plan_args(s)
    s.add_argument("--tile-size", type=int, default=None)
    s.add_argument("--overlap", type=int, default=None)
    s.add_argument("--limit", type=int, default=20, help="Tiles to list.")
    s.set_defaults(func=cmd_tiles)

    s = sub.add_parser("measure", help="Run the full pipeline and write report.json / report.md.")
    _add_plan_args(s)
    s.add_argument("--out", required=True, help="Output directory.")
    s.add_argument("--scale", default=None, help="Use this notation instead of OCR (e.g. 1:50).")
    s.add_argument("--default-scale", default=None, help="Fallback when no notation is found (e.g. 1:100).")
    s.add_argument("--tile-size", type=int, default=None)
    s.add_argument("--overlap", type=int, default=None)
    s.add_argument("--batch-size", type=int, default=None)
    s.add_argument("--workers", type=int, default=None)
    s.add_argument("--coverage-threshold", type=float, default=None)
    s.add_argument("--label-background", action="store_true", help="Classifier labels unmarked tile area as irrelevant.")
    s.add_argument("--dimension-text", action="store_true", help="OCR dimension text to cross-check measurements.")
    s.add_argument("--strict-coverage", action="store_true", help="Exit 2 when coverage is below the threshold.")
    s.set_defaults(func=cmd_measure)

    s = sub.add_parser("report", help="Regenerate report.md from a report.json.")
    s.add_argument("report", help="report.json path.")
    s.add_argument("--out", default="", help="Markdown path (default: next to the JSON).")
    s.set_defaults(func=cmd_report)

    return p

def main(argv: Optional[List[str]] = None) -> None:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_cli()
    args = parser.parse_args(argv)
    try:
        args.func(args)
    except PlanLoadError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        raise SystemExit(1)

if __name__ == "__main__":
    main()
