"""
annotation_stitcher.py — per-tile regions -> one global, non-overlapping annotation

  1) local -> global:  global_x = tile.start_x + local_x  (clamped to tile and plan)
  2) AnnotationIndex keeps DISJOINT labelled rectangles ("claims"), bucketed on a coarse grid.
     Memory follows the number of regions, never the number of pixels.
  3) conflicts: a strictly higher confidence takes the overlapping pixels; ties keep the
     first-seen claim. For unequal confidences the result does not depend on order.
  4) surviving regions of the same class whose rectangles overlap become one Element
  5) coverage = annotated / total pixels
  6) consistency: elements over 80 % of the plan area (likely stitching errors) or under 5 px
     on a side (likely noise) are reported, never dropped. Sentinel labels are not checked.
"""

from __future__ import annotations

import sys
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from plan_config import COVERAGE_THRESHOLD_PCT, INDEX_BUCKET_PX
from plan_model import (
    BoundingBox,
    CoverageReport,
    Element,
    Plan,
    Rect,
    TileAnnotation,
    is_sentinel,
    stable_id,
)


# -----------------------------
# Rectangle algebra (half-open)
# -----------------------------
def rect_area(r: Rect) -> int:
    return max(0, r[2] - r[0]) * max(0, r[3] - r[1])

def rect_intersection(a: Rect, b: Rect) -> Optional[Rect]:
    x1, y1 = max(a[0], b[0]), max(a[1], b[1])
    x2, y2 = min(a[2], b[2]), min(a[3], b[3])
    if x2 <= x1 or y2 <= y1:
        return None
    return (x1, y1, x2, y2)

def rect_subtract(a: Rect, b: Rect) -> List[Rect]:
    """a minus b as at most 4 disjoint rectangles (top, bottom, left, right bands)."""
    i = rect_intersection(a, b)
    if i is None:
        return [a]
    ax1, ay1, ax2, ay2 = a
    ix1, iy1, ix2, iy2 = i
    out = []
    if iy1 > ay1:
        out.append((ax1, ay1, ax2, iy1))
    if iy2 < ay2:
        out.append((ax1, iy2, ax2, ay2))
    if ix1 > ax1:
        out.append((ax1, iy1, ix1, iy2))
    if ix2 < ax2:
        out.append((ix2, iy1, ax2, iy2))
    return out

def bounding_rect(rects: Iterable[Rect]) -> Optional[Rect]:
    rs = list(rects)
    if not rs:
        return None
    return (min(r[0] for r in rs), min(r[1] for r in rs), max(r[2] for r in rs), max(r[3] for r in rs))


# -----------------------------
# Sparse global index
# -----------------------------
@dataclass(frozen=True)
class StitchSource:
    source_id: str
    tile_id: str
    order: int
    rect: Rect
    classification: str
    confidence: float
    edge_strength: Optional[float] = None


@dataclass
class _Claim:
    rect: Rect
    source: StitchSource


class AnnotationIndex:
    def __init__(self, width: int, height: int, bucket_size: int = INDEX_BUCKET_PX):
        if int(bucket_size) <= 0:
            raise ValueError(f"bucket_size must be positive, got {bucket_size}")
        self.width = int(width)
        self.height = int(height)
        self.bucket_size = int(bucket_size)
        self._claims: Dict[int, _Claim] = {}
        self._buckets: Dict[Tuple[int, int], Set[int]] = defaultdict(set)
        self._next_id = 0
        self.conflicts = 0

    def __len__(self) -> int:
        return len(self._claims)

    def _bucket_keys(self, r: Rect) -> Iterable[Tuple[int, int]]:
        b = self.bucket_size
        for by in range(r[1] // b, (r[3] - 1) // b + 1):
            for bx in range(r[0] // b, (r[2] - 1) // b + 1):
                yield (bx, by)

    def _add(self, rect: Rect, source: StitchSource) -> None:
        cid = self._next_id
        self._next_id += 1
        self._claims[cid] = _Claim(rect, source)
        for k in self._bucket_keys(rect):
            self._buckets[k].add(cid)

    def _remove(self, cid: int) -> _Claim:
        claim = self._claims.pop(cid)
        for k in self._bucket_keys(claim.rect):
            s = self._buckets.get(k)
            if s is not None:
                s.discard(cid)
                if not s:
                    del self._buckets[k]
        return claim

    def _overlapping(self, r: Rect) -> List[int]:
        ids: Set[int] = set()
        for k in self._bucket_keys(r):
            ids |= self._buckets.get(k, set())
        return sorted(cid for cid in ids if rect_intersection(self._claims[cid].rect, r) is not None)

    def insert(self, source: StitchSource) -> int:
        """Returns the number of pixels the source ends up owning right after insertion."""
        r = (
            max(0, source.rect[0]), max(0, source.rect[1]),
            min(self.width, source.rect[2]), min(self.height, source.rect[3]),
        )
        if rect_area(r) == 0:
            return 0

        pieces = [r]
        for cid in self._overlapping(r):
            existing = self._claims[cid]
            self.conflicts += 1
            if source.confidence > existing.source.confidence:
                self._remove(cid)
                for rest in rect_subtract(existing.rect, r):
                    self._add(rest, existing.source)
            else:
                nxt: List[Rect] = []
                for p in pieces:
                    nxt.extend(rect_subtract(p, existing.rect))
                pieces = nxt

        for p in pieces:
            self._add(p, source)
        return sum(rect_area(p) for p in pieces)

    def annotated_pixels(self) -> int:
        return sum(rect_area(c.rect) for c in self._claims.values())

    def label_at(self, x: int, y: int) -> Optional[str]:
        for cid in self._buckets.get((x // self.bucket_size, y // self.bucket_size), ()):
            r = self._claims[cid].rect
            if r[0] <= x < r[2] and r[1] <= y < r[3]:
                return self._claims[cid].source.classification
        return None

    def claims_by_source(self) -> Dict[str, List[Rect]]:
        out: Dict[str, List[Rect]] = defaultdict(list)
        for c in self._claims.values():
            out[c.source.source_id].append(c.rect)
        return dict(out)


# -----------------------------
# Consistency
# -----------------------------
OVERSIZED_PLAN_FRACTION = 0.8
UNDERSIZED_PX = 5

def consistency_issues(elements: Iterable[Element], plan: Plan) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    limit = OVERSIZED_PLAN_FRACTION * plan.total_pixels
    for el in elements:
        bb = el.bounding_box
        if bb is None or is_sentinel(el.classification):
            continue
        if bb.area > limit:
            out.append({
                "type": "oversized_element",
                "element_id": el.element_id,
                "classification": el.classification,
                "issue": f"element covers {bb.area / plan.total_pixels * 100.0:.1f}% of the plan, likely a stitching error",
            })
        if bb.width < UNDERSIZED_PX or bb.height < UNDERSIZED_PX:
            out.append({
                "type": "undersized_element",
                "element_id": el.element_id,
                "classification": el.classification,
                "issue": f"element is {bb.width}x{bb.height} px, may be noise",
            })
    return out


# -----------------------------
# Stitcher
# -----------------------------
@dataclass
class StitchResult:
    elements: List[Element]
    coverage: CoverageReport
    stats: Dict[str, Any] = field(default_factory=dict)
    index: Optional[AnnotationIndex] = None
    issues: List[Dict[str, Any]] = field(default_factory=list)


def global_sources(annotations: Iterable[TileAnnotation], plan: Plan) -> List[StitchSource]:
    out: List[StitchSource] = []
    for ann in annotations:
        if not ann.success:
            continue
        b = ann.tile.bounds
        for k, reg in enumerate(ann.regions):
            lb = reg.bounds
            x1 = max(b.start_x, b.start_x + lb.x)
            y1 = max(b.start_y, b.start_y + lb.y)
            x2 = min(b.end_x, plan.width, b.start_x + lb.x2)
            y2 = min(b.end_y, plan.height, b.start_y + lb.y2)
            if x2 <= x1 or y2 <= y1:
                continue
            out.append(StitchSource(
                source_id=f"{ann.tile_id}#{k}",
                tile_id=ann.tile_id,
                order=len(out),
                rect=(x1, y1, x2, y2),
                classification=reg.classification,
                confidence=reg.confidence,
                edge_strength=reg.edge_strength,
            ))
    return out


class _UnionFind:
    def __init__(self, n: int):
        self.parent = list(range(n))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[max(ra, rb)] = min(ra, rb)


class AnnotationStitcher:
    def __init__(self, coverage_threshold: float = COVERAGE_THRESHOLD_PCT,
                 bucket_size: int = INDEX_BUCKET_PX, verbose: bool = False):
        self.coverage_threshold = float(coverage_threshold)
        self.bucket_size = int(bucket_size)
        self.verbose = verbose

    def _group(self, survivors: List[StitchSource]) -> List[List[StitchSource]]:
        uf = _UnionFind(len(survivors))
        buckets: Dict[Tuple[str, int, int], List[int]] = defaultdict(list)
        b = self.bucket_size
        for i, s in enumerate(survivors):
            r = s.rect
            seen: Set[int] = set()
            for by in range(r[1] // b, (r[3] - 1) // b + 1):
                for bx in range(r[0] // b, (r[2] - 1) // b + 1):
                    key = (s.classification, bx, by)
                    for j in buckets[key]:
                        if j not in seen and rect_intersection(survivors[j].rect, r) is not None:
                            uf.union(i, j)
                        seen.add(j)
                    buckets[key].append(i)

        groups: Dict[int, List[StitchSource]] = defaultdict(list)
        for i, s in enumerate(survivors):
            groups[uf.find(i)].append(s)
        return [groups[k] for k in sorted(groups)]

    def stitch(self, annotations: Iterable[TileAnnotation], plan: Plan) -> StitchResult:
        annotations = list(annotations)
        skipped = sum(1 for a in annotations if not a.success)
        sources = global_sources(annotations, plan)

        index = AnnotationIndex(plan.width, plan.height, self.bucket_size)
        for s in sources:
            index.insert(s)

        claims = index.claims_by_source()
        survivors = [s for s in sources if s.source_id in claims]

        elements: List[Element] = []
        for group in self._group(survivors):
            rects = [r for s in group for r in claims[s.source_id]]
            bbox = bounding_rect(rects)
            edges = [s.edge_strength for s in group if s.edge_strength is not None]
            label = group[0].classification
            ids = sorted(s.source_id for s in group)
            elements.append(Element(
                element_id="el_" + stable_id(label, bbox, *ids),
                classification=label,
                confidence=max(s.confidence for s in group),
                bounding_box=BoundingBox.from_rect(bbox),
                pixel_area=sum(rect_area(r) for r in rects),
                source_tiles=tuple(sorted({s.tile_id for s in group})),
                edge_strength=(sum(edges) / len(edges)) if edges else None,
            ))
        elements.sort(key=lambda e: (e.bounding_box.y, e.bounding_box.x, e.classification, e.element_id))

        issues = consistency_issues(elements, plan)
        coverage = CoverageReport(
            total_pixels=plan.total_pixels,
            annotated_pixels=index.annotated_pixels(),
            threshold=self.coverage_threshold,
        )
        stats = {
            "skipped_failed_tiles": skipped,
            "source_regions": len(sources),
            "surviving_regions": len(survivors),
            "claims": len(index),
            "conflicts": index.conflicts,
            "elements": len(elements),
            "consistency_issues": len(issues),
        }

        if self.verbose:
            print(f"[stitch] {len(sources)} regions -> {len(elements)} elements; coverage {coverage.coverage_percentage:.2f}%")
            for issue in issues:
                print(f"[stitch] {issue['type']} {issue['element_id']}: {issue['issue']}")
        if not coverage.complete:
            print(
                f"[stitch] WARNING: coverage {coverage.coverage_percentage:.2f}% below "
                f"{coverage.threshold:.1f}% ({coverage.missing_pixels} pixels unannotated)",
                file=sys.stderr,
            )

        return StitchResult(elements=elements, coverage=coverage, stats=stats, index=index, issues=issues)
