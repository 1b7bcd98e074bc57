"""
tile_grid.py — deterministic overlapping tile grid over a plan raster

  step     = tile_size - overlap
  tiles_x  = ceil(width / step)          tiles_y = ceil(height / step)
  start    = index * step                end     = min(start + tile_size, edge)

Every pixel lies in at least one tile whenever 0 <= overlap < tile_size.
Tiles are generated row-major; ids are "tile_{x}_{y}".
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from plan_model import PixelBounds, Plan, Rect, Tile


def _check_grid_args(tile_size: int, overlap: int) -> None:
    if int(tile_size) <= 0:
        raise ValueError(f"tile_size must be positive, got {tile_size}")
    if not (0 <= int(overlap) < int(tile_size)):
        raise ValueError(f"overlap must satisfy 0 <= overlap < tile_size, got {overlap} / {tile_size}")

def grid_dimensions(width: int, height: int, tile_size: int, overlap: int) -> Tuple[int, int]:
    _check_grid_args(tile_size, overlap)
    step = tile_size - overlap
    return (math.ceil(width / step), math.ceil(height / step))

def overlap_edges(gx: int, gy: int, tiles_x: int, tiles_y: int) -> frozenset:
    edges = set()
    if gx > 0:
        edges.add("left")
    if gx < tiles_x - 1:
        edges.add("right")
    if gy > 0:
        edges.add("top")
    if gy < tiles_y - 1:
        edges.add("bottom")
    return frozenset(edges)

def generate_tiles(plan: Plan, tile_size: int, overlap: int) -> List[Tile]:
    tiles_x, tiles_y = grid_dimensions(plan.width, plan.height, tile_size, overlap)
    step = tile_size - overlap

    tiles: List[Tile] = []
    for gy in range(tiles_y):
        sy = gy * step
        ey = min(sy + tile_size, plan.height)
        for gx in range(tiles_x):
            sx = gx * step
            ex = min(sx + tile_size, plan.width)
            tiles.append(Tile(
                tile_id=f"tile_{gx}_{gy}",
                index=len(tiles),
                grid_x=gx,
                grid_y=gy,
                bounds=PixelBounds(sx, sy, ex, ey),
                overlap_edges=overlap_edges(gx, gy, tiles_x, tiles_y),
            ))
    return tiles


class TileGrid:
    def __init__(self, plan: Plan, tile_size: int, overlap: int):
        self.plan = plan
        self.tile_size = int(tile_size)
        self.overlap = int(overlap)
        self.tiles_x, self.tiles_y = grid_dimensions(plan.width, plan.height, self.tile_size, self.overlap)
        self.tiles = generate_tiles(plan, self.tile_size, self.overlap)
        self._by_id: Dict[str, Tile] = {t.tile_id: t for t in self.tiles}

    def __len__(self) -> int:
        return len(self.tiles)

    def __iter__(self) -> Iterator[Tile]:
        return iter(self.tiles)

    def get(self, tile_id: str) -> Optional[Tile]:
        return self._by_id.get(tile_id)

    def at(self, gx: int, gy: int) -> Tile:
        if not (0 <= gx < self.tiles_x and 0 <= gy < self.tiles_y):
            raise IndexError(f"grid position ({gx}, {gy}) outside {self.tiles_x}x{self.tiles_y}")
        return self.tiles[gy * self.tiles_x + gx]

    def uncovered_pixels(self) -> int:
        return uncovered_pixels(self.plan, self.tiles)

    def to_json(self) -> Dict[str, object]:
        return {
            "tile_size": self.tile_size,
            "overlap": self.overlap,
            "tiles_x": self.tiles_x,
            "tiles_y": self.tiles_y,
            "count": len(self.tiles),
        }


# -----------------------------
# Coverage helpers (no dense mask)
# -----------------------------
def union_area(rects: Iterable[Rect]) -> int:
    """Area of the union of half-open rectangles: x-sweep over merged y-intervals."""
    rs = [r for r in rects if r[2] > r[0] and r[3] > r[1]]
    if not rs:
        return 0
    xs = sorted({r[0] for r in rs} | {r[2] for r in rs})
    total = 0
    for xa, xb in zip(xs, xs[1:]):
        spans = sorted((r[1], r[3]) for r in rs if r[0] <= xa and r[2] >= xb)
        if not spans:
            continue
        covered = 0
        cy1, cy2 = spans[0]
        for y1, y2 in spans[1:]:
            if y1 > cy2:
                covered += cy2 - cy1
                cy1, cy2 = y1, y2
            else:
                cy2 = max(cy2, y2)
        covered += cy2 - cy1
        total += covered * (xb - xa)
    return total

def clamp_rect(r: Sequence[int], w: int, h: int) -> Rect:
    x1, y1, x2, y2 = (int(v) for v in r)
    x1 = max(0, min(w, x1))
    y1 = max(0, min(h, y1))
    x2 = max(x1, min(w, x2))
    y2 = max(y1, min(h, y2))
    return (x1, y1, x2, y2)

def uncovered_pixels(plan: Plan, tiles: Iterable[Tile]) -> int:
    rects = [clamp_rect(t.bounds.as_rect(), plan.width, plan.height) for t in tiles]
    return plan.total_pixels - union_area(rects)

def crop_tile(raster: np.ndarray, tile: Tile) -> np.ndarray:
    b = tile.bounds
    return np.ascontiguousarray(raster[b.start_y:b.end_y, b.start_x:b.end_x]).copy()
