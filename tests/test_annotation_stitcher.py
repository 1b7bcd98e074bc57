import io
import random
import unittest
from contextlib import redirect_stderr

import numpy as np

import annotation_stitcher as st
from plan_model import BoundingBox, CoverageIncomplete, PixelBounds, Plan, Region, Tile, TileAnnotation


TILE_A = Tile("tile_0_0", 0, 0, 0, PixelBounds(0, 0, 100, 100), frozenset({"right"}))
TILE_B = Tile("tile_1_0", 1, 1, 0, PixelBounds(80, 0, 180, 100), frozenset({"left"}))
PLAN = Plan(180, 100)


def ann(tile, *regions, success=True):
    return TileAnnotation(
        tile=tile,
        regions=[Region(BoundingBox(*box), label, conf) for box, label, conf in regions],
        success=success,
    )


def quiet_stitch(stitcher, annotations, plan):
    with redirect_stderr(io.StringIO()):
        return stitcher.stitch(annotations, plan)


class RectAlgebraTests(unittest.TestCase):
    def test_subtract_pieces_are_disjoint_and_exact(self):
        a = (0, 0, 10, 10)
        b = (3, 4, 7, 20)
        pieces = st.rect_subtract(a, b)
        self.assertEqual(sum(st.rect_area(p) for p in pieces), 100 - 4 * 6)
        for i, p in enumerate(pieces):
            self.assertIsNone(st.rect_intersection(p, b))
            for q in pieces[i + 1:]:
                self.assertIsNone(st.rect_intersection(p, q))

    def test_subtract_disjoint_and_full(self):
        self.assertEqual(st.rect_subtract((0, 0, 5, 5), (10, 10, 20, 20)), [(0, 0, 5, 5)])
        self.assertEqual(st.rect_subtract((2, 2, 4, 4), (0, 0, 10, 10)), [])


class StitchTests(unittest.TestCase):
    def setUp(self):
        self.stitcher = st.AnnotationStitcher(coverage_threshold=95.0, bucket_size=32)

    def test_local_to_global_offset(self):
        res = quiet_stitch(self.stitcher, [ann(TILE_B, ((5, 10, 20, 30), "column", 0.7))], PLAN)
        self.assertEqual(res.elements[0].bounding_box, BoundingBox(85, 10, 20, 30))
        self.assertEqual(res.elements[0].source_tiles, ("tile_1_0",))

    def test_higher_confidence_wins_overlap_in_any_order(self):
        a = ann(TILE_A, ((60, 10, 40, 20), "door", 0.6))
        b = ann(TILE_B, ((0, 10, 40, 20), "window", 0.9))

        r1 = quiet_stitch(self.stitcher, [a, b], PLAN)
        r2 = quiet_stitch(self.stitcher, [b, a], PLAN)

        for r in (r1, r2):
            self.assertEqual(r.index.label_at(90, 20), "window")
            self.assertEqual(r.index.label_at(70, 20), "door")
            self.assertEqual(r.coverage.annotated_pixels, 20 * 20 + 40 * 20)
            areas = {e.classification: e.pixel_area for e in r.elements}
            self.assertEqual(areas, {"door": 400, "window": 800})
        self.assertEqual([e.element_id for e in r1.elements], [e.element_id for e in r2.elements])

    def test_tie_keeps_first_seen(self):
        a = ann(TILE_A, ((60, 10, 40, 20), "door", 0.7))
        b = ann(TILE_B, ((0, 10, 40, 20), "window", 0.7))
        self.assertEqual(quiet_stitch(self.stitcher, [a, b], PLAN).index.label_at(90, 20), "door")
        self.assertEqual(quiet_stitch(self.stitcher, [b, a], PLAN).index.label_at(90, 20), "window")

    def test_same_class_across_seam_merges_without_double_count(self):
        a = ann(TILE_A, ((10, 40, 90, 10), "wall", 0.8))
        b = ann(TILE_B, ((0, 40, 90, 10), "wall", 0.9))
        res = quiet_stitch(self.stitcher, [a, b], PLAN)

        self.assertEqual(len(res.elements), 1)
        el = res.elements[0]
        self.assertEqual(el.source_tiles, ("tile_0_0", "tile_1_0"))
        self.assertEqual(el.confidence, 0.9)
        self.assertEqual(el.bounding_box, BoundingBox(10, 40, 160, 10))
        self.assertEqual(el.pixel_area, 160 * 10)
        self.assertEqual(res.coverage.annotated_pixels, 160 * 10)

    def test_failed_tiles_are_skipped(self):
        a = ann(TILE_A, ((0, 0, 100, 100), "slab", 0.5), success=False)
        b = ann(TILE_B, ((0, 0, 10, 10), "column", 0.5))
        res = quiet_stitch(self.stitcher, [a, b], PLAN)
        self.assertEqual(res.stats["skipped_failed_tiles"], 1)
        self.assertEqual([e.classification for e in res.elements], ["column"])

    def test_fully_covered_region_disappears(self):
        a = ann(TILE_A, ((0, 0, 100, 100), "slab", 0.9), ((10, 10, 5, 5), "column", 0.4))
        res = quiet_stitch(self.stitcher, [a], PLAN)
        self.assertEqual([e.classification for e in res.elements], ["slab"])
        self.assertEqual(res.stats["surviving_regions"], 1)

    def test_random_regions_match_brute_force(self):
        rng = random.Random(42)
        plan = Plan(120, 90)
        tile = Tile("tile_0_0", 0, 0, 0, PixelBounds(0, 0, 120, 90))
        labels = ["wall", "door", "window", "slab"]
        confs = rng.sample(range(1, 1000), 25)
        regions = []
        for c in confs:
            x, y = rng.randint(0, 110), rng.randint(0, 80)
            regions.append(((x, y, rng.randint(1, 40), rng.randint(1, 40)), rng.choice(labels), c / 1000.0))

        owner = np.full((90, 120), -1, dtype=int)
        best = np.zeros((90, 120))
        for i, ((x, y, w, h), _, c) in enumerate(regions):
            sl = (slice(y, min(90, y + h)), slice(x, min(120, x + w)))
            better = best[sl] < c
            owner[sl][better] = i
            best[sl][better] = c

        shuffled = regions[:]
        rng.shuffle(shuffled)
        for order in (regions, shuffled):
            res = quiet_stitch(self.stitcher, [ann(tile, *order)], plan)
            self.assertEqual(res.coverage.annotated_pixels, int((owner >= 0).sum()))
            for yy in range(0, 90, 3):
                for xx in range(0, 120, 3):
                    i = owner[yy, xx]
                    expected = None if i < 0 else regions[i][1]
                    self.assertEqual(res.index.label_at(xx, yy), expected)


class ConsistencyTests(unittest.TestCase):
    def setUp(self):
        self.stitcher = st.AnnotationStitcher(coverage_threshold=95.0, bucket_size=32)

    def test_oversized_and_undersized_are_reported_not_dropped(self):
        a = ann(TILE_A, ((0, 0, 100, 100), "slab", 0.9), ((10, 10, 3, 3), "column", 0.95))
        b = ann(TILE_B, ((0, 0, 100, 100), "slab", 0.9))
        res = quiet_stitch(self.stitcher, [a, b], PLAN)

        self.assertEqual([e.classification for e in res.elements], ["slab", "column"])
        by_type = {i["type"]: i for i in res.issues}
        self.assertEqual(set(by_type), {"oversized_element", "undersized_element"})
        self.assertEqual(by_type["oversized_element"]["classification"], "slab")
        self.assertEqual(by_type["undersized_element"]["element_id"], res.elements[1].element_id)
        self.assertEqual(res.stats["consistency_issues"], 2)

    def test_sentinels_and_normal_elements_pass(self):
        a = ann(TILE_A, ((0, 0, 100, 100), "irrelevant", 0.05), ((10, 40, 60, 10), "wall", 0.9))
        b = ann(TILE_B, ((0, 0, 100, 100), "irrelevant", 0.05))
        res = quiet_stitch(self.stitcher, [a, b], PLAN)
        self.assertEqual(res.issues, [])
        self.assertEqual(res.stats["consistency_issues"], 0)


class CoverageTests(unittest.TestCase):
    def test_eighty_percent_is_incomplete(self):
        plan = Plan(1000, 1000)
        tile = Tile("tile_0_0", 0, 0, 0, PixelBounds(0, 0, 1000, 1000))
        err = io.StringIO()
        with redirect_stderr(err):
            res = st.AnnotationStitcher().stitch([ann(tile, ((0, 0, 1000, 800), "slab", 0.6))], plan)

        self.assertAlmostEqual(res.coverage.coverage_percentage, 80.0)
        self.assertFalse(res.coverage.complete)
        self.assertEqual(res.coverage.missing_pixels, 200_000)
        self.assertIn("WARNING", err.getvalue())
        with self.assertRaises(CoverageIncomplete):
            res.coverage.raise_if_incomplete()

    def test_complete_coverage(self):
        plan = Plan(180, 100)
        res = st.AnnotationStitcher().stitch([
            ann(TILE_A, ((0, 0, 100, 100), "slab", 0.5)),
            ann(TILE_B, ((0, 0, 100, 100), "irrelevant", 0.1)),
        ], plan)
        self.assertEqual(res.coverage.coverage_percentage, 100.0)
        self.assertTrue(res.coverage.complete)

    def test_huge_plan_stays_sparse(self):
        plan = Plan(60_000, 40_000)
        tiles = [
            Tile(f"tile_{i}_0", i, i, 0, PixelBounds(i * 10_000, 0, i * 10_000 + 512, 512))
            for i in range(6)
        ]
        annotations = [ann(t, ((0, 0, 100, 50), "wall", 0.8), ((200, 200, 300, 300), "slab", 0.5)) for t in tiles]
        with redirect_stderr(io.StringIO()):
            res = st.AnnotationStitcher(bucket_size=512).stitch(annotations, plan)

        self.assertEqual(len(res.index), 12)
        self.assertEqual(res.coverage.annotated_pixels, 6 * (100 * 50 + 300 * 300))
        self.assertEqual(len(res.elements), 12)


if __name__ == "__main__":
    unittest.main()
