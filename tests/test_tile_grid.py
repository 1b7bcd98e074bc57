import random
import unittest

import numpy as np

import tile_grid as tg
from plan_model import Plan


class TileGenerationTests(unittest.TestCase):
    def test_grid_layout_and_ids(self):
        tiles = tg.generate_tiles(Plan(1000, 700), tile_size=512, overlap=64)
        self.assertEqual(len(tiles), 6)
        self.assertEqual([t.tile_id for t in tiles[:3]], ["tile_0_0", "tile_1_0", "tile_2_0"])
        self.assertEqual([t.index for t in tiles], list(range(6)))

        last_col = tiles[2].bounds
        self.assertEqual((last_col.start_x, last_col.end_x), (896, 1000))
        self.assertEqual((last_col.start_y, last_col.end_y), (0, 512))

        self.assertEqual(tiles[0].overlap_edges, frozenset({"right", "bottom"}))
        self.assertEqual(tiles[4].overlap_edges, frozenset({"left", "right", "top"}))

    def test_generation_is_deterministic(self):
        a = tg.generate_tiles(Plan(2345, 1777), 300, 45)
        b = tg.generate_tiles(Plan(2345, 1777), 300, 45)
        self.assertEqual(a, b)

    def test_invalid_overlap_rejected(self):
        plan = Plan(100, 100)
        with self.assertRaises(ValueError):
            tg.generate_tiles(plan, 64, 64)
        with self.assertRaises(ValueError):
            tg.generate_tiles(plan, 64, -1)
        with self.assertRaises(ValueError):
            tg.generate_tiles(plan, 0, 0)

    def test_plan_smaller_than_tile(self):
        tiles = tg.generate_tiles(Plan(40, 30), 512, 64)
        self.assertEqual(len(tiles), 1)
        self.assertEqual(tiles[0].bounds.as_rect(), (0, 0, 40, 30))
        self.assertEqual(tiles[0].overlap_edges, frozenset())


class CoverageTests(unittest.TestCase):
    def test_every_pixel_covered_randomized(self):
        rng = random.Random(1234)
        for _ in range(40):
            w = rng.randint(1, 3000)
            h = rng.randint(1, 3000)
            size = rng.randint(16, 700)
            overlap = rng.randint(0, size - 1)
            plan = Plan(w, h)
            tiles = tg.generate_tiles(plan, size, overlap)
            self.assertEqual(tg.uncovered_pixels(plan, tiles), 0, (w, h, size, overlap))
            for t in tiles:
                b = t.bounds
                self.assertTrue(0 <= b.start_x < b.end_x <= w)
                self.assertTrue(0 <= b.start_y < b.end_y <= h)

    def test_dense_mask_agrees_on_small_plans(self):
        rng = random.Random(99)
        for _ in range(15):
            w, h = rng.randint(1, 400), rng.randint(1, 400)
            size = rng.randint(8, 120)
            overlap = rng.randint(0, size - 1)
            mask = np.zeros((h, w), dtype=bool)
            for t in tg.generate_tiles(Plan(w, h), size, overlap):
                b = t.bounds
                mask[b.start_y:b.end_y, b.start_x:b.end_x] = True
            self.assertTrue(mask.all())

    def test_union_area(self):
        self.assertEqual(tg.union_area([(0, 0, 10, 10), (5, 5, 15, 15)]), 175)
        self.assertEqual(tg.union_area([(0, 0, 10, 10), (0, 0, 10, 10)]), 100)
        self.assertEqual(tg.union_area([(0, 0, 10, 10), (20, 0, 30, 10)]), 200)
        self.assertEqual(tg.union_area([]), 0)

    def test_missing_tile_is_detected(self):
        plan = Plan(300, 200)
        tiles = tg.generate_tiles(plan, 100, 0)
        self.assertEqual(tg.uncovered_pixels(plan, tiles[1:]), 100 * 100)


class TileGridTests(unittest.TestCase):
    def test_lookup(self):
        grid = tg.TileGrid(Plan(1000, 700), 512, 64)
        self.assertEqual((grid.tiles_x, grid.tiles_y), (3, 2))
        self.assertEqual(grid.get("tile_1_1"), grid.at(1, 1))
        self.assertIsNone(grid.get("tile_9_9"))
        with self.assertRaises(IndexError):
            grid.at(3, 0)
        self.assertEqual(grid.uncovered_pixels(), 0)

    def test_crop_tile_is_a_copy(self):
        raster = np.arange(100 * 80, dtype=np.uint32).reshape(80, 100).astype(np.uint8)
        tile = tg.generate_tiles(Plan(100, 80), 50, 10)[1]
        crop = tg.crop_tile(raster, tile)
        self.assertEqual(crop.shape, (tile.bounds.height, tile.bounds.width))
        crop[:] = 0
        self.assertTrue(raster[0:50, 40:90].any())


if __name__ == "__main__":
    unittest.main()
