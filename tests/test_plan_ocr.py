import unittest
from types import SimpleNamespace
from unittest.mock import patch

import numpy as np

import plan_ocr as po
from plan_model import PixelBounds, Tile


class FakeTesseract:
    Output = SimpleNamespace(DICT="dict")

    def __init__(self, data):
        self.pytesseract = SimpleNamespace(tesseract_cmd="tesseract")
        self.data = data
        self.configs = []

    def image_to_data(self, img, config, lang, output_type, timeout):
        self.configs.append(config)
        return self.data


SCALE_DATA = {
    "text": ["M", "1:100", ""],
    "conf": ["90", "80", "-1"],
    "block_num": [1, 1, 1],
    "par_num": [1, 1, 1],
    "line_num": [1, 1, 1],
    "left": [0, 20, 0],
    "top": [0, 0, 0],
    "width": [10, 30, 0],
    "height": [10, 10, 0],
}


class TesseractBackendTests(unittest.TestCase):
    def test_lines_grouped_and_confidence_normalised(self):
        fake = FakeTesseract(SCALE_DATA)
        with patch("plan_ocr.try_import_ocr", return_value=fake):
            ocr = po.TesseractOcr(tesseract_cmd="/opt/tesseract")
        res = ocr.ocr(np.full((40, 120), 255, dtype=np.uint8), po.SCALE_WHITELIST)

        self.assertEqual(res.text, "M 1:100")
        self.assertAlmostEqual(res.confidence, 0.85)
        self.assertEqual(fake.pytesseract.tesseract_cmd, "/opt/tesseract")
        self.assertEqual(len(fake.configs), len(po.OCR_VARIANTS) * len(po.OCR_PSMS))
        for cfg in fake.configs:
            self.assertNotIn('"', cfg)
            self.assertNotIn("'", cfg)
            self.assertIn("tessedit_char_whitelist=", cfg)

    def test_missing_tesseract(self):
        with patch("plan_ocr.try_import_ocr", return_value=None):
            with self.assertRaises(RuntimeError):
                po.TesseractOcr()

    def test_empty_page(self):
        fake = FakeTesseract({k: [] for k in SCALE_DATA})
        with patch("plan_ocr.try_import_ocr", return_value=fake):
            res = po.TesseractOcr().ocr(np.full((40, 120), 255, dtype=np.uint8))
        self.assertEqual((res.text, res.confidence), ("", 0.0))


class DimensionTextTests(unittest.TestCase):
    def test_parse_dimension(self):
        self.assertAlmostEqual(po.parse_dimension_mm("1,01"), 1010.0)
        self.assertAlmostEqual(po.parse_dimension_mm("2.40 m"), 2400.0)
        self.assertAlmostEqual(po.parse_dimension_mm("875"), 875.0)
        self.assertAlmostEqual(po.parse_dimension_mm("12,5 cm"), 125.0)
        self.assertAlmostEqual(po.parse_dimension_mm("240mm"), 240.0)
        self.assertIsNone(po.parse_dimension_mm("7"))
        self.assertIsNone(po.parse_dimension_mm("abc"))

    def test_scan_tiles_to_global_coordinates(self):
        class LineOcr:
            def ocr_lines(self, image, char_whitelist):
                return [{
                    "text": "1,01 x",
                    "conf": 90.0,
                    "bbox": (5, 5, 60, 15),
                    "words": [
                        {"text": "1,01", "conf": 90.0, "bbox": (5, 5, 30, 15)},
                        {"text": "x", "conf": 90.0, "bbox": (40, 5, 60, 15)},
                    ],
                }]

        tiles = [
            Tile("tile_0_0", 0, 0, 0, PixelBounds(0, 0, 100, 100)),
            Tile("tile_1_0", 1, 1, 0, PixelBounds(80, 0, 180, 100)),
        ]
        gray = np.full((100, 180), 255, dtype=np.uint8)
        found = po.scan_dimension_annotations(gray, tiles, LineOcr(), threads=2)

        self.assertEqual([a.bbox for a in found], [(5, 5, 30, 15), (85, 5, 110, 15)])
        self.assertTrue(all(abs(a.value_mm - 1010.0) < 1e-6 for a in found))

    def test_duplicates_collapse(self):
        a = po.DimensionAnnotation(875.0, "875", (10, 10, 30, 20))
        b = po.DimensionAnnotation(875.0, "875", (11, 10, 31, 20))
        self.assertEqual(len(po.dedupe_dimensions([a, b])), 1)


if __name__ == "__main__":
    unittest.main()
