import io
import unittest
from contextlib import redirect_stderr

import cv2
import numpy as np

import scale_resolver as sr
from plan_model import Plan
from plan_ocr import OcrResult


class FakeOcr:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def ocr(self, image, char_whitelist):
        self.calls.append((image.shape, char_whitelist))
        r = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(r, Exception):
            raise r
        return r


def blank(w, h):
    return np.full((h, w), 255, dtype=np.uint8)


class NotationTests(unittest.TestCase):
    def test_m_notation(self):
        m = sr.parse_scale_notation("M 1:100")
        self.assertEqual((m.ratio, m.notation, m.pattern), (100, "1:100", "m"))
        self.assertIsNone(m.warning)

    def test_pattern_variants(self):
        self.assertEqual(sr.parse_scale_notation("Maßstab 1:50").pattern, "massstab")
        self.assertEqual(sr.parse_scale_notation("Mabstab 1:50").ratio, 50)
        self.assertEqual(sr.parse_scale_notation("Scale l;200").ratio, 200)
        self.assertEqual(sr.parse_scale_notation("plan 1:20 drawn").ratio, 20)

    def test_out_of_range_and_garbage(self):
        self.assertIsNone(sr.parse_scale_notation("1:0"))
        self.assertIsNone(sr.parse_scale_notation("1:9999"))
        self.assertIsNone(sr.parse_scale_notation("no scale here"))
        self.assertIsNone(sr.parse_scale_notation(""))

    def test_uncommon_ratio_warns(self):
        m = sr.parse_scale_notation("M 1:75")
        self.assertEqual(m.ratio, 75)
        self.assertIn("uncommon", m.warning)


class ResolverTests(unittest.TestCase):
    def test_footer_scale_detected(self):
        plan = Plan(2000, 1400, dpi=300)
        ocr = FakeOcr([OcrResult("M 1:100", 0.92)])
        scale = sr.ScaleResolver(ocr=ocr, calibrate_frame=False).resolve_scale(plan, blank(2000, 1400))

        self.assertEqual(scale.notation, "1:100")
        self.assertEqual(scale.ratio, 100)
        self.assertFalse(scale.estimated)
        self.assertEqual(scale.source, "footer")
        self.assertEqual(scale.calibration, "dpi")
        self.assertAlmostEqual(scale.pixels_per_millimeter, 300 / 25.4 / 100)

        shape, whitelist = ocr.calls[0]
        self.assertEqual(shape, (112, 500))
        self.assertIn(":", whitelist)
        self.assertIn("M", whitelist)

    def test_failed_ocr_falls_back_to_estimated_default(self):
        plan = Plan(1000, 800, dpi=200)
        ocr = FakeOcr([RuntimeError("tesseract crashed")])
        err = io.StringIO()
        with redirect_stderr(err):
            scale = sr.ScaleResolver(ocr=ocr, default_ratio=100, calibrate_frame=False).resolve_scale(plan, blank(1000, 800))

        self.assertTrue(scale.estimated)
        self.assertEqual(scale.source, "default")
        self.assertEqual(scale.ratio, 100)
        self.assertGreater(scale.pixels_per_millimeter, 0)
        self.assertEqual(len(ocr.calls), len(sr.SCALE_REGIONS))
        self.assertEqual(len(scale.warnings), len(sr.SCALE_REGIONS))
        self.assertIn("OCR error", scale.warnings[0])
        self.assertIn("WARNING", err.getvalue())

    def test_no_ocr_backend_is_estimated(self):
        with redirect_stderr(io.StringIO()):
            scale = sr.ScaleResolver(ocr=None, default_ratio=50, calibrate_frame=False).resolve_scale(
                Plan(500, 400), blank(500, 400)
            )
        self.assertTrue(scale.estimated)
        self.assertEqual(scale.notation, "1:50")

    def test_alternate_locations_tried_in_order(self):
        ocr = FakeOcr([
            OcrResult("1:50", 0.30),
            OcrResult("", 0.0),
            OcrResult("Scale 1:50", 0.95),
        ])
        scale = sr.ScaleResolver(ocr=ocr, calibrate_frame=False).resolve_scale(Plan(1000, 1000), blank(1000, 1000))

        self.assertEqual(scale.source, "legend")
        self.assertEqual(scale.ratio, 50)
        self.assertEqual(len(ocr.calls), 3)
        self.assertTrue(scale.warnings[0].startswith("footer: OCR confidence"))
        self.assertTrue(scale.warnings[1].startswith("title_block: no text"))

    def test_percent_confidence_is_normalised(self):
        ocr = FakeOcr([{"text": "M 1:200", "confidence": 88}])
        scale = sr.ScaleResolver(ocr=ocr, calibrate_frame=False).resolve_scale(Plan(800, 600), blank(800, 600))
        self.assertEqual(scale.ratio, 200)
        self.assertAlmostEqual(scale.ocr_confidence, 0.88)


class CalibrationTests(unittest.TestCase):
    def _a3_with_frame(self, factor=1.02):
        # A3 landscape at 100 dpi
        w, h = 1654, 1169
        img = blank(w, h)
        fw = int(round(390 / 25.4 * 100 * factor))
        fh = int(round(277 / 25.4 * 100 * factor))
        x1, y1 = (w - fw) // 2, (h - fh) // 2
        cv2.rectangle(img, (x1, y1), (x1 + fw - 1, y1 + fh - 1), 0, 3)
        return Plan(w, h, dpi=100), img, fw, fh

    def test_nearest_sheet(self):
        name, sw, sh, err = sr.nearest_sheet(420.0, 297.0)
        self.assertEqual((name, sw, sh), ("A3", 420.0, 297.0))
        self.assertAlmostEqual(err, 0.0)
        self.assertEqual(sr.nearest_sheet(841.0, 1189.0)[0], "A0")

    def test_frame_calibration(self):
        plan, img, fw, fh = self._a3_with_frame()
        frame = sr.detect_drawing_frame(img)
        self.assertIsNotNone(frame)

        ppmm, method, dev, sheet, warnings = sr.calibrate_pixels_per_millimeter(plan, 100, img)
        self.assertEqual(method, "frame")
        self.assertEqual(sheet, "A3")
        self.assertEqual(warnings, [])
        self.assertAlmostEqual(ppmm, fw / 390.0 / 100, delta=0.0005)
        self.assertLess(dev, 0.05)

    def test_frame_missing_falls_back_to_dpi(self):
        plan = Plan(1654, 1169, dpi=100)
        ppmm, method, dev, sheet, warnings = sr.calibrate_pixels_per_millimeter(plan, 100, blank(1654, 1169))
        self.assertEqual(method, "dpi")
        self.assertAlmostEqual(ppmm, 100 / 25.4 / 100)
        self.assertIn("no drawing frame", warnings[0])

    def test_frame_far_from_dpi_is_rejected(self):
        plan, img, _, _ = self._a3_with_frame(factor=0.75)
        ppmm, method, dev, sheet, warnings = sr.calibrate_pixels_per_millimeter(plan, 100, img)
        self.assertEqual(method, "dpi")
        self.assertGreater(dev, 0.15)
        self.assertIn("off the DPI value", warnings[0])


class ManualScaleTests(unittest.TestCase):
    def test_manual_notation(self):
        s = sr.manual_scale(Plan(1000, 800, dpi=254), "1:50")
        self.assertEqual((s.ratio, s.source, s.estimated), (50, "manual", False))
        self.assertAlmostEqual(s.pixels_per_millimeter, 10.0 / 50)
        self.assertEqual(sr.manual_scale(Plan(1000, 800), "200").ratio, 200)

    def test_manual_notation_invalid(self):
        with self.assertRaises(ValueError):
            sr.manual_scale(Plan(1000, 800), "abc")


if __name__ == "__main__":
    unittest.main()
