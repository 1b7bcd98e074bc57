"""
plan_ocr.py — OCR backend for plan annotations (scale notation + dimension text)

Backend contract used by the pipeline:
  ocr(image_region, char_whitelist)        -> OcrResult(text, confidence in 0..1)
  ocr_lines(image_region, char_whitelist)  -> list of {"text", "conf", "bbox"}   (optional)

TesseractOcr is the default backend:
  - a few preprocess variants (gray / CLAHE 2x / Otsu 2x) x a few page-segmentation modes
  - best mean word confidence wins
  - whitelist is passed WITHOUT quotes (tesseract config goes through shlex)

Dimension text ("1,01", "2.40 m", "875", "12,5 cm") is parsed into millimetres so
measurements can be cross-checked against what the plan itself says.
"""

import re
from dataclasses import dataclass, field

import cv2
import numpy as np
from PIL import Image

# Scale annotations: digits, ':' and the letters of M / Scale / Maßstab
SCALE_WHITELIST = "0123456789:MSabcelstß"
DIMENSION_WHITELIST = "0123456789.,cm"

MAX_VARIANT_PIXELS = 18_000_000

OCR_VARIANTS = [
    {"name": "gray", "thresh": "none", "scale": 1.0},
    {"name": "clahe2x", "thresh": "none", "scale": 2.0, "clahe": True},
    {"name": "otsu2x", "thresh": "otsu", "scale": 2.0, "blur": 3},
]
OCR_PSMS = (7, 6, 11)


@dataclass
class OcrResult:
    text: str
    confidence: float
    lines: list = field(default_factory=list)
    variant: str = ""


def try_import_ocr():
    try:
        import pytesseract  # type: ignore
        return pytesseract
    except Exception:
        return None


# ---------------------------
# Image helpers
# ---------------------------
def to_gray(image) -> np.ndarray:
    if isinstance(image, Image.Image):
        arr = np.array(image.convert("L"))
        return arr
    arr = np.asarray(image)
    if arr.ndim == 3:
        if arr.shape[2] == 4:
            arr = cv2.cvtColor(arr, cv2.COLOR_RGBA2GRAY)
        else:
            arr = cv2.cvtColor(arr, cv2.COLOR_RGB2GRAY)
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    return arr

def _apply_clahe(gray: np.ndarray, clip: float = 2.0, grid: int = 8) -> np.ndarray:
    clahe = cv2.createCLAHE(clipLimit=float(clip), tileGridSize=(int(grid), int(grid)))
    return clahe.apply(gray)

def preprocess_variant(image, variant: dict) -> Image.Image:
    gray = to_gray(image)

    if variant.get("clahe", False):
        gray = _apply_clahe(gray)

    scale = float(variant.get("scale", 1.0))
    base_pixels = int(gray.shape[0] * gray.shape[1])
    if base_pixels > 0 and scale != 1.0 and base_pixels * scale * scale > MAX_VARIANT_PIXELS:
        scale = (MAX_VARIANT_PIXELS / base_pixels) ** 0.5
    if scale != 1.0 and base_pixels > 0:
        gray = cv2.resize(gray, None, fx=scale, fy=scale, interpolation=cv2.INTER_CUBIC)

    if variant.get("thresh") == "otsu":
        blur = int(variant.get("blur", 0) or 0)
        if blur > 0:
            k = blur if blur % 2 == 1 else blur + 1
            gray = cv2.GaussianBlur(gray, (k, k), 0)
        _, gray = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)

    return Image.fromarray(gray)

def tesseract_config(whitelist: str, psm: int) -> str:
    cfg = f"--oem 3 --psm {int(psm)} -c preserve_interword_spaces=1"
    if whitelist:
        cfg += f" -c tessedit_char_whitelist={whitelist}"
    return cfg


# ---------------------------
# OCR: Tesseract (word bboxes grouped into lines)
# ---------------------------
def ocr_image_to_lines(pytesseract, pil_img: Image.Image, config: str, lang: str = "eng",
                       timeout: int | None = None) -> list[dict]:
    data = pytesseract.image_to_data(
        pil_img, config=config, lang=lang, output_type=pytesseract.Output.DICT,
        timeout=timeout or 0
    )

    n = len(data.get("text", []))
    lines: dict[tuple[int, int, int], dict] = {}

    for i in range(n):
        txt = (data["text"][i] or "").strip()
        if not txt:
            continue

        try:
            conf = float(data.get("conf", ["-1"])[i])
        except (TypeError, ValueError):
            conf = -1.0

        key = (
            int(data.get("block_num", [0])[i] or 0),
            int(data.get("par_num", [0])[i] or 0),
            int(data.get("line_num", [0])[i] or 0),
        )
        x, y, w, h = int(data["left"][i]), int(data["top"][i]), int(data["width"][i]), int(data["height"][i])

        if key not in lines:
            lines[key] = {"words": [], "bbox": [x, y, x + w, y + h], "confs": []}
        rec = lines[key]
        rec["words"].append({"text": txt, "conf": conf, "bbox": (x, y, x + w, y + h)})

        L = rec["bbox"]
        L[0] = min(L[0], x)
        L[1] = min(L[1], y)
        L[2] = max(L[2], x + w)
        L[3] = max(L[3], y + h)
        if conf >= 0:
            rec["confs"].append(conf)

    out = []
    for rec in lines.values():
        words = sorted(rec["words"], key=lambda w: w["bbox"][0])
        confs = rec["confs"]
        out.append({
            "text": " ".join(w["text"] for w in words),
            "conf": (sum(confs) / len(confs)) if confs else -1.0,
            "bbox": tuple(rec["bbox"]),
            "words": words,
        })

    out.sort(key=lambda r: (r["bbox"][1], r["bbox"][0]))
    return out


class TesseractOcr:
    def __init__(self, lang: str = "eng", psms=OCR_PSMS, variants=None,
                 timeout: int | None = None, tesseract_cmd: str | None = None):
        pytesseract = try_import_ocr()
        if pytesseract is None:
            raise RuntimeError("OCR deps missing. Install: pip install pytesseract (and system tesseract).")
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self._tess = pytesseract
        self.lang = lang
        self.psms = tuple(psms)
        self.variants = list(variants) if variants else list(OCR_VARIANTS)
        self.timeout = timeout

    def ocr_lines(self, image, char_whitelist: str = "", psm: int = 11) -> list[dict]:
        pil = preprocess_variant(image, self.variants[0])
        return ocr_image_to_lines(self._tess, pil, tesseract_config(char_whitelist, psm),
                                  lang=self.lang, timeout=self.timeout)

    def ocr(self, image, char_whitelist: str = "") -> OcrResult:
        best = OcrResult(text="", confidence=0.0)
        for variant in self.variants:
            pil = preprocess_variant(image, variant)
            sx = pil.size[0] / max(1, to_gray(image).shape[1])
            for psm in self.psms:
                lines = ocr_image_to_lines(self._tess, pil, tesseract_config(char_whitelist, psm),
                                           lang=self.lang, timeout=self.timeout)
                if not lines:
                    continue
                confs = [ln["conf"] for ln in lines if ln["conf"] >= 0]
                conf = (sum(confs) / len(confs) / 100.0) if confs else 0.0
                if conf > best.confidence:
                    # map boxes back to the unscaled region
                    for ln in lines:
                        ln["bbox"] = tuple(int(round(v / sx)) for v in ln["bbox"])
                    best = OcrResult(
                        text="\n".join(ln["text"] for ln in lines),
                        confidence=min(1.0, conf),
                        lines=lines,
                        variant=f"{variant['name']}/psm{psm}",
                    )
        return best


# ---------------------------
# Dimension text
# ---------------------------
DIMENSION_RE = re.compile(r"(?<![\d.,])(\d{1,5}(?:[.,]\d{1,3})?)\s*(mm|cm|m)?(?![\d])", re.IGNORECASE)
UNIT_TO_MM = {"mm": 1.0, "cm": 10.0, "m": 1000.0}

MIN_DIMENSION_MM = 50.0
MAX_DIMENSION_MM = 200_000.0


@dataclass(frozen=True)
class DimensionAnnotation:
    value_mm: float
    text: str
    bbox: tuple  # x1, y1, x2, y2 in plan pixels

    @property
    def center(self) -> tuple[float, float]:
        x1, y1, x2, y2 = self.bbox
        return ((x1 + x2) / 2.0, (y1 + y2) / 2.0)

    def to_json(self) -> dict:
        return {"value_mm": self.value_mm, "text": self.text, "bbox": list(self.bbox)}


def parse_dimension_mm(token: str) -> float | None:
    """
    Unit-less numbers follow German plan convention:
      decimal separator present  -> metres   ("1,01" = 1010 mm, "2.40" = 2400 mm)
      plain integer              -> millimetres ("875")
    """
    m = DIMENSION_RE.search(token.strip())
    if not m:
        return None
    raw, unit = m.group(1), (m.group(2) or "").lower()
    has_decimal = ("," in raw) or ("." in raw)
    value = float(raw.replace(",", "."))
    if unit:
        mm = value * UNIT_TO_MM[unit]
    elif has_decimal:
        mm = value * 1000.0
    else:
        mm = value
    if mm < MIN_DIMENSION_MM or mm > MAX_DIMENSION_MM:
        return None
    return mm

def dimensions_from_lines(lines: list[dict], offset: tuple[int, int] = (0, 0)) -> list[DimensionAnnotation]:
    ox, oy = offset
    out = []
    for ln in lines:
        words = ln.get("words") or [{"text": ln["text"], "bbox": ln["bbox"]}]
        for w in words:
            mm = parse_dimension_mm(w["text"])
            if mm is None:
                continue
            x1, y1, x2, y2 = w["bbox"]
            out.append(DimensionAnnotation(value_mm=mm, text=w["text"], bbox=(x1 + ox, y1 + oy, x2 + ox, y2 + oy)))
    return out

def dedupe_dimensions(annotations: list[DimensionAnnotation], tol_px: float = 8.0) -> list[DimensionAnnotation]:
    seen: dict[tuple, DimensionAnnotation] = {}
    for a in annotations:
        cx, cy = a.center
        key = (round(a.value_mm, 1), int(cx // tol_px), int(cy // tol_px))
        seen.setdefault(key, a)
    return sorted(seen.values(), key=lambda a: (a.bbox[1], a.bbox[0]))

def scan_dimension_annotations(gray: np.ndarray, tiles, ocr, threads: int = 4) -> list[DimensionAnnotation]:
    """OCR every tile for dimension text; returns plan-global, de-duplicated annotations."""
    if not hasattr(ocr, "ocr_lines"):
        return []

    from concurrent.futures import ThreadPoolExecutor

    def one(tile):
        b = tile.bounds
        crop = gray[b.start_y:b.end_y, b.start_x:b.end_x]
        if crop.size == 0:
            return []
        lines = ocr.ocr_lines(crop, DIMENSION_WHITELIST)
        return dimensions_from_lines(lines, offset=(b.start_x, b.start_y))

    found: list[DimensionAnnotation] = []
    with ThreadPoolExecutor(max_workers=max(1, int(threads))) as ex:
        for part in ex.map(one, tiles):
            found.extend(part)
    return dedupe_dimensions(found)
