"""
name_ocr.py
-----------
Read the printed student name from the sheet header with Tesseract.

Only used when no QR identity could be decoded. The header line sits at a
fixed 72-DPI position on the printed sheet; we crop it, upscale 2x, stretch
contrast, sharpen, then ask Tesseract for word boxes and confidences.

A result is accepted only if the mean word confidence clears the floor and the
text is long enough; otherwise the caller gets None ("no name"), never a guess.
If the tesseract binary is missing, OCR is disabled once with a warning.
"""

from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from typing import Optional

import cv2 as cv
import numpy as np
from PIL import Image
import pytesseract

from ..layout import name_region
from ..models import PageImage
from ..scoring_defaults import DEFAULTS, DetectionDefaults
from .qr_decode import normalize, sharpen

log = logging.getLogger(__name__)

TESSERACT_CONFIG = "--psm 7"   # a single text line


@dataclass(frozen=True)
class OcrText:
    text: str
    confidence: float


def crop_name_region(page: PageImage) -> Optional[np.ndarray]:
    x, y, w, h = name_region(page.width)
    x1 = min(page.width, x + w)
    y1 = min(page.height, y + h)
    if x1 <= x or y1 <= y:
        return None
    return page.gray[y:y1, x:x1]


def prepare_name_crop(crop: np.ndarray) -> np.ndarray:
    h, w = crop.shape[:2]
    up = cv.resize(crop, (w * 2, h * 2), interpolation=cv.INTER_CUBIC)
    return sharpen(normalize(up), sigma=1.0)


def words_from_data(data: dict) -> OcrText:
    """Join recognised words and average their confidences (tesseract reports -1 for non-words)."""
    words = []
    confs = []
    for text, conf in zip(data.get("text", []), data.get("conf", [])):
        if not text or not str(text).strip():
            continue
        try:
            c = float(conf)
        except (TypeError, ValueError):
            continue
        if c < 0:
            continue
        words.append(str(text).strip())
        confs.append(c)
    if not words:
        return OcrText("", 0.0)
    return OcrText(" ".join(words), float(np.mean(confs)))


class NameReader:
    def __init__(self, tesseract_cmd: Optional[str] = None, defaults: DetectionDefaults = DEFAULTS):
        self.tesseract_cmd = tesseract_cmd
        self.defaults = defaults
        self._available: Optional[bool] = None
        self._lock = threading.Lock()

    def available(self) -> bool:
        if self._available is None:
            with self._lock:
                if self._available is None:
                    if self.tesseract_cmd:
                        pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd
                    try:
                        pytesseract.get_tesseract_version()
                        self._available = True
                    except (pytesseract.TesseractNotFoundError, OSError) as e:
                        log.warning("Tesseract not available, OCR name fallback disabled: %s", e)
                        self._available = False
        return bool(self._available)

    def recognize(self, page: PageImage) -> Optional[OcrText]:
        """Raw OCR of the name region, or None if OCR cannot run."""
        if not self.available():
            return None
        crop = crop_name_region(page)
        if crop is None or crop.size == 0:
            return None
        img = Image.fromarray(prepare_name_crop(crop))
        try:
            data = pytesseract.image_to_data(img, output_type=pytesseract.Output.DICT, config=TESSERACT_CONFIG)
        except pytesseract.TesseractError as e:
            log.warning("OCR failed on name region: %s", e)
            return None
        return words_from_data(data)

    def read_name(self, page: PageImage) -> Optional[str]:
        result = self.recognize(page)
        if result is None:
            return None
        log.debug("OCR name: %r (confidence %.0f%%)", result.text, result.confidence)
        if result.confidence > self.defaults.ocr_min_confidence and len(result.text) >= self.defaults.ocr_min_length:
            return result.text
        return None
