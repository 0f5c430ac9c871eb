"""
qr_decode.py
------------
Thin wrapper around OpenCV's QR detector plus the image preparation used by
the identity strategies (resize, optional unsharp mask, min-max stretch).

The detector is created once per QrDecoder, lazily and under a lock, so a
decoder can be shared by a pool of workers if pages are ever parsed in
parallel.
"""

from __future__ import annotations
import logging
import threading
from typing import Optional

import cv2 as cv
import numpy as np

log = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Preprocessing
# ------------------------------------------------------------------------------

def sharpen(gray: np.ndarray, sigma: float = 1.5, amount: float = 1.0) -> np.ndarray:
    """Unsharp mask: gray + amount * (gray - blur(gray))."""
    blurred = cv.GaussianBlur(gray, (0, 0), sigma)
    return cv.addWeighted(gray, 1.0 + amount, blurred, -amount, 0)


def normalize(gray: np.ndarray) -> np.ndarray:
    """Stretch intensities to the full 0..255 range."""
    return cv.normalize(gray, None, 0, 255, cv.NORM_MINMAX)


def binarize(gray: np.ndarray, thresh: int = 128) -> np.ndarray:
    _, out = cv.threshold(gray, thresh, 255, cv.THRESH_BINARY)
    return out


def prepare(gray: np.ndarray, base_width: int, scale: float, use_sharpen: bool = False) -> np.ndarray:
    """Resize to floor(base_width * scale) wide (aspect kept), sharpen if asked, normalize."""
    h, w = gray.shape[:2]
    target_w = max(1, int(base_width * scale))
    target_h = max(1, int(round(h * target_w / float(w))))
    interp = cv.INTER_CUBIC if target_w > w else cv.INTER_AREA
    out = cv.resize(gray, (target_w, target_h), interpolation=interp)
    if use_sharpen:
        out = sharpen(out, sigma=1.5)
    return normalize(out)


# ------------------------------------------------------------------------------
# Decoder
# ------------------------------------------------------------------------------

class QrDecoder:
    """Decode at most one QR symbol, retrying the inverted and rotated image."""

    def __init__(self) -> None:
        self._detector: Optional[cv.QRCodeDetector] = None
        self._lock = threading.Lock()

    @property
    def detector(self) -> cv.QRCodeDetector:
        if self._detector is None:
            with self._lock:
                if self._detector is None:
                    self._detector = cv.QRCodeDetector()
        return self._detector

    def _decode_once(self, gray: np.ndarray) -> Optional[str]:
        try:
            text, points, _ = self.detector.detectAndDecode(gray)
        except cv.error as e:
            log.debug("QR decode error: %s", e)
            return None
        if points is None or not text:
            return None
        return text

    def decode(self, gray: np.ndarray) -> Optional[str]:
        if gray is None or gray.size == 0:
            return None
        candidates = (
            gray,
            cv.bitwise_not(gray),
            cv.rotate(gray, cv.ROTATE_90_CLOCKWISE),
            cv.rotate(gray, cv.ROTATE_90_COUNTERCLOCKWISE),
        )
        for img in candidates:
            text = self._decode_once(img)
            if text:
                return text
        return None
