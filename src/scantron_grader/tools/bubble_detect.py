"""
bubble_detect.py
----------------
Position-based bubble reading for the printed answer grids.

The sheet layout is fully known, so instead of looking for circles we sample a
small square window at every expected bubble centre and work with its mean
luminance (0 = black, 255 = white).

Two passes per page:
  1) sample every bubble on the page;
  2) derive one fill threshold from the whole page's intensity distribution
     (darkest N samples are assumed filled, N = question count), then classify.

Selection per question:
  - nothing below the fill threshold  -> selected = None
  - exactly one                       -> that choice
  - several                           -> darkest one, multiple_detected = True
"""

from __future__ import annotations
import base64
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import cv2 as cv
import numpy as np

from ..layout import BubbleSpot, CHOICES, bubble_centers, grid_scale
from ..models import BubbleSample, DetectedQuestion, PageImage
from ..scoring_defaults import DEFAULTS, DetectionDefaults

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Threshold:
    fill: float
    empty: float


# ------------------------------------------------------------------------------
# Sampling
# ------------------------------------------------------------------------------

def sample_region_intensity(gray: np.ndarray, cx: int, cy: int, half: int) -> float:
    """Mean luminance of the inclusive square [cx-half, cx+half] clamped to the image; 255 if empty."""
    h, w = gray.shape[:2]
    x0 = max(0, cx - half)
    x1 = min(w - 1, cx + half)
    y0 = max(0, cy - half)
    y1 = min(h - 1, cy + half)
    if x1 < x0 or y1 < y0:
        return 255.0
    return float(gray[y0:y1 + 1, x0:x1 + 1].mean())


def sample_spots(gray: np.ndarray, spots: Sequence[BubbleSpot]) -> List[float]:
    return [sample_region_intensity(gray, s.x, s.y, s.half_sample) for s in spots]


# ------------------------------------------------------------------------------
# Thresholding & confidence
# ------------------------------------------------------------------------------

def adaptive_threshold(
    intensities: Sequence[float],
    question_count: int,
    defaults: DetectionDefaults = DEFAULTS,
) -> Threshold:
    """
    Split the page's samples into the darkest `question_count` (filled) and the rest.
    Threshold sits midway across the gap; a gap under `min_separation` means the
    populations overlap and the lenient fixed thresholds are used instead.
    """
    lenient = Threshold(defaults.lenient_fill, defaults.lenient_empty)
    if not intensities or question_count <= 0:
        return lenient

    ordered = sorted(intensities)
    last = len(ordered) - 1
    filled_max = ordered[min(question_count - 1, last)]
    empty_min = ordered[min(question_count, last)]

    if empty_min - filled_max < defaults.min_separation:
        return lenient

    return Threshold(
        fill=(filled_max + empty_min) / 2.0,
        empty=min(empty_min + defaults.min_separation, defaults.lenient_empty),
    )


def bubble_confidence(intensity: float, threshold: Threshold, defaults: DetectionDefaults = DEFAULTS) -> float:
    band = defaults.ambiguity_band
    if intensity < defaults.very_dark:
        return 0.95
    if intensity < threshold.fill - band:
        return 0.9
    if threshold.fill - band <= intensity <= threshold.fill + band:
        return 0.5
    if intensity > threshold.empty:
        return 0.95
    return 0.8


def classify_question(
    question_number: int,
    spots: Sequence[BubbleSpot],
    intensities: Sequence[float],
    threshold: Threshold,
    defaults: DetectionDefaults = DEFAULTS,
) -> DetectedQuestion:
    bubbles: List[BubbleSample] = []
    for spot, value in zip(spots, intensities):
        bubbles.append(BubbleSample(
            question_number=question_number,
            choice=spot.choice,
            x=spot.x,
            y=spot.y,
            radius=spot.radius,
            intensity=float(value),
            filled=value < threshold.fill,
            confidence=bubble_confidence(value, threshold, defaults),
        ))

    filled = [b for b in bubbles if b.filled]
    selected: Optional[str] = None
    multiple = False
    if len(filled) == 1:
        selected = filled[0].choice
    elif len(filled) > 1:
        # on a tie the later choice wins
        darkest = filled[0]
        for b in filled[1:]:
            if b.fill >= darkest.fill:
                darkest = b
        selected = darkest.choice
        multiple = True

    row = spots[0].row if spots else 0
    column = spots[0].column if spots else 0
    return DetectedQuestion(
        question_number=question_number,
        row=row,
        column=column,
        bubbles=bubbles,
        selected=selected,
        multiple_detected=multiple,
    )


# ------------------------------------------------------------------------------
# Page-level entry point
# ------------------------------------------------------------------------------

def detect_bubbles(
    page: PageImage,
    question_count: int,
    fmt: str = "standard",
    defaults: DetectionDefaults = DEFAULTS,
) -> List[DetectedQuestion]:
    """Read every question on an upright page. Deterministic for a given image."""
    spots = bubble_centers(question_count, page.width, fmt)
    if not spots:
        return []
    values = sample_spots(page.gray, spots)
    threshold = adaptive_threshold(values, question_count, defaults)
    log.debug("Adaptive threshold (%s): fill=%.1f empty=%.1f", fmt, threshold.fill, threshold.empty)

    per_q = len(CHOICES)
    out: List[DetectedQuestion] = []
    for q in range(question_count):
        lo, hi = q * per_q, (q + 1) * per_q
        out.append(classify_question(q + 1, spots[lo:hi], values[lo:hi], threshold, defaults))
    return out


# ------------------------------------------------------------------------------
# Review crops
# ------------------------------------------------------------------------------

def crop_question_row(page: PageImage, question: DetectedQuestion, fmt: str = "standard") -> Optional[str]:
    """Base64 PNG of one question's bubble strip, for showing flagged answers to a reviewer."""
    if not question.bubbles:
        return None
    scale = grid_scale(page.width)
    first = question.bubbles[0]
    pad = 10 if fmt == "quiz" else 15
    x0 = max(0, first.x - int(pad * scale))
    y0 = max(0, first.y - int(20 * scale))
    x1 = min(page.width, x0 + int(200 * scale))
    y1 = min(page.height, y0 + int(40 * scale))
    if x1 <= x0 or y1 <= y0:
        return None
    ok, buf = cv.imencode(".png", page.gray[y0:y1, x0:x1])
    if not ok:
        return None
    return base64.b64encode(buf.tobytes()).decode("ascii")


def crops_for_flagged(page: PageImage, questions: Sequence[DetectedQuestion], fmt: str = "standard") -> Dict[int, str]:
    crops: Dict[int, str] = {}
    for q in questions:
        if not (q.multiple_detected or q.selected is None):
            continue
        img = crop_question_row(page, q, fmt)
        if img:
            crops[q.question_number] = img
    return crops
