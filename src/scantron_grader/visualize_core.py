# src/scantron_grader/visualize_core.py

from __future__ import annotations
from pathlib import Path
from typing import List, Optional, Tuple

import cv2 as cv
import numpy as np

from .layout import mark_geometry, name_region, qr_region
from .models import DetectedQuestion, PageImage
from .scoring_defaults import DEFAULTS, DetectionDefaults
from .tools.bubble_detect import detect_bubbles
from .tools.orientation import normalize_orientation
from .tools.page_io import load_pages

Color = Tuple[int, int, int]

MARK_COLOR: Color = (255, 128, 0)
QR_COLOR: Color = (0, 165, 255)
NAME_COLOR: Color = (219, 112, 147)
SELECTED_COLOR: Color = (0, 200, 0)
MULTI_COLOR: Color = (0, 0, 255)
EMPTY_COLOR: Color = (160, 160, 160)


def _label(img_bgr: np.ndarray, text: str, org: Tuple[int, int], color: Color) -> None:
    # dark outline first so the text reads on any background
    cv.putText(img_bgr, text, org, cv.FONT_HERSHEY_SIMPLEX, 0.5, (0, 0, 0), 3, cv.LINE_AA)
    cv.putText(img_bgr, text, org, cv.FONT_HERSHEY_SIMPLEX, 0.5, color, 1, cv.LINE_AA)


def _rect(img_bgr: np.ndarray, x: int, y: int, w: int, h: int, color: Color, label: Optional[str] = None) -> None:
    cv.rectangle(img_bgr, (x, y), (x + w, y + h), color, 2)
    if label:
        _label(img_bgr, label, (x + 4, y + h + 16), color)


def draw_regions(img_bgr: np.ndarray, width: int, height: int) -> None:
    """Registration-mark boxes, QR box and printed-name box."""
    size, offset = mark_geometry(width)
    for (x, y) in (
        (offset, offset),
        (width - offset - size, offset),
        (offset, height - offset - size),
        (width - offset - size, height - offset - size),
    ):
        _rect(img_bgr, x, y, size, size, MARK_COLOR)
    x, y, w, h = qr_region(width)
    _rect(img_bgr, x, y, w, h, QR_COLOR, "qr")
    x, y, w, h = name_region(width)
    _rect(img_bgr, x, y, w, h, NAME_COLOR, "name")


def draw_questions(img_bgr: np.ndarray, questions: List[DetectedQuestion], label_density: bool = False) -> None:
    for q in questions:
        for b in q.bubbles:
            if b.choice == q.selected:
                color = MULTI_COLOR if q.multiple_detected else SELECTED_COLOR
                thickness = 2
            elif b.filled:
                color = MULTI_COLOR
                thickness = 2
            else:
                color = EMPTY_COLOR
                thickness = 1
            cv.circle(img_bgr, (b.x, b.y), max(1, b.radius), color, thickness, lineType=cv.LINE_AA)
            if label_density:
                _label(img_bgr, f"{int(round(b.fill * 100))}", (b.x - 10, b.y - b.radius - 4), color)
        if q.bubbles:
            first = q.bubbles[0]
            _label(img_bgr, str(q.question_number), (first.x - 3 * first.radius - 10, first.y + 5), SELECTED_COLOR)


def render_overlay(
    page: PageImage,
    question_count: int,
    fmt: str = "standard",
    label_density: bool = False,
    defaults: DetectionDefaults = DEFAULTS,
) -> np.ndarray:
    """Upright page with every sampled region drawn on it (BGR)."""
    upright, _ = normalize_orientation(page, defaults)
    img_bgr = cv.cvtColor(upright.gray, cv.COLOR_GRAY2BGR)
    draw_regions(img_bgr, upright.width, upright.height)
    draw_questions(img_bgr, detect_bubbles(upright, question_count, fmt, defaults), label_density)
    return img_bgr


def overlay_image(
    input_path: str,
    question_count: int,
    out_image: str = "overlay.png",
    fmt: str = "standard",
    page_index: int = 0,
    label_density: bool = False,
    defaults: DetectionDefaults = DEFAULTS,
) -> str:
    """
    Draw the sampling geometry over one page of `input_path` and write a PNG,
    to check that the grid lines up with a scan before grading a batch.
    """
    pages = load_pages(input_path)
    if not 0 <= page_index < len(pages):
        raise ValueError(f"Page index {page_index} out of range (0..{len(pages) - 1})")
    img_bgr = render_overlay(pages[page_index], question_count, fmt, label_density, defaults)

    out_path = Path(out_image).expanduser().resolve()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    cv.imwrite(str(out_path), img_bgr)
    return str(out_path)
