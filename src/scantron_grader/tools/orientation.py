"""
orientation.py
--------------
Decide whether a scanned sheet is upside down from its registration marks.

The printed sheet carries four corner marks (72-DPI units, 20pt square,
25pt from each edge):
  - top-right:    filled SQUARE
  - bottom-left:  filled CIRCLE
  - top-left / bottom-right: open L-shapes

A filled square darkens nearly its whole sample box, while a filled circle only
covers about pi/4 of it. Comparing the two diagonal corners therefore tells us
which way up the page is, and a 180 degree turn simply swaps the two boxes.
When the marks only show up on the other diagonal, the same shape comparison
is made there: the page counts as upside down only if turning it would put
the square ahead of the circle. Identical blobs on that diagonal leave the
page as it is.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from ..layout import mark_geometry
from ..models import PageImage
from ..scoring_defaults import DEFAULTS, DetectionDefaults

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CornerDarkness:
    top_left: float
    top_right: float
    bottom_left: float
    bottom_right: float


def region_darkness(gray: np.ndarray, x: int, y: int, size: int, dark_pixel: int = 128) -> float:
    """Percentage (0..100) of pixels below `dark_pixel` inside a size x size box."""
    h, w = gray.shape[:2]
    x0, y0 = max(0, x), max(0, y)
    x1, y1 = min(w, x + size), min(h, y + size)
    if x1 <= x0 or y1 <= y0:
        return 0.0
    box = gray[y0:y1, x0:x1]
    return float(np.count_nonzero(box < dark_pixel)) * 100.0 / float(box.size)


def _corner_origins(width: int, height: int) -> Tuple[int, Tuple[int, int], Tuple[int, int], Tuple[int, int], Tuple[int, int]]:
    size, offset = mark_geometry(width)
    tl = (offset, offset)
    tr = (width - offset - size, offset)
    bl = (offset, height - offset - size)
    br = (width - offset - size, height - offset - size)
    return size, tl, tr, bl, br


def corner_darkness(page: PageImage, defaults: DetectionDefaults = DEFAULTS) -> CornerDarkness:
    size, tl, tr, bl, br = _corner_origins(page.width, page.height)
    g = page.gray
    return CornerDarkness(
        top_left=region_darkness(g, tl[0], tl[1], size, defaults.dark_pixel),
        top_right=region_darkness(g, tr[0], tr[1], size, defaults.dark_pixel),
        bottom_left=region_darkness(g, bl[0], bl[1], size, defaults.dark_pixel),
        bottom_right=region_darkness(g, br[0], br[1], size, defaults.dark_pixel),
    )


def detect_upside_down(page: PageImage, defaults: DetectionDefaults = DEFAULTS) -> bool:
    """
    True when the page should be rotated 180 degrees before sampling.
    Falls back to False whenever the marks are not convincingly found.
    """
    d = corner_darkness(page, defaults)
    log.debug(
        "Corner darkness: TL=%.0f%% TR=%.0f%% BL=%.0f%% BR=%.0f%%",
        d.top_left, d.top_right, d.bottom_left, d.bottom_right,
    )

    present = defaults.corner_dark_pct
    absent = defaults.corner_absent_pct

    if d.top_right > present and d.bottom_left > present:
        # square (denser) should sit top-right
        return d.bottom_left > d.top_right + defaults.circle_margin_pct

    if (d.top_left > present and d.bottom_right > present
            and d.top_right < absent and d.bottom_left < absent):
        # a half turn keeps marks on this diagonal, so only the shapes can tell;
        # circle top-left / square bottom-right flips to square-first
        upside_down = d.top_left + defaults.circle_margin_pct < d.bottom_right
        log.debug("Marks found on the opposite diagonal; upside down=%s", upside_down)
        return upside_down

    log.debug("Orientation marks not found; assuming upright")
    return False


def normalize_orientation(page: PageImage, defaults: DetectionDefaults = DEFAULTS) -> Tuple[PageImage, bool]:
    """Return (upright page, rotated?)."""
    if detect_upside_down(page, defaults):
        return page.rotated_180(), True
    return page, False
