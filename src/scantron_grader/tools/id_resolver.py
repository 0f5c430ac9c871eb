"""
id_resolver.py
--------------
Recover {assignment, student, format, variant} from a page.

QR strategies, tried in order until one decodes to a usable identity:
  1) full page, 2x
  2) QR box only (top-left 120pt), 3x; then 3x sharpened
  3) full page rotated 180, 2x
  4) full page at 1.5x, 2.5x, 3x
  5) full page, 2x sharpened
  6) full page binarised at a fixed threshold, 2x

Payload schemas:
  A) "TH:XXXXXXXX"       short key, resolved through the LookupStore
  B) {"v": 1|2, ...}     inline JSON: aid, sid, fmt, dok (variant), var, ver
  anything else is rejected.
"""

from __future__ import annotations
import json
import logging
from typing import Callable, Iterator, List, Optional, Tuple

import cv2 as cv
import numpy as np

from ..layout import qr_region
from ..lookup_store import LookupStore, is_short_key_payload, parse_qr_string
from ..models import PageImage, ResolvedIdentity
from ..scoring_defaults import DEFAULTS, DetectionDefaults
from .name_ocr import NameReader
from .qr_decode import QrDecoder, binarize, prepare

log = logging.getLogger(__name__)

INLINE_VERSIONS = (1, 2)


# ------------------------------------------------------------------------------
# Payloads
# ------------------------------------------------------------------------------

def _opt_str(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def parse_inline_payload(text: str) -> Optional[ResolvedIdentity]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError):
        log.debug("QR text is not JSON: %r", text)
        return None
    if not isinstance(data, dict) or data.get("v") not in INLINE_VERSIONS:
        log.debug("Unsupported QR payload version: %r", data.get("v") if isinstance(data, dict) else None)
        return None
    aid, sid = data.get("aid"), data.get("sid")
    if not aid or not sid:
        return None
    variant = data.get("dok")
    if variant is None:
        variant = data.get("var")
    return ResolvedIdentity(
        assignment_id=str(aid),
        student_id=str(sid),
        format=_opt_str(data.get("fmt")),
        variant=_opt_str(variant),
        version=_opt_str(data.get("ver")),
    )


def parse_payload(text: str, store: Optional[LookupStore]) -> Optional[ResolvedIdentity]:
    """Turn decoded QR text into an identity, or None if the payload is not ours."""
    if not text:
        return None
    if is_short_key_payload(text):
        key = parse_qr_string(text)
        if key is None or store is None:
            return None
        record = store.get(key)
        if record is None:
            log.debug("Short key %s not found in lookup store", key)
            return None
        return record.to_identity()
    return parse_inline_payload(text)


# ------------------------------------------------------------------------------
# Strategies
# ------------------------------------------------------------------------------

Strategy = Tuple[str, Callable[[], np.ndarray]]


def qr_strategies(page: PageImage, defaults: DetectionDefaults = DEFAULTS) -> List[Strategy]:
    """Named, lazily-built candidate images in the order they should be tried."""
    gray = page.gray
    width = page.width

    def region() -> np.ndarray:
        x, y, size, _ = qr_region(width)
        return gray[y:y + size, x:x + size]

    def region_at(use_sharpen: bool) -> np.ndarray:
        crop = region()
        if crop.size == 0:
            return crop
        return prepare(crop, crop.shape[1], 3, use_sharpen)

    out: List[Strategy] = [
        ("full_2x", lambda: prepare(gray, width, 2)),
        ("region_3x", lambda: region_at(False)),
        ("region_3x_sharp", lambda: region_at(True)),
        ("rotated_2x", lambda: prepare(cv.rotate(gray, cv.ROTATE_180), width, 2)),
    ]
    for s in (1.5, 2.5, 3):
        out.append((f"full_{s}x", lambda s=s: prepare(gray, width, s)))
    out.append(("full_2x_sharp", lambda: prepare(gray, width, 2, True)))
    out.append(("binarized_2x", lambda: prepare(binarize(gray, defaults.qr_binarize), width, 2)))
    return out


# ------------------------------------------------------------------------------
# Resolver
# ------------------------------------------------------------------------------

class IdResolver:
    def __init__(
        self,
        store: Optional[LookupStore] = None,
        name_reader: Optional[NameReader] = None,
        decoder: Optional[QrDecoder] = None,
        defaults: DetectionDefaults = DEFAULTS,
    ):
        self.store = store
        self.name_reader = name_reader
        self.decoder = decoder or QrDecoder()
        self.defaults = defaults

    def iter_decoded(self, page: PageImage) -> Iterator[Tuple[str, str]]:
        for name, build in qr_strategies(page, self.defaults):
            img = build()
            if img is None or img.size == 0:
                continue
            text = self.decoder.decode(img)
            log.debug("QR strategy %s: %s", name, "decoded" if text else "nothing")
            if text:
                yield name, text

    def resolve(self, page: PageImage) -> Optional[ResolvedIdentity]:
        """
        First identity any strategy produces. A decoded-but-rejected payload does
        not stop the search; later strategies may still read a valid one.
        Lookup store failures propagate.
        """
        for name, text in self.iter_decoded(page):
            identity = parse_payload(text, self.store)
            if identity is not None:
                log.debug("Identity from %s: %s/%s", name, identity.assignment_id, identity.student_id)
                return identity
        return None

    def read_student_name(self, page: PageImage) -> Optional[str]:
        if self.name_reader is None:
            return None
        return self.name_reader.read_name(page)
