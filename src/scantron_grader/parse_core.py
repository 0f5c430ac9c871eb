# src/scantron_grader/parse_core.py
"""
Per-page detection pipeline:

  dimensions -> orientation -> QR identity -> (OCR name) -> bubbles -> flags

Every page yields a ParsedPage. Identity failures are recorded on the page
(`identity_error`, `qr_error` flag) instead of being raised, so one bad page
never stops a batch.
"""
from __future__ import annotations
import base64
import logging
from typing import Callable, List, Optional, Union

import cv2 as cv

from .layout import is_standard_size
from .models import DetectedQuestion, PageImage, ParsedPage, ResolvedIdentity
from .scoring_defaults import DEFAULTS, DetectionDefaults
from .tools.bubble_detect import crops_for_flagged, detect_bubbles
from .tools.id_resolver import IdResolver
from .tools.orientation import normalize_orientation

log = logging.getLogger(__name__)

# fixed count, or a function of the identity (variant sheets can be shorter/longer)
QuestionCount = Union[int, Callable[[Optional[ResolvedIdentity]], int]]

THUMB_MAX_W = 400
THUMB_MAX_H = 518
THUMB_JPEG_QUALITY = 70


def make_thumbnail(page: PageImage) -> Optional[str]:
    """Base64 JPEG of the page shrunk to fit 400 x 518, for identifying a page by eye."""
    scale = min(THUMB_MAX_W / page.width, THUMB_MAX_H / page.height, 1.0)
    w = max(1, int(page.width * scale))
    h = max(1, int(page.height * scale))
    small = cv.resize(page.gray, (w, h), interpolation=cv.INTER_AREA)
    ok, buf = cv.imencode(".jpg", small, [int(cv.IMWRITE_JPEG_QUALITY), THUMB_JPEG_QUALITY])
    if not ok:
        return None
    return base64.b64encode(buf.tobytes()).decode("ascii")


def question_flags(questions: List[DetectedQuestion]) -> List[str]:
    flags: List[str] = []
    for q in questions:
        if q.multiple_detected:
            flags.append(f"multiple_bubbles_q{q.question_number}")
        if q.selected is None:
            flags.append(f"no_answer_q{q.question_number}")
    return flags


def page_confidence(questions: List[DetectedQuestion], non_standard: bool) -> float:
    conf = 1.0
    if non_standard or any(q.multiple_detected for q in questions):
        conf = 0.5
    for q in questions:
        conf = min(conf, q.confidence)
    return conf


class PageParser:
    def __init__(
        self,
        resolver: IdResolver,
        defaults: DetectionDefaults = DEFAULTS,
        with_images: bool = True,
    ):
        self.resolver = resolver
        self.defaults = defaults
        self.with_images = with_images

    def parse(self, page: PageImage, page_number: int, question_count: QuestionCount) -> ParsedPage:
        flags: List[str] = []
        width, height = page.width, page.height
        log.debug("Page %d: %dx%d px, %.3f px/pt", page_number, width, height, page.dpi_scale)

        # 1) dimensions
        non_standard = not is_standard_size(width, height, self.defaults.dimension_tolerance)
        if non_standard:
            log.warning(
                "Page %d: non-standard dimensions %dx%d (expected 1275x1650); results are less reliable",
                page_number, width, height,
            )
            flags.extend(["non_standard_dimensions", "low_confidence"])

        # 2) orientation
        page, rotated = normalize_orientation(page, self.defaults)
        if rotated:
            log.info("Page %d: upside down, rotated 180", page_number)
            flags.append("rotated_180")

        # 3) identity
        identity: Optional[ResolvedIdentity] = None
        identity_error: Optional[str] = None
        try:
            identity = self.resolver.resolve(page)
            if identity is None:
                identity_error = "QR code not found or unreadable"
        except Exception as e:  # any decoder/lookup failure stays on this page
            log.warning("Page %d: QR read failed: %s", page_number, e)
            identity_error = str(e) or e.__class__.__name__
        if identity is None:
            flags.append("qr_error")

        # 4) OCR name fallback
        ocr_name: Optional[str] = None
        if identity is None:
            ocr_name = self.resolver.read_student_name(page)
            if ocr_name:
                log.info("Page %d: OCR name %r", page_number, ocr_name)

        # 5) bubbles
        fmt = "quiz" if identity is not None and identity.format == "quiz" else "standard"
        count = question_count(identity) if callable(question_count) else int(question_count)
        questions = detect_bubbles(page, count, fmt, self.defaults)

        # 6) flags and confidence
        flags.extend(question_flags(questions))
        confidence = page_confidence(questions, non_standard)

        crops = {}
        thumbnail = None
        if self.with_images:
            crops = crops_for_flagged(page, questions, fmt)
            if identity is None:
                thumbnail = make_thumbnail(page)

        log.info(
            "Page %d: %s, %d question(s), confidence %.2f",
            page_number,
            f"student {identity.student_id}" if identity else "unidentified",
            len(questions), confidence,
        )
        return ParsedPage(
            page_number=page_number,
            identity=identity,
            identity_error=identity_error,
            ocr_name=ocr_name,
            questions=questions,
            confidence=confidence,
            flags=flags,
            image_width=width,
            image_height=height,
            flagged_crops=crops,
            thumbnail=thumbnail,
        )
