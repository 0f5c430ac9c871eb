from __future__ import annotations
from typing import Dict, List, Optional

import cv2 as cv
import numpy as np
import pytest

from scantron_grader.layout import CANONICAL_HEIGHT, CANONICAL_WIDTH, bubble_centers, mark_geometry
from scantron_grader.models import (
    Assessment,
    Assignment,
    BubbleSample,
    DetectedQuestion,
    PageImage,
    ParsedPage,
    Question,
    ResolvedIdentity,
    Roster,
    Student,
)


def draw_sheet(
    answers: Dict[int, str],
    question_count: int = 20,
    fmt: str = "standard",
    width: int = CANONICAL_WIDTH,
    height: int = CANONICAL_HEIGHT,
    fill: int = 30,
    extra_marks: Optional[Dict[int, str]] = None,
    marks: bool = True,
) -> np.ndarray:
    """
    White sheet with registration marks (square top-right, circle bottom-left),
    open bubble outlines and filled disks for `answers` {question: choice}.
    `extra_marks` adds a second, lighter mark to a question.
    """
    img = np.full((height, width), 255, np.uint8)
    if marks:
        size, offset = mark_geometry(width)
        cv.rectangle(img, (width - offset - size, offset), (width - offset - 1, offset + size - 1), 0, -1)
        c = (offset + size // 2, height - offset - size // 2 - 1)
        cv.circle(img, c, size // 2, 0, -1)

    for spot in bubble_centers(question_count, width, fmt):
        if answers.get(spot.question_number) == spot.choice:
            cv.circle(img, (spot.x, spot.y), spot.radius, fill, -1)
        elif extra_marks and extra_marks.get(spot.question_number) == spot.choice:
            cv.circle(img, (spot.x, spot.y), spot.radius, fill + 10, -1)
        else:
            cv.circle(img, (spot.x, spot.y), spot.radius, 0, 1)
    return img


@pytest.fixture
def sheet():
    def _make(answers, **kw) -> PageImage:
        return PageImage(draw_sheet(answers, **kw))
    return _make


class FakeDecoder:
    """Stands in for QrDecoder: returns `texts` in order, one per call."""

    def __init__(self, *texts: Optional[str]):
        self.texts = list(texts)
        self.calls = 0

    def decode(self, gray):
        self.calls += 1
        if not self.texts:
            return None
        return self.texts.pop(0)


@pytest.fixture
def roster() -> Roster:
    return Roster(
        section_id="sec-1",
        students=[
            Student("s1", "Ada", "Lovelace"),
            Student("s2", "Alan", "Turing"),
            Student("s3", "Grace", "Hopper"),
        ],
    )


@pytest.fixture
def assessment() -> Assessment:
    questions = [Question(f"q{i}", c, standard_ref="STD.1" if i <= 2 else "STD.2")
                 for i, c in enumerate("ABCD", start=1)]
    variant = [Question(f"v{i}", c) for i, c in enumerate("DCBA", start=1)]
    return Assessment(id="asmt-1", questions=questions, variants={"2": variant}, title="Unit test")


@pytest.fixture
def assignment() -> Assignment:
    return Assignment(id="hw-1", section_id="sec-1", assessment_id="asmt-1", name="Homework 1")


def detected_questions(marks: str, confidence: float = 0.95, multiple=()) -> List[DetectedQuestion]:
    """
    DetectedQuestion list from a string such as "AB-D" ('-' is a blank).
    Question numbers listed in `multiple` are marked as double-bubbled.
    """
    out = []
    for n, mark in enumerate(marks, start=1):
        selected = None if mark == "-" else mark
        bubbles = [
            BubbleSample(n, c, 0, 0, 15, 30.0 if c == selected else 250.0, c == selected, confidence)
            for c in "ABCD"
        ]
        out.append(DetectedQuestion(n, n - 1, 0, bubbles, selected, n in multiple))
    return out


def parsed_page(page_number: int, student_id: Optional[str], marks: str, **kw) -> ParsedPage:
    identity = None
    if student_id is not None:
        identity = ResolvedIdentity(kw.pop("assignment_id", "hw-1"), student_id, variant=kw.pop("variant", None))
    flags = kw.pop("flags", [] if identity else ["qr_error"])
    return ParsedPage(
        page_number=page_number,
        identity=identity,
        questions=detected_questions(marks, **kw),
        confidence=0.95,
        flags=flags,
        image_width=1275,
        image_height=1650,
    )
