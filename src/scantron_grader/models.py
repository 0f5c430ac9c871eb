# scantron_grader/models.py
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import cv2 as cv
import numpy as np

from .errors import SourceError
from . import layout


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ------------------------------------------------------------------------------
# Page images
# ------------------------------------------------------------------------------

@dataclass
class PageImage:
    """A single rasterized page, kept as an 8-bit grayscale array (H x W)."""
    gray: np.ndarray

    @property
    def width(self) -> int:
        return int(self.gray.shape[1])

    @property
    def height(self) -> int:
        return int(self.gray.shape[0])

    @property
    def dpi_scale(self) -> float:
        # relative to the 72-DPI letter layout the sheet was drawn in
        return layout.dpi_scale(self.width)

    @classmethod
    def from_array(cls, img: np.ndarray) -> "PageImage":
        if img is None or img.size == 0:
            raise SourceError("Empty image array")
        if img.ndim == 2:
            gray = img
        elif img.ndim == 3 and img.shape[2] == 4:
            gray = cv.cvtColor(img, cv.COLOR_BGRA2GRAY)
        elif img.ndim == 3 and img.shape[2] == 3:
            gray = cv.cvtColor(img, cv.COLOR_BGR2GRAY)
        elif img.ndim == 3 and img.shape[2] == 1:
            gray = img[:, :, 0]
        else:
            raise SourceError(f"Unsupported image shape: {img.shape}")
        if gray.dtype != np.uint8:
            gray = np.clip(gray, 0, 255).astype(np.uint8)
        return cls(np.ascontiguousarray(gray))

    @classmethod
    def from_bytes(cls, data: bytes) -> "PageImage":
        buf = np.frombuffer(data, dtype=np.uint8)
        img = cv.imdecode(buf, cv.IMREAD_GRAYSCALE) if buf.size else None
        if img is None:
            raise SourceError("Could not decode image bytes")
        return cls(img)

    def rotated_180(self) -> "PageImage":
        return PageImage(cv.rotate(self.gray, cv.ROTATE_180))


# ------------------------------------------------------------------------------
# Identity
# ------------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolvedIdentity:
    assignment_id: str
    student_id: str
    format: Optional[str] = None
    variant: Optional[str] = None
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ResolvedIdentity":
        return cls(
            assignment_id=str(d["assignment_id"]),
            student_id=str(d["student_id"]),
            format=d.get("format"),
            variant=d.get("variant"),
            version=d.get("version"),
        )


@dataclass
class LookupRecord:
    key: str
    assignment_id: str
    student_id: str
    format: Optional[str] = None
    variant: Optional[str] = None
    created_at: Optional[datetime] = None
    display_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_identity(self) -> ResolvedIdentity:
        return ResolvedIdentity(
            assignment_id=self.assignment_id,
            student_id=self.student_id,
            format=self.format,
            variant=self.variant,
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["created_at"] = self.created_at.isoformat() if self.created_at else None
        return d


# ------------------------------------------------------------------------------
# Detection output
# ------------------------------------------------------------------------------

@dataclass
class BubbleSample:
    question_number: int
    choice: str
    x: int
    y: int
    radius: int
    intensity: float
    filled: bool
    confidence: float

    @property
    def fill(self) -> float:
        return 1.0 - self.intensity / 255.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BubbleSample":
        return cls(
            question_number=int(d["question_number"]),
            choice=str(d["choice"]),
            x=int(d.get("x", 0)),
            y=int(d.get("y", 0)),
            radius=int(d.get("radius", 0)),
            intensity=float(d["intensity"]),
            filled=bool(d["filled"]),
            confidence=float(d["confidence"]),
        )


@dataclass
class DetectedQuestion:
    question_number: int
    row: int
    column: int
    bubbles: List[BubbleSample]
    selected: Optional[str] = None
    multiple_detected: bool = False

    @property
    def confidence(self) -> float:
        # weakest bubble decides
        if not self.bubbles:
            return 0.0
        return min(b.confidence for b in self.bubbles)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["confidence"] = self.confidence
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DetectedQuestion":
        return cls(
            question_number=int(d["question_number"]),
            row=int(d.get("row", 0)),
            column=int(d.get("column", 0)),
            bubbles=[BubbleSample.from_dict(b) for b in d.get("bubbles", [])],
            selected=d.get("selected"),
            multiple_detected=bool(d.get("multiple_detected", False)),
        )


@dataclass
class ParsedPage:
    page_number: int
    identity: Optional[ResolvedIdentity] = None
    identity_error: Optional[str] = None
    ocr_name: Optional[str] = None
    questions: List[DetectedQuestion] = field(default_factory=list)
    confidence: float = 0.0
    flags: List[str] = field(default_factory=list)
    image_width: int = 0
    image_height: int = 0
    flagged_crops: Dict[int, str] = field(default_factory=dict)   # question -> base64 PNG
    thumbnail: Optional[str] = None                               # base64 JPEG

    @property
    def has_answers(self) -> bool:
        return any(q.selected is not None for q in self.questions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_number": self.page_number,
            "identity": self.identity.to_dict() if self.identity else None,
            "identity_error": self.identity_error,
            "ocr_name": self.ocr_name,
            "questions": [q.to_dict() for q in self.questions],
            "confidence": self.confidence,
            "flags": list(self.flags),
            "image_width": self.image_width,
            "image_height": self.image_height,
        }


# ------------------------------------------------------------------------------
# Course data
# ------------------------------------------------------------------------------

@dataclass
class Question:
    id: str
    correct_answer: str
    points: float = 1.0
    standard_ref: Optional[str] = None
    type: str = "multiple_choice"

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Question":
        return cls(
            id=str(d["id"]),
            correct_answer=str(d.get("correct_answer", "")).strip().upper(),
            points=float(d.get("points", 1)),
            standard_ref=d.get("standard_ref"),
            type=str(d.get("type", "multiple_choice")),
        )


@dataclass
class Assessment:
    id: str
    questions: List[Question]
    variants: Dict[str, List[Question]] = field(default_factory=dict)
    title: str = ""

    def questions_for(self, variant: Optional[str]) -> List[Question]:
        """Question list for a variant tag, falling back to the base list."""
        if variant is not None and str(variant) in self.variants:
            return self.variants[str(variant)]
        return self.questions

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Assessment":
        variants = {
            str(tag): [Question.from_dict(q) for q in qs]
            for tag, qs in (d.get("variants") or {}).items()
        }
        return cls(
            id=str(d["id"]),
            questions=[Question.from_dict(q) for q in d.get("questions", [])],
            variants=variants,
            title=str(d.get("title", "")),
        )


@dataclass
class Assignment:
    id: str
    section_id: str
    assessment_id: str
    name: str = ""

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Assignment":
        return cls(
            id=str(d["id"]),
            section_id=str(d["section_id"]),
            assessment_id=str(d["assessment_id"]),
            name=str(d.get("name", "")),
        )


@dataclass
class Student:
    id: str
    first_name: str = ""
    last_name: str = ""

    @property
    def display_name(self) -> str:
        return f"{self.last_name}, {self.first_name}".strip(", ")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Student":
        return cls(
            id=str(d["id"]),
            first_name=str(d.get("first_name", "")),
            last_name=str(d.get("last_name", "")),
        )


@dataclass
class Roster:
    section_id: str
    students: List[Student] = field(default_factory=list)

    def get(self, student_id: str) -> Optional[Student]:
        for s in self.students:
            if s.id == student_id:
                return s
        return None

    @property
    def student_ids(self) -> List[str]:
        return [s.id for s in self.students]

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Roster":
        return cls(
            section_id=str(d.get("section_id", "")),
            students=[Student.from_dict(s) for s in d.get("students", [])],
        )


# ------------------------------------------------------------------------------
# Grades
# ------------------------------------------------------------------------------

@dataclass
class AnswerKeyEntry:
    question_number: int
    question_id: str
    correct_choice: str
    points: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnswerKeyEntry":
        return cls(
            question_number=int(d["question_number"]),
            question_id=str(d["question_id"]),
            correct_choice=str(d["correct_choice"]),
            points=float(d.get("points", 1)),
        )


@dataclass
class AnswerResult:
    question_number: int
    question_id: str
    selected: Optional[str]
    correct_choice: Optional[str]
    confidence: float
    correct: bool
    multiple_selected: bool = False
    unclear: bool = False
    points: float = 1.0
    standard_ref: Optional[str] = None
    overridden: bool = False

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AnswerResult":
        return cls(
            question_number=int(d["question_number"]),
            question_id=str(d.get("question_id", "")),
            selected=d.get("selected"),
            correct_choice=d.get("correct_choice"),
            confidence=float(d.get("confidence", 0.0)),
            correct=bool(d.get("correct", False)),
            multiple_selected=bool(d.get("multiple_selected", False)),
            unclear=bool(d.get("unclear", False)),
            points=float(d.get("points", 1)),
            standard_ref=d.get("standard_ref"),
            overridden=bool(d.get("overridden", False)),
        )


@dataclass(frozen=True)
class GradeFlag:
    type: str
    message: str
    question_number: Optional[int] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GradeFlag":
        qn = d.get("question_number")
        return cls(type=str(d["type"]), message=str(d.get("message", "")),
                   question_number=int(qn) if qn is not None else None)


@dataclass
class GradeRecord:
    id: str
    student_id: str
    assignment_id: str
    variant_id: Optional[str]
    raw_score: int
    total_questions: int
    percentage: float
    points: float
    max_points: float
    answers: List[AnswerResult]
    flags: List[GradeFlag] = field(default_factory=list)
    needs_review: bool = False
    source_page_number: Optional[int] = None
    review_notes: Optional[str] = None
    graded_at: str = field(default_factory=_utcnow_iso)
    flagged_crops: Dict[int, str] = field(default_factory=dict)

    def flag_types(self) -> List[str]:
        return [f.type for f in self.flags]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GradeRecord":
        return cls(
            id=str(d["id"]),
            student_id=str(d["student_id"]),
            assignment_id=str(d["assignment_id"]),
            variant_id=d.get("variant_id"),
            raw_score=int(d["raw_score"]),
            total_questions=int(d["total_questions"]),
            percentage=float(d["percentage"]),
            points=float(d.get("points", 0)),
            max_points=float(d.get("max_points", 0)),
            answers=[AnswerResult.from_dict(a) for a in d.get("answers", [])],
            flags=[GradeFlag.from_dict(f) for f in d.get("flags", [])],
            needs_review=bool(d.get("needs_review", False)),
            source_page_number=d.get("source_page_number"),
            review_notes=d.get("review_notes"),
            graded_at=str(d.get("graded_at") or _utcnow_iso()),
            flagged_crops={int(k): v for k, v in (d.get("flagged_crops") or {}).items()},
        )


@dataclass
class UnidentifiedPage:
    page_number: int
    page_type: str
    confidence: float
    detected_answers: List[DetectedQuestion]
    ocr_name: Optional[str] = None
    suggested_student_ids: List[str] = field(default_factory=list)
    candidate_student_ids: List[str] = field(default_factory=list)
    identity_error: Optional[str] = None
    thumbnail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_number": self.page_number,
            "page_type": self.page_type,
            "confidence": self.confidence,
            "detected_answers": [q.to_dict() for q in self.detected_answers],
            "ocr_name": self.ocr_name,
            "suggested_student_ids": list(self.suggested_student_ids),
            "candidate_student_ids": list(self.candidate_student_ids),
            "identity_error": self.identity_error,
            "thumbnail": self.thumbnail,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "UnidentifiedPage":
        return cls(
            page_number=int(d["page_number"]),
            page_type=str(d.get("page_type", "unidentified_scantron")),
            confidence=float(d.get("confidence", 0.0)),
            detected_answers=[DetectedQuestion.from_dict(q) for q in d.get("detected_answers", [])],
            ocr_name=d.get("ocr_name"),
            suggested_student_ids=list(d.get("suggested_student_ids") or []),
            candidate_student_ids=list(d.get("candidate_student_ids") or []),
            identity_error=d.get("identity_error"),
            thumbnail=d.get("thumbnail"),
        )


@dataclass
class GradeStats:
    total_students: int = 0
    average_score: float = 0.0
    median_score: float = 0.0
    high_score: float = 0.0
    low_score: float = 0.0
    standard_deviation: float = 0.0
    by_variant: Dict[str, Dict[str, float]] = field(default_factory=dict)
    by_question: Dict[int, Dict[str, float]] = field(default_factory=dict)
    by_standard: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["by_question"] = {str(k): v for k, v in self.by_question.items()}
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GradeStats":
        return cls(
            total_students=int(d.get("total_students", 0)),
            average_score=float(d.get("average_score", 0)),
            median_score=float(d.get("median_score", 0)),
            high_score=float(d.get("high_score", 0)),
            low_score=float(d.get("low_score", 0)),
            standard_deviation=float(d.get("standard_deviation", 0)),
            by_variant=dict(d.get("by_variant") or {}),
            by_question={int(k): v for k, v in (d.get("by_question") or {}).items()},
            by_standard=dict(d.get("by_standard") or {}),
        )


@dataclass
class AssignmentGrades:
    assignment_id: str
    section_id: str
    assessment_id: str
    records: List[GradeRecord]
    stats: GradeStats
    graded_at: str = field(default_factory=_utcnow_iso)

    def record(self, record_id: str) -> Optional[GradeRecord]:
        for r in self.records:
            if r.id == record_id:
                return r
        return None

    def graded_student_ids(self) -> List[str]:
        return [r.student_id for r in self.records]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assignment_id": self.assignment_id,
            "section_id": self.section_id,
            "assessment_id": self.assessment_id,
            "graded_at": self.graded_at,
            "records": [r.to_dict() for r in self.records],
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AssignmentGrades":
        return cls(
            assignment_id=str(d["assignment_id"]),
            section_id=str(d["section_id"]),
            assessment_id=str(d["assessment_id"]),
            records=[GradeRecord.from_dict(r) for r in d.get("records", [])],
            stats=GradeStats.from_dict(d.get("stats") or {}),
            graded_at=str(d.get("graded_at") or _utcnow_iso()),
        )


@dataclass(frozen=True)
class GradeOverride:
    record_id: str
    question_number: int
    new_answer: Optional[str]
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "GradeOverride":
        ans = d.get("new_answer")
        return cls(
            record_id=str(d["record_id"]),
            question_number=int(d["question_number"]),
            new_answer=str(ans).strip().upper() if ans not in (None, "") else None,
            reason=d.get("reason"),
        )


@dataclass(frozen=True)
class ProgressEvent:
    stage: str                  # extracting | parsing | grading | complete
    current_page: int = 0
    total_pages: int = 0
    message: str = ""

    @property
    def label(self) -> str:
        if self.stage == "parsing":
            return f"parsing:{self.current_page}/{self.total_pages}"
        return self.stage
