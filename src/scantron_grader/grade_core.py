# src/scantron_grader/grade_core.py
"""
Turn parsed pages into grade records.

Pages are consumed in order. Each identified page becomes one GradeRecord
scored against the answer key of the student's variant (falling back to the
base question list). Pages that cannot be tied to a student are never dropped:
unidentified sheets (and second copies of an already graded student) become
UnidentifiedPage entries carrying their detected answers, any OCR name, name
suggestions, and the roster students still without a record at that point.
"""
from __future__ import annotations
import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

from .models import (
    AnswerKeyEntry,
    AnswerResult,
    Assessment,
    Assignment,
    AssignmentGrades,
    DetectedQuestion,
    GradeFlag,
    GradeRecord,
    ParsedPage,
    Question,
    Roster,
    UnidentifiedPage,
)
from .scoring_defaults import DEFAULTS, DetectionDefaults
from .stats_core import compute_stats
from .tools.name_match import students_by_ids, suggest_students

log = logging.getLogger(__name__)

VALID = "valid_scantron"
UNIDENTIFIED = "unidentified_scantron"
DUPLICATE = "duplicate_scantron"
BLANK = "blank_page"
UNKNOWN = "unknown_document"

# record-level flags that make a record need review
REVIEW_FLAGS = {"student_not_found", "multiple_bubbles", "low_confidence", "assignment_mismatch"}
# question-level flag types an override settles
QUESTION_FLAGS = {"multiple_bubbles", "no_answer", "low_confidence"}


class GradeCalculation(NamedTuple):
    grades: AssignmentGrades
    unidentified_pages: List[UnidentifiedPage]
    answer_key: List[AnswerKeyEntry]


# ---------- answer keys ----------
def answer_key_for(questions: Sequence[Question]) -> List[AnswerKeyEntry]:
    """Multiple-choice questions only; numbering follows position in the full list."""
    key: List[AnswerKeyEntry] = []
    for i, q in enumerate(questions, start=1):
        if q.type == "multiple_choice":
            key.append(AnswerKeyEntry(i, q.id, q.correct_answer.upper(), q.points))
    return key


def variant_answer_key(assessment: Assessment, variant: Optional[str]) -> List[AnswerKeyEntry]:
    return answer_key_for(assessment.questions_for(variant))


# ---------- page classification ----------
def classify_page(page: ParsedPage) -> str:
    if page.identity is not None:
        return VALID
    if "qr_error" in page.flags:
        return UNIDENTIFIED
    if not page.has_answers:
        return BLANK
    return UNKNOWN


# ---------- scoring ----------
def score_answer(
    detected: DetectedQuestion,
    question: Optional[Question],
    correct_choice: Optional[str],
    defaults: DetectionDefaults = DEFAULTS,
) -> AnswerResult:
    confidence = detected.confidence
    selected = detected.selected.upper() if detected.selected else None
    return AnswerResult(
        question_number=detected.question_number,
        question_id=question.id if question else "",
        selected=selected,
        correct_choice=correct_choice,
        confidence=confidence,
        correct=selected is not None and selected == correct_choice,
        multiple_selected=detected.multiple_detected,
        unclear=confidence < defaults.confidence_floor,
        points=question.points if question else 1.0,
        standard_ref=question.standard_ref if question else None,
    )


def answer_flags(answer: AnswerResult, defaults: DetectionDefaults = DEFAULTS) -> List[GradeFlag]:
    qn = answer.question_number
    flags: List[GradeFlag] = []
    if answer.multiple_selected:
        flags.append(GradeFlag("multiple_bubbles", f"Multiple bubbles filled for question {qn}", qn))
    if answer.selected is None:
        flags.append(GradeFlag("no_answer", f"No answer detected for question {qn}", qn))
    if answer.selected is not None and answer.confidence < defaults.confidence_floor:
        flags.append(GradeFlag(
            "low_confidence", f"Low confidence ({answer.confidence * 100:.0f}%) for question {qn}", qn,
        ))
    return flags


def needs_review(flags: Iterable[GradeFlag]) -> bool:
    return any(f.type in REVIEW_FLAGS for f in flags)


def totals(answers: Sequence[AnswerResult]) -> Tuple[int, float, float, float]:
    """(raw score, points earned, max points, percentage)."""
    raw = sum(1 for a in answers if a.correct)
    points = sum(a.points for a in answers if a.correct)
    max_points = sum(a.points for a in answers)
    percentage = raw / len(answers) * 100.0 if answers else 0.0
    return raw, points, max_points, percentage


def build_grade_record(
    assignment_id: str,
    student_id: str,
    detected: Sequence[DetectedQuestion],
    questions: Sequence[Question],
    roster: Roster,
    source_page_number: Optional[int] = None,
    variant: Optional[str] = None,
    page_flags: Sequence[GradeFlag] = (),
    defaults: DetectionDefaults = DEFAULTS,
) -> GradeRecord:
    key = {e.question_number: e.correct_choice for e in answer_key_for(questions)}
    flags: List[GradeFlag] = list(page_flags)

    if roster.get(student_id) is None:
        flags.append(GradeFlag("student_not_found", f"Student ID {student_id} not found in roster"))

    answers: List[AnswerResult] = []
    for d in detected:
        idx = d.question_number - 1
        question = questions[idx] if 0 <= idx < len(questions) else None
        answer = score_answer(d, question, key.get(d.question_number), defaults)
        answers.append(answer)
        flags.extend(answer_flags(answer, defaults))

    raw, points, max_points, percentage = totals(answers)
    return GradeRecord(
        id=f"{assignment_id}-{student_id}",
        student_id=student_id,
        assignment_id=assignment_id,
        variant_id=variant,
        raw_score=raw,
        total_questions=len(answers),
        percentage=percentage,
        points=points,
        max_points=max_points,
        answers=answers,
        flags=flags,
        needs_review=needs_review(flags),
        source_page_number=source_page_number,
    )


def page_level_flags(page: ParsedPage, assignment_id: str) -> List[GradeFlag]:
    flags: List[GradeFlag] = []
    if "non_standard_dimensions" in page.flags:
        flags.append(GradeFlag(
            "non_standard_dimensions",
            f"Page {page.page_number} is {page.image_width}x{page.image_height}, expected 1275x1650",
        ))
        flags.append(GradeFlag("low_confidence", "Bubble positions are unreliable on this page"))
    if "rotated_180" in page.flags:
        flags.append(GradeFlag("rotated_180", f"Page {page.page_number} was rotated 180 degrees"))
    if page.identity is not None and page.identity.assignment_id != assignment_id:
        flags.append(GradeFlag(
            "assignment_mismatch",
            f"Sheet belongs to assignment {page.identity.assignment_id}",
        ))
    return flags


# ---------- batch ----------
def _unidentified(
    page: ParsedPage,
    page_type: str,
    roster: Roster,
    graded: Set[str],
    defaults: DetectionDefaults,
) -> UnidentifiedPage:
    candidates = [sid for sid in roster.student_ids if sid not in graded]
    suggestions: List[str] = []
    if page.ocr_name:
        suggestions = suggest_students(
            page.ocr_name,
            students_by_ids(roster.students, candidates),
            limit=defaults.name_match_limit,
            min_score=defaults.name_match_min_score,
        )
        if suggestions:
            log.info("Page %d: OCR suggests %s", page.page_number, ", ".join(suggestions))
    return UnidentifiedPage(
        page_number=page.page_number,
        page_type=page_type,
        confidence=page.confidence,
        detected_answers=list(page.questions),
        ocr_name=page.ocr_name,
        suggested_student_ids=suggestions,
        candidate_student_ids=candidates,
        identity_error=page.identity_error,
        thumbnail=page.thumbnail,
    )


def calculate_grades(
    pages: Sequence[ParsedPage],
    assignment: Assignment,
    assessment: Assessment,
    roster: Roster,
    defaults: DetectionDefaults = DEFAULTS,
) -> GradeCalculation:
    records: List[GradeRecord] = []
    unidentified: List[UnidentifiedPage] = []
    graded: Set[str] = set()

    for page in pages:
        page_type = classify_page(page)

        if page_type != VALID:
            if page_type == UNIDENTIFIED:
                log.info("Page %d: unidentified (%s)", page.page_number, page.identity_error or "no QR")
                unidentified.append(_unidentified(page, UNIDENTIFIED, roster, graded, defaults))
            else:
                log.info("Page %d: classified as %s", page.page_number, page_type)
            continue

        identity = page.identity
        if identity.student_id in graded:
            log.warning("Page %d: student %s already graded on this run", page.page_number, identity.student_id)
            dup = _unidentified(page, DUPLICATE, roster, graded, defaults)
            dup.identity_error = f"Duplicate sheet for student {identity.student_id}"
            unidentified.append(dup)
            continue
        graded.add(identity.student_id)

        questions = assessment.questions_for(identity.variant)
        record = build_grade_record(
            assignment_id=assignment.id,
            student_id=identity.student_id,
            detected=page.questions,
            questions=questions,
            roster=roster,
            source_page_number=page.page_number,
            variant=identity.variant,
            page_flags=page_level_flags(page, assignment.id),
            defaults=defaults,
        )
        record.flagged_crops = dict(page.flagged_crops)
        records.append(record)

    grades = AssignmentGrades(
        assignment_id=assignment.id,
        section_id=assignment.section_id,
        assessment_id=assessment.id,
        records=records,
        stats=compute_stats(records),
    )
    return GradeCalculation(grades, unidentified, variant_answer_key(assessment, None))


def summarize_pages(pages: Sequence[ParsedPage], unidentified: Sequence[UnidentifiedPage]) -> Dict[str, int]:
    """Page counts by outcome; the four buckets always add up to total_pages."""
    types = [classify_page(p) for p in pages]
    blank = types.count(BLANK)
    unknown = types.count(UNKNOWN)
    unresolved = len(unidentified)
    return {
        "total_pages": len(pages),
        "identified_pages": len(pages) - unresolved - blank - unknown,
        "unidentified_pages": unresolved,
        "blank_pages": blank,
        "unknown_documents": unknown,
    }
