# src/scantron_grader/override_core.py
"""
Reviewer corrections. Both operations return new values; the grades and pages
passed in are left untouched.
"""
from __future__ import annotations
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import AssignmentError
from .grade_core import QUESTION_FLAGS, build_grade_record, needs_review, totals
from .models import (
    AnswerResult,
    Assessment,
    AssignmentGrades,
    GradeOverride,
    GradeRecord,
    Roster,
    UnidentifiedPage,
)
from .scoring_defaults import DEFAULTS, DetectionDefaults
from .stats_core import compute_stats

log = logging.getLogger(__name__)


def collapse_overrides(overrides: Sequence[GradeOverride]) -> Dict[Tuple[str, int], GradeOverride]:
    """Last override wins for each (record, question) pair."""
    latest: Dict[Tuple[str, int], GradeOverride] = {}
    for o in overrides:
        latest[(o.record_id, o.question_number)] = o
    return latest


def _override_answer(answer: AnswerResult, new_answer: Optional[str]) -> AnswerResult:
    selected = new_answer.upper() if new_answer else None
    return replace(
        answer,
        selected=selected,
        unclear=False,
        overridden=True,
        correct=selected is not None and selected == answer.correct_choice,
    )


def _rescore(record: GradeRecord, changes: Dict[int, GradeOverride]) -> GradeRecord:
    answers: List[AnswerResult] = []
    for a in record.answers:
        o = changes.get(a.question_number)
        answers.append(_override_answer(a, o.new_answer) if o else a)

    touched = set(changes)
    flags = [
        f for f in record.flags
        if not (f.type in QUESTION_FLAGS and f.question_number in touched)
    ]
    raw, points, max_points, percentage = totals(answers)
    corrected = sum(1 for a in answers if a.overridden)
    return replace(
        record,
        answers=answers,
        flags=flags,
        raw_score=raw,
        points=points,
        max_points=max_points,
        percentage=percentage,
        needs_review=needs_review(flags),
        review_notes=f"{corrected} answer(s) manually corrected",
    )


def apply_overrides(grades: AssignmentGrades, overrides: Sequence[GradeOverride]) -> AssignmentGrades:
    latest = collapse_overrides(overrides)

    per_record: Dict[str, Dict[int, GradeOverride]] = {}
    for (record_id, qn), o in latest.items():
        record = grades.record(record_id)
        if record is None:
            log.warning("Override for unknown record %s ignored", record_id)
            continue
        if not any(a.question_number == qn for a in record.answers):
            log.warning("Override for %s question %d ignored: no such question", record_id, qn)
            continue
        per_record.setdefault(record_id, {})[qn] = o

    records = [
        _rescore(r, per_record[r.id]) if r.id in per_record else r
        for r in grades.records
    ]
    if per_record:
        log.info("Applied overrides to %d record(s)", len(per_record))
    return replace(grades, records=records, stats=compute_stats(records))


def assign_unidentified_page(
    grades: AssignmentGrades,
    unidentified_pages: Sequence[UnidentifiedPage],
    page_number: int,
    student_id: str,
    assessment: Assessment,
    roster: Roster,
    variant: Optional[str] = None,
    defaults: DetectionDefaults = DEFAULTS,
) -> Tuple[AssignmentGrades, List[UnidentifiedPage]]:
    """
    Grade an unidentified page as `student_id`. The student must not already
    have a record in this run.
    """
    page = next((p for p in unidentified_pages if p.page_number == page_number), None)
    if page is None:
        raise AssignmentError(f"Page {page_number} is not an unidentified page")
    if student_id in grades.graded_student_ids():
        raise AssignmentError(f"Student {student_id} already has a grade record for this assignment")

    record = build_grade_record(
        assignment_id=grades.assignment_id,
        student_id=student_id,
        detected=page.detected_answers,
        questions=assessment.questions_for(variant),
        roster=roster,
        source_page_number=page.page_number,
        variant=variant,
        defaults=defaults,
    )
    record.review_notes = f"Manually assigned from page {page.page_number}"

    records = list(grades.records) + [record]
    remaining = [
        replace(p, candidate_student_ids=[s for s in p.candidate_student_ids if s != student_id],
                suggested_student_ids=[s for s in p.suggested_student_ids if s != student_id])
        for p in unidentified_pages if p.page_number != page_number
    ]
    log.info("Assigned page %d to student %s", page_number, student_id)
    return replace(grades, records=records, stats=compute_stats(records)), remaining
