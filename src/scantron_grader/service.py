# src/scantron_grader/service.py
"""
Grading run orchestration.

    request -> load course data -> load pages -> parse each page -> grade -> response

Only infrastructure problems (missing assignment/assessment/roster, unreadable
source) abort a run with GradingError. Anything that goes wrong on a single page
is recorded on that page and the run carries on.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from .config_io import CourseData, load_course
from .errors import GradingError, SourceError
from .grade_core import calculate_grades, summarize_pages
from .models import (
    AnswerKeyEntry,
    Assessment,
    Assignment,
    AssignmentGrades,
    GradeRecord,
    PageImage,
    ParsedPage,
    ProgressEvent,
    ResolvedIdentity,
    Roster,
    UnidentifiedPage,
)
from .parse_core import PageParser
from .scoring_defaults import DEFAULTS, DetectionDefaults
from .tools.page_io import PageSource, load_pages

log = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


# ---------- course data access ----------
class CourseRepository(Protocol):
    def get_assignment(self, assignment_id: str) -> Optional[Assignment]: ...
    def get_assessment(self, assessment_id: str) -> Optional[Assessment]: ...
    def get_roster(self, section_id: str) -> Optional[Roster]: ...


class FileCourseRepository:
    """Course data from one YAML/JSON file (see config_io.load_course)."""

    def __init__(self, course: CourseData):
        self.course = course

    @classmethod
    def from_path(cls, path: str) -> "FileCourseRepository":
        return cls(load_course(path))

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return next((a for a in self.course.assignments if a.id == assignment_id), None)

    def get_assessment(self, assessment_id: str) -> Optional[Assessment]:
        return next((a for a in self.course.assessments if a.id == assessment_id), None)

    def get_roster(self, section_id: str) -> Optional[Roster]:
        return next((r for r in self.course.rosters if r.section_id == section_id), None)


# ---------- request / response ----------
@dataclass
class GradeRequest:
    assignment_id: str
    section_id: str
    source: PageSource
    roster: Optional[Roster] = None


@dataclass
class GradeSummary:
    total_pages: int = 0
    identified_pages: int = 0
    unidentified_pages: int = 0
    blank_pages: int = 0
    unknown_documents: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class GradeResponse:
    grades: AssignmentGrades
    unidentified_pages: List[UnidentifiedPage]
    answer_key: List[AnswerKeyEntry]
    summary: GradeSummary
    processing_time_ms: float = 0.0
    parsed_pages: List[ParsedPage] = field(default_factory=list)

    @property
    def flagged_records(self) -> List[GradeRecord]:
        return [r for r in self.grades.records if r.needs_review]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grades": self.grades.to_dict(),
            "unidentified_pages": [p.to_dict() for p in self.unidentified_pages],
            "answer_key": [e.to_dict() for e in self.answer_key],
            "summary": self.summary.to_dict(),
            "processing_time_ms": self.processing_time_ms,
        }


# ---------- service ----------
class GradingService:
    def __init__(
        self,
        repository: CourseRepository,
        parser: PageParser,
        defaults: DetectionDefaults = DEFAULTS,
    ):
        self.repository = repository
        self.parser = parser
        self.defaults = defaults

    @staticmethod
    def _emit(progress: Optional[ProgressCallback], event: ProgressEvent) -> None:
        if progress is None:
            return
        try:
            progress(event)
        except Exception as e:  # progress is advisory only
            log.warning("Progress callback failed at %s: %s", event.label, e)

    def _course(self, request: GradeRequest):
        assignment = self.repository.get_assignment(request.assignment_id)
        if assignment is None:
            raise GradingError(f"Assignment not found: {request.assignment_id}")
        if assignment.section_id != request.section_id:
            raise GradingError(
                f"Assignment {assignment.id} belongs to section {assignment.section_id}, not {request.section_id}"
            )
        assessment = self.repository.get_assessment(assignment.assessment_id)
        if assessment is None:
            raise GradingError(f"Assessment not found: {assignment.assessment_id}")
        roster = request.roster or self.repository.get_roster(request.section_id)
        if roster is None:
            raise GradingError(f"Roster not found for section {request.section_id}")
        return assignment, assessment, roster

    def parse_pages(
        self,
        pages: List[PageImage],
        assessment: Assessment,
        progress: Optional[ProgressCallback] = None,
    ) -> List[ParsedPage]:
        def question_count(identity: Optional[ResolvedIdentity]) -> int:
            return len(assessment.questions_for(identity.variant if identity else None))

        total = len(pages)
        parsed: List[ParsedPage] = []
        for n, page in enumerate(pages, start=1):
            try:
                result = self.parser.parse(page, n, question_count)
            except Exception as e:  # isolate the page; never abort the batch
                log.exception("Page %d: processing failed", n)
                result = ParsedPage(
                    page_number=n,
                    identity_error=f"Page processing failed: {e}",
                    flags=["page_error", "qr_error"],
                    image_width=page.width,
                    image_height=page.height,
                )
            parsed.append(result)
            self._emit(progress, ProgressEvent("parsing", n, total, f"Parsed page {n} of {total}"))
        return parsed

    def process(self, request: GradeRequest, progress: Optional[ProgressCallback] = None) -> GradeResponse:
        started = time.perf_counter()
        assignment, assessment, roster = self._course(request)

        self._emit(progress, ProgressEvent("extracting", message="Loading pages"))
        try:
            pages = load_pages(request.source)
        except SourceError as e:
            raise GradingError(f"Could not open page source: {e}") from e
        if not pages:
            raise GradingError("Page source contains no pages")
        log.info("Grading %d page(s) for assignment %s", len(pages), assignment.id)

        parsed = self.parse_pages(pages, assessment, progress)

        self._emit(progress, ProgressEvent("grading", len(pages), len(pages), "Calculating grades"))
        calc = calculate_grades(parsed, assignment, assessment, roster, self.defaults)
        summary = GradeSummary(**summarize_pages(parsed, calc.unidentified_pages))

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._emit(progress, ProgressEvent("complete", len(pages), len(pages), "Done"))
        log.info(
            "Graded %d of %d page(s) (%d unidentified, %d blank, %d unknown) in %.0f ms",
            summary.identified_pages, summary.total_pages, summary.unidentified_pages,
            summary.blank_pages, summary.unknown_documents, elapsed_ms,
        )
        return GradeResponse(
            grades=calc.grades,
            unidentified_pages=calc.unidentified_pages,
            answer_key=calc.answer_key,
            summary=summary,
            processing_time_ms=elapsed_ms,
            parsed_pages=parsed,
        )
