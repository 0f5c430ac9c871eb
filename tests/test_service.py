import json

import numpy as np
import pytest

from scantron_grader.config_io import CourseData
from scantron_grader.errors import GradingError
from scantron_grader.models import PageImage
from scantron_grader.parse_core import PageParser
from scantron_grader.service import FileCourseRepository, GradeRequest, GradingService
from scantron_grader.tools.id_resolver import IdResolver

from conftest import FakeDecoder, draw_sheet, parsed_page


class ScriptedParser:
    """Returns prepared ParsedPages in order; an Exception entry is raised instead."""

    def __init__(self, results):
        self.results = list(results)
        self.counts = []

    def parse(self, page, page_number, question_count):
        self.counts.append(question_count(None) if callable(question_count) else question_count)
        r = self.results.pop(0)
        if isinstance(r, Exception):
            raise r
        r.page_number = page_number
        return r


@pytest.fixture
def repo(assignment, assessment, roster):
    return FileCourseRepository(CourseData([assignment], [assessment], [roster]))


def _blank_pages(n):
    return [PageImage(np.full((40, 30), 255, np.uint8)) for _ in range(n)]


def test_process_grades_and_reports_progress(repo):
    parser = ScriptedParser([parsed_page(0, "s1", "ABCD"), parsed_page(0, None, "AB--")])
    events = []
    resp = GradingService(repo, parser).process(
        GradeRequest("hw-1", "sec-1", _blank_pages(2)), progress=events.append,
    )
    assert [r.student_id for r in resp.grades.records] == ["s1"]
    assert [p.page_number for p in resp.unidentified_pages] == [2]
    assert resp.summary.total_pages == 2
    assert resp.summary.identified_pages == 1
    assert [e.label for e in events] == ["extracting", "parsing:1/2", "parsing:2/2", "grading", "complete"]
    assert resp.processing_time_ms >= 0
    assert parser.counts == [4, 4]


def test_failing_page_does_not_abort_batch(repo):
    parser = ScriptedParser([RuntimeError("decoder exploded"), parsed_page(0, "s2", "ABCD")])
    resp = GradingService(repo, parser).process(GradeRequest("hw-1", "sec-1", _blank_pages(2)))
    assert [r.student_id for r in resp.grades.records] == ["s2"]
    (bad,) = resp.unidentified_pages
    assert bad.page_number == 1
    assert "decoder exploded" in bad.identity_error
    assert "page_error" in resp.parsed_pages[0].flags


def test_broken_progress_callback_is_ignored(repo):
    def boom(event):
        raise ValueError("ui gone")

    parser = ScriptedParser([parsed_page(0, "s1", "ABCD")])
    resp = GradingService(repo, parser).process(GradeRequest("hw-1", "sec-1", _blank_pages(1)), progress=boom)
    assert len(resp.grades.records) == 1


@pytest.mark.parametrize("assignment_id, section_id", [("nope", "sec-1"), ("hw-1", "sec-2")])
def test_missing_course_data_is_fatal(repo, assignment_id, section_id):
    with pytest.raises(GradingError):
        GradingService(repo, ScriptedParser([])).process(GradeRequest(assignment_id, section_id, _blank_pages(1)))


def test_missing_roster_is_fatal(assignment, assessment):
    repo = FileCourseRepository(CourseData([assignment], [assessment], []))
    with pytest.raises(GradingError):
        GradingService(repo, ScriptedParser([])).process(GradeRequest("hw-1", "sec-1", _blank_pages(1)))


def test_explicit_roster_overrides_repository(assignment, assessment, roster):
    repo = FileCourseRepository(CourseData([assignment], [assessment], []))
    resp = GradingService(repo, ScriptedParser([parsed_page(0, "s1", "ABCD")])).process(
        GradeRequest("hw-1", "sec-1", _blank_pages(1), roster=roster)
    )
    assert resp.grades.records[0].needs_review is False


def test_unreadable_source_is_fatal(repo, tmp_path):
    with pytest.raises(GradingError):
        GradingService(repo, ScriptedParser([])).process(GradeRequest("hw-1", "sec-1", str(tmp_path / "missing.png")))
    with pytest.raises(GradingError):
        GradingService(repo, ScriptedParser([])).process(GradeRequest("hw-1", "sec-1", []))


def test_end_to_end_with_real_parser(repo):
    payload = json.dumps({"v": 1, "aid": "hw-1", "sid": "s3"})
    img = draw_sheet({1: "A", 2: "B", 3: "D", 4: "D"}, question_count=4)
    parser = PageParser(IdResolver(decoder=FakeDecoder(payload)))
    resp = GradingService(repo, parser).process(GradeRequest("hw-1", "sec-1", [img]))
    (rec,) = resp.grades.records
    assert rec.student_id == "s3"
    assert rec.raw_score == 3
    assert rec.answers[2].selected == "D"
    assert rec.answers[2].correct is False
    assert resp.to_dict()["summary"]["identified_pages"] == 1
