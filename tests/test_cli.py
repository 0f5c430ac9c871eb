import cv2 as cv
import pytest
import yaml
from typer.testing import CliRunner

from scantron_grader.cli import app
from scantron_grader.results_io import load_results

from conftest import draw_sheet

runner = CliRunner()

COURSE = {
    "assignment": {"id": "hw-1", "section_id": "sec-1", "assessment_id": "asmt-1"},
    "assessment": {"id": "asmt-1", "questions": [{"id": f"q{i}", "correct_answer": c} for i, c in enumerate("ABCD", 1)]},
    "roster": {"section_id": "sec-1", "students": [
        {"id": "s1", "first_name": "Ada", "last_name": "Lovelace"},
        {"id": "s2", "first_name": "Alan", "last_name": "Turing"},
    ]},
}


@pytest.fixture
def course(tmp_path):
    p = tmp_path / "course.yaml"
    p.write_text(yaml.safe_dump(COURSE))
    return str(p)


@pytest.fixture
def db(tmp_path):
    return f"sqlite:///{tmp_path / 'keys.db'}"


@pytest.fixture
def graded(tmp_path, course, db):
    scans = tmp_path / "scans"
    scans.mkdir()
    cv.imwrite(str(scans / "p1.png"), draw_sheet({1: "A", 2: "B", 3: "D"}, question_count=4))
    out = tmp_path / "results.json"
    result = runner.invoke(app, [
        "grade", str(scans), "--course", course, "-a", "hw-1", "-s", "sec-1",
        "--db", db, "--no-ocr", "-o", str(out), "--out-csv", str(tmp_path / "grades.csv"),
    ])
    assert result.exit_code == 0, result.output
    return out


def test_grade_writes_results(graded, tmp_path):
    res = load_results(str(graded))
    assert res.summary["total_pages"] == 1
    assert res.summary["unidentified_pages"] == 1
    assert res.unidentified_pages[0].candidate_student_ids == ["s1", "s2"]
    assert (tmp_path / "grades.csv").exists()


def test_assign_then_override(graded, course):
    result = runner.invoke(app, ["assign", str(graded), "--page", "1", "--student", "s2", "--course", course])
    assert result.exit_code == 0, result.output
    res = load_results(str(graded))
    rec = res.grades.record("hw-1-s2")
    assert rec.raw_score == 2
    assert res.unidentified_pages == []

    ov = graded.parent / "overrides.yaml"
    ov.write_text(yaml.safe_dump({"overrides": [{"record_id": "hw-1-s2", "question_number": 3, "new_answer": "c"}]}))
    out = graded.parent / "corrected.json"
    result = runner.invoke(app, ["override", str(graded), "--overrides", str(ov), "-o", str(out)])
    assert result.exit_code == 0, result.output
    assert load_results(str(out)).grades.record("hw-1-s2").raw_score == 3


def test_assign_twice_is_refused(graded, course):
    assert runner.invoke(app, ["assign", str(graded), "--page", "1", "--student", "s2", "--course", course]).exit_code == 0
    result = runner.invoke(app, ["assign", str(graded), "--page", "1", "--student", "s1", "--course", course])
    assert result.exit_code == 2


def test_grade_unknown_assignment(tmp_path, course, db):
    img = tmp_path / "p.png"
    cv.imwrite(str(img), draw_sheet({}, question_count=1))
    result = runner.invoke(app, ["grade", str(img), "--course", course, "-a", "nope", "-s", "sec-1", "--db", db])
    assert result.exit_code == 2


def test_visualize(tmp_path):
    img = tmp_path / "p.png"
    cv.imwrite(str(img), draw_sheet({1: "C"}, question_count=4))
    out = tmp_path / "overlay.png"
    result = runner.invoke(app, ["visualize", str(img), "-n", "4", "-o", str(out)])
    assert result.exit_code == 0, result.output
    assert out.exists()
    assert runner.invoke(app, ["visualize", str(img), "--format", "grid"]).exit_code == 2


def test_keys_lifecycle(db):
    result = runner.invoke(app, ["keys", "create", "hw-1", "s1", "s2", "--format", "quiz", "--db", db])
    assert result.exit_code == 0, result.output
    lines = [ln.split("\t") for ln in result.output.splitlines() if "\tTH:" in ln]
    assert [sid for sid, _ in lines] == ["s1", "s2"]
    key = lines[0][1]
    assert key.startswith("TH:")

    show = runner.invoke(app, ["keys", "show", key, "--db", db])
    assert show.exit_code == 0
    assert "s1" in show.output

    assert runner.invoke(app, ["keys", "list", "hw-1", "--db", db]).exit_code == 0
    assert "2" in runner.invoke(app, ["keys", "stats", "--db", db]).output

    assert runner.invoke(app, ["keys", "purge", "hw-1", "--db", db]).exit_code == 0
    assert runner.invoke(app, ["keys", "show", key, "--db", db]).exit_code == 1
