import pytest

from scantron_grader.grade_core import calculate_grades
from scantron_grader.models import GradeStats
from scantron_grader.stats_core import compute_stats

from conftest import parsed_page


@pytest.fixture
def grades(assignment, assessment, roster):
    pages = [
        parsed_page(1, "s1", "ABCD"),            # 100
        parsed_page(2, "s2", "AB--"),            # 50
        parsed_page(3, "s3", "DCBA", variant="2"),  # 100 on variant 2
    ]
    return calculate_grades(pages, assignment, assessment, roster).grades


def test_summary_scores(grades):
    st = grades.stats
    assert st.total_students == 3
    assert st.average_score == pytest.approx(250 / 3)
    assert st.median_score == 100.0
    assert st.high_score == 100.0
    assert st.low_score == 50.0
    # population standard deviation
    assert st.standard_deviation == pytest.approx(23.5702, rel=1e-4)


def test_by_variant(grades):
    assert grades.stats.by_variant == {
        "base": {"count": 2, "average": 75.0},
        "2": {"count": 1, "average": 100.0},
    }


def test_by_question(grades):
    q3 = grades.stats.by_question[3]
    assert q3["correct"] == 2
    assert q3["skipped"] == 1
    assert q3["incorrect"] == 0
    assert q3["percent_correct"] == pytest.approx(200 / 3)
    assert list(grades.stats.by_question) == [1, 2, 3, 4]


def test_by_standard_counts_base_questions_only(grades):
    # variant questions carry no standard reference in the fixture
    std1 = grades.stats.by_standard["STD.1"]
    assert std1["question_count"] == pytest.approx(4 / 3)
    assert std1["average_correct"] == 100.0
    assert grades.stats.by_standard["STD.2"]["average_correct"] == 50.0


def test_empty_record_set():
    assert compute_stats([]) == GradeStats()


def test_stats_survive_serialisation(grades):
    again = GradeStats.from_dict(grades.stats.to_dict())
    assert again.by_question == grades.stats.by_question
    assert again.average_score == grades.stats.average_score
