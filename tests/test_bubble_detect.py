import base64

import numpy as np
import pytest

from scantron_grader.layout import BubbleSpot, bubble_centers
from scantron_grader.tools.bubble_detect import (
    Threshold,
    adaptive_threshold,
    bubble_confidence,
    classify_question,
    crops_for_flagged,
    detect_bubbles,
    sample_region_intensity,
)


def _spots(q=1):
    return [BubbleSpot(q, 0, 0, c, 100 + i * 46, 100, 15, 10) for i, c in enumerate("ABCD")]


# ---------- sampling ----------

def test_sample_window_is_inclusive_and_clamped():
    g = np.full((50, 50), 200, np.uint8)
    g[0:3, 0:3] = 0
    # window [-2, 2] clamps to [0, 2] -> 3x3 of zeros
    assert sample_region_intensity(g, 0, 0, 2) == 0.0
    assert sample_region_intensity(g, 25, 25, 2) == 200.0


def test_sample_outside_image_reads_white():
    g = np.zeros((10, 10), np.uint8)
    assert sample_region_intensity(g, 100, 100, 2) == 255.0


# ---------- threshold ----------

def test_adaptive_threshold_splits_clear_populations():
    values = [30, 35, 240, 245, 250, 250, 250, 250]
    t = adaptive_threshold(values, 2)
    assert t.fill == pytest.approx((35 + 240) / 2)
    assert t.empty == 220.0   # capped at the lenient empty value


def test_adaptive_threshold_falls_back_when_populations_overlap():
    t = adaptive_threshold([100, 110, 115, 120], 2)
    assert t == Threshold(180.0, 220.0)


def test_adaptive_threshold_handles_degenerate_input():
    assert adaptive_threshold([], 5) == Threshold(180.0, 220.0)
    assert adaptive_threshold([10, 250], 0) == Threshold(180.0, 220.0)
    # more questions than samples: index clamps to the last sample
    assert adaptive_threshold([10, 250], 5) == Threshold(180.0, 220.0)


def test_bubble_confidence_bands():
    t = Threshold(fill=140.0, empty=200.0)
    assert bubble_confidence(40, t) == 0.95      # very dark
    assert bubble_confidence(100, t) == 0.9      # clearly below fill
    assert bubble_confidence(130, t) == 0.5      # inside the ambiguity band
    assert bubble_confidence(250, t) == 0.95     # clearly empty
    assert bubble_confidence(180, t) == 0.8


# ---------- classification ----------

def test_single_dark_bubble_is_selected():
    values = [40, 210, 215, 220]
    t = Threshold(fill=125.0, empty=220.0)
    q = classify_question(1, _spots(), values, t)
    assert q.selected == "A"
    assert q.multiple_detected is False
    assert q.bubbles[0].filled
    assert q.bubbles[0].confidence >= 0.9


def test_two_dark_bubbles_pick_the_darker_and_flag():
    values = [120, 210, 60, 220]
    q = classify_question(1, _spots(), values, Threshold(180.0, 220.0))
    assert q.selected == "C"
    assert q.multiple_detected is True


def test_equal_dark_bubbles_keep_the_later_choice():
    q = classify_question(1, _spots(), [50, 50, 250, 250], Threshold(180.0, 220.0))
    assert q.selected == "B"
    assert q.multiple_detected is True


def test_no_dark_bubble_means_blank():
    q = classify_question(1, _spots(), [240, 245, 250, 250], Threshold(140.0, 200.0))
    assert q.selected is None
    assert q.multiple_detected is False


# ---------- page ----------

def test_detect_bubbles_reads_every_answer(sheet):
    answers = {1: "A", 2: "B", 3: "C", 4: "D", 5: "A", 6: "C"}
    page = sheet(answers, question_count=6)
    detected = detect_bubbles(page, 6)
    assert [q.selected for q in detected] == ["A", "B", "C", "D", "A", "C"]
    assert all(not q.multiple_detected for q in detected)
    assert all(q.confidence >= 0.9 for q in detected)


def test_detect_bubbles_quiz_layout(sheet):
    answers = {1: "D", 2: "C", 5: "B", 8: "A"}
    page = sheet(answers, question_count=8, fmt="quiz")
    detected = detect_bubbles(page, 8, fmt="quiz")
    got = {q.question_number: q.selected for q in detected}
    assert got == {1: "D", 2: "C", 3: None, 4: None, 5: "B", 6: None, 7: None, 8: "A"}


def test_detect_bubbles_flags_double_marks(sheet):
    answers = {i: "C" for i in range(1, 21)}
    page = sheet(answers, question_count=20, extra_marks={7: "A"}, fill=30)
    detected = detect_bubbles(page, 20)
    q7 = detected[6]
    assert q7.selected == "C"
    assert q7.multiple_detected is True
    assert sum(q.multiple_detected for q in detected) == 1


def test_detect_bubbles_is_deterministic(sheet):
    page = sheet({1: "B", 2: "D"}, question_count=4)
    a = [q.to_dict() for q in detect_bubbles(page, 4)]
    b = [q.to_dict() for q in detect_bubbles(page, 4)]
    assert a == b


def test_detect_bubbles_zero_questions(sheet):
    assert detect_bubbles(sheet({}), 0) == []


def test_crops_only_for_flagged_questions(sheet):
    page = sheet({1: "A", 3: "C"}, question_count=4)
    detected = detect_bubbles(page, 4)
    crops = crops_for_flagged(page, detected)
    assert set(crops) == {2, 4}
    assert base64.b64decode(crops[2])[:4] == b"\x89PNG"


def test_bubble_centers_spread_into_columns():
    spots = bubble_centers(30, 1275)
    q26 = [s for s in spots if s.question_number == 26]
    assert len(q26) == 4
    assert q26[0].column == 1 and q26[0].row == 0
    assert q26[0].x > spots[0].x
