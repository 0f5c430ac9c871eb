# src/scantron_grader/results_io.py
from __future__ import annotations
import csv
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .models import AnswerKeyEntry, AssignmentGrades, UnidentifiedPage


@dataclass
class SavedResults:
    """What `grade` writes and `override` / `assign` read back."""
    grades: AssignmentGrades
    unidentified_pages: List[UnidentifiedPage] = field(default_factory=list)
    answer_key: List[AnswerKeyEntry] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grades": self.grades.to_dict(),
            "unidentified_pages": [p.to_dict() for p in self.unidentified_pages],
            "answer_key": [e.to_dict() for e in self.answer_key],
            "summary": dict(self.summary),
            "processing_time_ms": self.processing_time_ms,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SavedResults":
        return cls(
            grades=AssignmentGrades.from_dict(d["grades"]),
            unidentified_pages=[UnidentifiedPage.from_dict(p) for p in d.get("unidentified_pages", [])],
            answer_key=[AnswerKeyEntry.from_dict(e) for e in d.get("answer_key", [])],
            summary=dict(d.get("summary") or {}),
            processing_time_ms=float(d.get("processing_time_ms", 0.0)),
        )


def _ensure_dir(path: str) -> None:
    if path and not os.path.isdir(path):
        os.makedirs(path, exist_ok=True)


def save_results(results: SavedResults, path: str) -> str:
    _ensure_dir(os.path.dirname(path) or ".")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(results.to_dict(), f, indent=2)
    return path


def load_results(path: str) -> SavedResults:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict) or "grades" not in data:
        raise ValueError(f"{path} is not a saved grading result")
    return SavedResults.from_dict(data)


def write_grades_csv(grades: AssignmentGrades, out_csv: str) -> str:
    """
    One row per student:
      page_number, student_id, variant, Q1..Qn, score, total, percentage, needs_review
    Blank answers are written as empty cells.
    """
    q_out = max((len(r.answers) for r in grades.records), default=0)
    header = ["page_number", "student_id", "variant"] + [f"Q{i + 1}" for i in range(q_out)] \
             + ["score", "total", "percentage", "needs_review"]

    _ensure_dir(os.path.dirname(out_csv) or ".")
    with open(out_csv, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for r in sorted(grades.records, key=lambda x: (x.source_page_number or 0, x.student_id)):
            by_q = {a.question_number: a.selected or "" for a in r.answers}
            row = [
                "" if r.source_page_number is None else str(r.source_page_number),
                r.student_id,
                r.variant_id or "",
            ] + [by_q.get(i + 1, "") for i in range(q_out)]
            row += [str(r.raw_score), str(r.total_questions), f"{r.percentage:.1f}", "yes" if r.needs_review else "no"]
            writer.writerow(row)
    return out_csv
