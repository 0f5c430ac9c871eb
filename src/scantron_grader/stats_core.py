# src/scantron_grader/stats_core.py
from __future__ import annotations
from collections import OrderedDict
from typing import Dict, List, Sequence

import numpy as np

from .models import GradeRecord, GradeStats

BASE_VARIANT = "base"


def compute_stats(records: Sequence[GradeRecord]) -> GradeStats:
    """
    Summary over the current record set. Always recomputed from scratch, so the
    result after overrides matches a fresh run on the corrected answers.

    Scores are percentages. Standard deviation is the population form (ddof=0).
    """
    if not records:
        return GradeStats()

    pct = np.asarray([r.percentage for r in records], dtype=float)

    # per variant
    groups: Dict[str, List[float]] = OrderedDict()
    for r in records:
        groups.setdefault(r.variant_id or BASE_VARIANT, []).append(r.percentage)
    by_variant = {
        v: {"count": len(scores), "average": float(np.mean(scores))}
        for v, scores in groups.items()
    }

    # per question
    by_question: Dict[int, Dict[str, float]] = {}
    for r in records:
        for a in r.answers:
            q = by_question.setdefault(a.question_number, {"correct": 0, "incorrect": 0, "skipped": 0})
            if a.selected is None:
                q["skipped"] += 1
            elif a.correct:
                q["correct"] += 1
            else:
                q["incorrect"] += 1
    for q in by_question.values():
        total = q["correct"] + q["incorrect"] + q["skipped"]
        q["percent_correct"] = q["correct"] / total * 100.0 if total else 0.0
    by_question = dict(sorted(by_question.items()))

    # per standard
    tallies: Dict[str, List[int]] = OrderedDict()
    for r in records:
        for a in r.answers:
            if not a.standard_ref:
                continue
            t = tallies.setdefault(a.standard_ref, [0, 0])
            t[0] += 1
            if a.correct:
                t[1] += 1
    by_standard = {
        ref: {
            "question_count": total / len(records),     # average per student
            "average_correct": correct / total * 100.0 if total else 0.0,
        }
        for ref, (total, correct) in tallies.items()
    }

    return GradeStats(
        total_students=len(records),
        average_score=float(pct.mean()),
        median_score=float(np.median(pct)),
        high_score=float(pct.max()),
        low_score=float(pct.min()),
        standard_deviation=float(pct.std()),
        by_variant=by_variant,
        by_question=by_question,
        by_standard=by_standard,
    )
