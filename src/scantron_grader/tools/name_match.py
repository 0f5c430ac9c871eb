"""
name_match.py
-------------
Suggest roster students for an OCR'd name.

Scoring (heuristic, not an edit distance):
  +50  OCR text contains the last name
  +30  OCR text contains the first name
  +20  "lastfirst" or "firstlast" contains the OCR text
  +20 * (positional character matches against "lastfirst") / shorter length

Names are lowercased and stripped to a-z before comparing. Suggestions never
assign a page; they only rank candidates for a reviewer.
"""

from __future__ import annotations
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from ..models import Student

_NON_ALPHA = re.compile(r"[^a-z]")


def normalize_name(text: str) -> str:
    return _NON_ALPHA.sub("", (text or "").lower())


def name_score(ocr_text: str, student: Student) -> float:
    ocr = normalize_name(ocr_text)
    if not ocr:
        return 0.0
    last = normalize_name(student.last_name)
    first = normalize_name(student.first_name)
    full = last + first
    reverse = first + last

    score = 0.0
    # empty name parts would match everything
    if last and last in ocr:
        score += 50
    if first and first in ocr:
        score += 30
    if full and (ocr in full or ocr in reverse):
        score += 20

    min_len = min(len(ocr), len(full))
    if min_len > 0:
        matching = sum(1 for i in range(min_len) if ocr[i] == full[i])
        score += matching / min_len * 20
    return score


def suggest_students(
    ocr_text: Optional[str],
    students: Iterable[Student],
    limit: int = 3,
    min_score: float = 20.0,
) -> List[str]:
    """Ids of the best-matching students (best first), at most `limit`."""
    if not ocr_text:
        return []
    scored: List[Tuple[float, int, str]] = []
    for order, s in enumerate(students):
        score = name_score(ocr_text, s)
        if score > min_score:
            scored.append((score, order, s.id))
    # stable on ties: roster order
    scored.sort(key=lambda t: (-t[0], t[1]))
    return [sid for _, _, sid in scored[:limit]]


def students_by_ids(students: Sequence[Student], ids: Iterable[str]) -> List[Student]:
    wanted = set(ids)
    return [s for s in students if s.id in wanted]
