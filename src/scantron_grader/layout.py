# scantron_grader/layout.py
"""
Printed answer-sheet geometry.

Two coordinate systems are in play:
  - 72-DPI points (US Letter = 612 x 792) for everything the sheet generator
    positions in PDF units: registration marks, QR box, printed name.
  - 150-DPI pixels (1275 x 1650) for the bubble grids, which were tuned
    against scans rendered at that resolution.

Every helper here takes the actual image width and scales linearly, flooring
each scaled constant the same way the sampler always has.
"""
from __future__ import annotations
from dataclasses import dataclass
import math
from typing import List, Tuple

LETTER_WIDTH = 612
LETTER_HEIGHT = 792
RENDER_DPI = 150

CHOICES: Tuple[str, ...] = ("A", "B", "C", "D")

# ---------- 72-DPI regions ----------
MARK_SIZE = 20
MARK_OFFSET = 25

QR_REGION_X = 20
QR_REGION_Y = 20
QR_REGION_SIZE = 120

NAME_REGION_X = 85
NAME_REGION_Y = 88
NAME_REGION_W = 220
NAME_REGION_H = 18


@dataclass(frozen=True)
class StandardGrid:
    # 150-DPI pixel units
    width: int = 1275
    height: int = 1650
    margin: int = 104
    grid_start_y: int = 533
    row_height: int = 50
    bubble_spacing: int = 46
    bubble_radius: int = 15
    first_bubble_x: int = 181
    questions_per_column: int = 25
    sample_size: int = 20


@dataclass(frozen=True)
class QuizGrid:
    margin: int = 75
    first_row_bubble_y: int = 1448
    row_height: int = 58
    questions_per_row: int = 4
    question_width: int = 281
    bubble_start_offset: int = 50
    bubble_spacing: int = 54
    bubble_radius: int = 15
    sample_size: int = 20


STANDARD = StandardGrid()
QUIZ = QuizGrid()

CANONICAL_WIDTH = STANDARD.width
CANONICAL_HEIGHT = STANDARD.height


@dataclass(frozen=True)
class BubbleSpot:
    question_number: int
    row: int
    column: int
    choice: str
    x: int
    y: int
    radius: int
    half_sample: int


def dpi_scale(width: int) -> float:
    """Ratio of image width to the 72-DPI letter width."""
    return width / LETTER_WIDTH


def grid_scale(width: int) -> float:
    """Ratio of image width to the 150-DPI canonical width."""
    return width / CANONICAL_WIDTH


def points_rect(x: float, y: float, w: float, h: float, width: int) -> Tuple[int, int, int, int]:
    """Scale a 72-DPI rectangle to pixel (x, y, w, h) for an image of `width`."""
    s = dpi_scale(width)
    return int(x * s), int(y * s), int(w * s), int(h * s)


def qr_region(width: int) -> Tuple[int, int, int, int]:
    return points_rect(QR_REGION_X, QR_REGION_Y, QR_REGION_SIZE, QR_REGION_SIZE, width)


def name_region(width: int) -> Tuple[int, int, int, int]:
    return points_rect(NAME_REGION_X, NAME_REGION_Y, NAME_REGION_W, NAME_REGION_H, width)


def mark_geometry(width: int) -> Tuple[int, int]:
    """(mark size, edge offset) in pixels."""
    s = dpi_scale(width)
    return int(MARK_SIZE * s), int(MARK_OFFSET * s)


def standard_centers(question_count: int, width: int, grid: StandardGrid = STANDARD) -> List[BubbleSpot]:
    """Bubble centres for the multi-column test layout (25 questions per column)."""
    if question_count <= 0:
        return []
    scale = grid_scale(width)
    column_count = math.ceil(question_count / grid.questions_per_column)
    column_width = int((grid.width - 2 * grid.margin) / column_count * scale)
    grid_start_y = int(grid.grid_start_y * scale)
    row_height = int(grid.row_height * scale)
    spacing = int(grid.bubble_spacing * scale)
    radius = int(grid.bubble_radius * scale)
    half = int(grid.sample_size * scale) // 2
    first_offset = int((grid.first_bubble_x - grid.margin) * scale)
    margin = int(grid.margin * scale)

    spots: List[BubbleSpot] = []
    for q in range(question_count):
        col = q // grid.questions_per_column
        row = q % grid.questions_per_column
        column_x = margin + col * column_width
        y = grid_start_y + row * row_height + row_height // 2
        for c, label in enumerate(CHOICES):
            x = column_x + first_offset + c * spacing
            spots.append(BubbleSpot(q + 1, row, col, label, x, y, radius, half))
    return spots


def quiz_centers(question_count: int, width: int, grid: QuizGrid = QUIZ) -> List[BubbleSpot]:
    """Bubble centres for the compact quiz layout (4 questions per row)."""
    if question_count <= 0:
        return []
    scale = grid_scale(width)
    margin = int(grid.margin * scale)
    first_y = int(grid.first_row_bubble_y * scale)
    row_height = int(grid.row_height * scale)
    question_width = int(grid.question_width * scale)
    offset = int(grid.bubble_start_offset * scale)
    spacing = int(grid.bubble_spacing * scale)
    radius = int(grid.bubble_radius * scale)
    half = int(grid.sample_size * scale) // 2

    spots: List[BubbleSpot] = []
    for q in range(question_count):
        row = q // grid.questions_per_row
        col = q % grid.questions_per_row
        cell_x = margin + col * question_width
        y = first_y + row * row_height
        for c, label in enumerate(CHOICES):
            x = cell_x + offset + c * spacing
            spots.append(BubbleSpot(q + 1, row, col, label, x, y, radius, half))
    return spots


def bubble_centers(question_count: int, width: int, fmt: str = "standard") -> List[BubbleSpot]:
    if fmt == "quiz":
        return quiz_centers(question_count, width)
    return standard_centers(question_count, width)


def is_standard_size(width: int, height: int, tolerance: int = 20) -> bool:
    return abs(width - CANONICAL_WIDTH) < tolerance and abs(height - CANONICAL_HEIGHT) < tolerance
