# scantron_grader/scoring_defaults.py
from __future__ import annotations
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

@dataclass(frozen=True)
class DetectionDefaults:
    # Single source of truth for detection and grading thresholds
    dark_pixel: int = 128                 # luminance below which a pixel counts as ink
    corner_dark_pct: float = 40.0         # a registration mark is "present" above this darkness %
    corner_absent_pct: float = 30.0       # a corner is "empty" below this darkness %
    circle_margin_pct: float = 5.0        # circle darker than square by more than this -> upside down
    min_separation: float = 20.0          # filled/empty intensity gap required for adaptive threshold
    lenient_fill: float = 180.0           # fallback fill threshold when populations overlap
    lenient_empty: float = 220.0          # fallback (and cap for) empty threshold
    ambiguity_band: float = 20.0          # +/- band around the fill threshold scored as ambiguous
    very_dark: float = 60.0               # intensity scored as unmistakably filled
    confidence_floor: float = 0.70        # below this a selected answer is flagged low_confidence
    ocr_min_confidence: float = 50.0      # mean tesseract word confidence needed to accept a name
    ocr_min_length: int = 3               # shortest accepted OCR name
    name_match_min_score: float = 20.0    # suggestions must score above this
    name_match_limit: int = 3             # at most this many suggestions
    dimension_tolerance: int = 20         # px deviation from 1275 x 1650 still treated as standard
    qr_binarize: int = 128                # fixed threshold for the last QR strategy

DEFAULTS = DetectionDefaults()

def override_defaults(base: DetectionDefaults = DEFAULTS, **overrides: Any) -> DetectionDefaults:
    # produce an overridden immutable config without mutating DEFAULTS; None keeps the base value
    known = {f.name for f in fields(DetectionDefaults)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown detection setting(s): {', '.join(unknown)}")
    changes = {k: v for k, v in overrides.items() if v is not None}
    return replace(base, **changes)

def defaults_from_mapping(data: Mapping[str, Any] | None) -> DetectionDefaults:
    """Build defaults from a config-file `detection:` section."""
    if not data:
        return DEFAULTS
    return override_defaults(DEFAULTS, **dict(data))
