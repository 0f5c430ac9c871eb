# src/scantron_grader/config_io.py
from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
import json

import yaml

from .models import Assessment, Assignment, Roster
from .scoring_defaults import DEFAULTS, DetectionDefaults, defaults_from_mapping


def load_config_any(path: str | Path) -> Dict[str, Any]:
    """
    Prefer YAML, but transparently accept JSON.
    - If extension is .yml/.yaml -> use YAML
    - If extension is .json -> use JSON
    - Otherwise: try YAML first, then JSON
    """
    p = Path(path)
    data = p.read_text(encoding="utf-8")
    ext = p.suffix.lower()

    if ext in {".yml", ".yaml"}:
        cfg = yaml.safe_load(data)
    elif ext == ".json":
        cfg = json.loads(data)
    else:
        try:
            cfg = yaml.safe_load(data)
        except yaml.YAMLError:
            cfg = json.loads(data)

    if not isinstance(cfg, dict):
        raise ValueError("Config root must be a mapping/object.")

    return cfg


def dump_any(data: Dict[str, Any], path: str | Path) -> None:
    """Write YAML or JSON depending on the extension (JSON for anything not .yml/.yaml)."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    if p.suffix.lower() in {".yml", ".yaml"}:
        p.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    else:
        p.write_text(json.dumps(data, indent=2), encoding="utf-8")


# ---------- grader settings ----------
@dataclass(frozen=True)
class GraderSettings:
    database: str = "sqlite:///scantron_keys.db"
    tesseract_cmd: Optional[str] = None
    ocr: bool = True
    review_images: bool = True
    log_level: str = "INFO"
    detection: DetectionDefaults = DEFAULTS


def load_settings(path: str | Path | None) -> GraderSettings:
    """
    Settings file layout (all keys optional):

        database: sqlite:///keys.db
        tesseract_cmd: /usr/local/bin/tesseract
        ocr: true
        review_images: true
        log_level: INFO
        detection:
          confidence_floor: 0.7
          min_separation: 20
    """
    if path is None:
        return GraderSettings()
    cfg = load_config_any(path)
    detection = cfg.get("detection") or {}
    if not isinstance(detection, dict):
        raise ValueError("'detection' must be a mapping.")
    base = GraderSettings()
    return GraderSettings(
        database=str(cfg.get("database", base.database)),
        tesseract_cmd=cfg.get("tesseract_cmd"),
        ocr=bool(cfg.get("ocr", base.ocr)),
        review_images=bool(cfg.get("review_images", base.review_images)),
        log_level=str(cfg.get("log_level", base.log_level)).upper(),
        detection=defaults_from_mapping(detection),
    )


# ---------- course data ----------
@dataclass
class CourseData:
    assignments: List[Assignment] = field(default_factory=list)
    assessments: List[Assessment] = field(default_factory=list)
    rosters: List[Roster] = field(default_factory=list)


def _as_list(cfg: Dict[str, Any], plural: str, singular: str) -> List[Dict[str, Any]]:
    items = cfg.get(plural)
    if items is None and singular in cfg:
        items = [cfg[singular]]
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError(f"'{plural}' must be a list.")
    return items


def load_course(path: str | Path) -> CourseData:
    """
    Course file with assignments, assessments and rosters (plural lists, or a
    single `assignment` / `assessment` / `roster` mapping each).
    """
    cfg = load_config_any(path)
    try:
        return CourseData(
            assignments=[Assignment.from_dict(d) for d in _as_list(cfg, "assignments", "assignment")],
            assessments=[Assessment.from_dict(d) for d in _as_list(cfg, "assessments", "assessment")],
            rosters=[Roster.from_dict(d) for d in _as_list(cfg, "rosters", "roster")],
        )
    except KeyError as e:
        raise ValueError(f"Course file {path} is missing field {e}") from e
