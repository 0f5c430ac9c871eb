from __future__ import annotations

import logging
import sys
from typing import List, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config_io import GraderSettings, load_config_any, load_course, load_settings
from .errors import AssignmentError, GradingError, LookupStoreError, ScantronError
from .lookup_store import LookupStore, format_key_for_qr
from .models import GradeOverride, PageImage
from .override_core import apply_overrides, assign_unidentified_page
from .parse_core import PageParser
from .results_io import SavedResults, load_results, save_results, write_grades_csv
from .service import FileCourseRepository, GradeRequest, GradingService
from .tools.id_resolver import IdResolver
from .tools.name_ocr import NameReader
from .tools.orientation import corner_darkness, detect_upside_down
from .tools.page_io import load_pages
from .visualize_core import overlay_image

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="scantron-grader: read, grade, review and correct scanned bubble sheets.",
)
keys_app = typer.Typer(no_args_is_help=True, help="Manage the short-key table behind printed QR codes.")
app.add_typer(keys_app, name="keys")

console = Console()
_state = {"level_from_flags": False}


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging (strategy attempts, thresholds)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only warnings and errors"),
):
    """
    Bubble-sheet grading from rasterized scans (PNG/JPEG/TIFF, or a folder of them).
    """
    _state["level_from_flags"] = verbose or quiet
    _setup_logging("DEBUG" if verbose else "WARNING" if quiet else "INFO")


def _settings(config: Optional[str]) -> GraderSettings:
    try:
        settings = load_settings(config)
    except Exception as e:
        rprint(f"[red]Failed to load config {config}:[/red] {e}")
        raise typer.Exit(code=2)
    if not _state["level_from_flags"]:
        logging.getLogger().setLevel(settings.log_level)
    return settings


def _parser(settings: GraderSettings, store: Optional[LookupStore], ocr: bool) -> PageParser:
    reader = NameReader(settings.tesseract_cmd, settings.detection) if (ocr and settings.ocr) else None
    resolver = IdResolver(store=store, name_reader=reader, defaults=settings.detection)
    return PageParser(resolver, settings.detection, with_images=settings.review_images)


# ------------------------------ GRADE --------------------------------
@app.command()
def grade(
    input_path: str = typer.Argument(..., help="Scanned pages: image file, multi-page TIFF, or folder of images"),
    course: str = typer.Option(..., "--course", help="Course file (.yaml/.yml or .json) with assignments, assessments, rosters"),
    assignment_id: str = typer.Option(..., "--assignment-id", "-a", help="Assignment to grade"),
    section_id: str = typer.Option(..., "--section-id", "-s", help="Section the scans belong to"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Grader settings file (.yaml/.json)"),
    db: Optional[str] = typer.Option(None, "--db", help="Lookup store URL (overrides config), e.g. sqlite:///keys.db"),
    out_json: str = typer.Option("results.json", "--out-json", "-o", help="Full results (grades, unidentified pages, key)"),
    out_csv: Optional[str] = typer.Option(None, "--out-csv", help="Optional per-student CSV"),
    ocr: bool = typer.Option(True, "--ocr/--no-ocr", help="Read printed names when no QR code decodes"),
):
    """
    Grade a batch of scanned sheets for one assignment.
    """
    settings = _settings(config)
    try:
        repo = FileCourseRepository.from_path(course)
    except Exception as e:
        rprint(f"[red]Failed to load course {course}:[/red] {e}")
        raise typer.Exit(code=2)

    store = LookupStore(db or settings.database)
    try:
        service = GradingService(repo, _parser(settings, store, ocr), settings.detection)
        with console.status("Grading...") as status:
            response = service.process(
                GradeRequest(assignment_id=assignment_id, section_id=section_id, source=input_path),
                progress=lambda ev: status.update(f"Grading... {ev.label}"),
            )
    except (GradingError, LookupStoreError) as e:
        rprint(f"[red]Grading failed:[/red] {e}")
        raise typer.Exit(code=2)
    finally:
        store.close()

    results = SavedResults(
        grades=response.grades,
        unidentified_pages=response.unidentified_pages,
        answer_key=response.answer_key,
        summary=response.summary.to_dict(),
        processing_time_ms=response.processing_time_ms,
    )
    save_results(results, out_json)
    rprint(f"[green]Wrote results:[/green] {out_json}")
    if out_csv:
        write_grades_csv(response.grades, out_csv)
        rprint(f"[green]Wrote CSV:[/green] {out_csv}")

    s = response.summary
    rprint(
        f"Pages: {s.total_pages}  identified: {s.identified_pages}  "
        f"unidentified: [yellow]{s.unidentified_pages}[/yellow]  blank: {s.blank_pages}  unknown: {s.unknown_documents}"
    )
    flagged = response.flagged_records
    if flagged:
        rprint(f"[yellow]{len(flagged)} record(s) need review:[/yellow] " + ", ".join(r.student_id for r in flagged))
    stats = response.grades.stats
    if stats.total_students:
        rprint(f"Average {stats.average_score:.1f}%  median {stats.median_score:.1f}%  "
               f"high {stats.high_score:.1f}%  low {stats.low_score:.1f}%")


# ------------------------------ INSPECT ------------------------------
@app.command()
def inspect(
    image: str = typer.Argument(..., help="One scanned page (first frame is used)"),
    questions: int = typer.Option(50, "--questions", "-n", help="Questions on the sheet"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Grader settings file"),
    db: Optional[str] = typer.Option(None, "--db", help="Lookup store URL for short-key QR codes"),
    ocr: bool = typer.Option(True, "--ocr/--no-ocr", help="Try OCR when no QR decodes"),
):
    """
    Run detection on a single page and print what was read.
    """
    settings = _settings(config)
    try:
        page: PageImage = load_pages(image)[0]
    except ScantronError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(code=2)

    d = corner_darkness(page, settings.detection)
    rprint(f"Size {page.width}x{page.height}  corners TL={d.top_left:.0f}% TR={d.top_right:.0f}% "
           f"BL={d.bottom_left:.0f}% BR={d.bottom_right:.0f}%  upside down: {detect_upside_down(page, settings.detection)}")

    store = LookupStore(db or settings.database)
    try:
        parsed = _parser(settings, store, ocr).parse(page, 1, questions)
    finally:
        store.close()

    if parsed.identity:
        i = parsed.identity
        rprint(f"[green]Identity:[/green] assignment={i.assignment_id} student={i.student_id} "
               f"format={i.format or '-'} variant={i.variant or '-'}")
    else:
        rprint(f"[yellow]No identity:[/yellow] {parsed.identity_error}  OCR name: {parsed.ocr_name or '-'}")

    table = Table(title=f"Page confidence {parsed.confidence:.2f}")
    table.add_column("Q", justify="right")
    table.add_column("Selected")
    table.add_column("Intensities (A B C D)")
    table.add_column("Conf", justify="right")
    table.add_column("Note")
    for q in parsed.questions:
        note = "multiple" if q.multiple_detected else ("blank" if q.selected is None else "")
        table.add_row(
            str(q.question_number),
            q.selected or "-",
            " ".join(f"{b.intensity:5.1f}" for b in q.bubbles),
            f"{q.confidence:.2f}",
            note,
        )
    console.print(table)
    if parsed.flags:
        rprint("Flags: " + ", ".join(parsed.flags))


# ----------------------------- VISUALIZE -----------------------------
@app.command()
def visualize(
    image: str = typer.Argument(..., help="A scanned page to overlay"),
    questions: int = typer.Option(50, "--questions", "-n", help="Questions on the sheet"),
    out_image: str = typer.Option("overlay.png", "--out-image", "-o", help="Output overlay PNG"),
    fmt: str = typer.Option("standard", "--format", help="Sheet layout: standard|quiz"),
    page_index: int = typer.Option(0, "--page", help="Page index within a multi-page file (0-based)"),
    label_density: bool = typer.Option(False, "--label-density", help="Print % fill next to each bubble"),
):
    """
    Overlay the sampled bubble positions and header regions on a page.
    """
    if fmt not in ("standard", "quiz"):
        rprint(f"[red]Unknown format:[/red] {fmt}")
        raise typer.Exit(code=2)
    try:
        out = overlay_image(image, questions, out_image, fmt=fmt, page_index=page_index, label_density=label_density)
    except (ScantronError, ValueError) as e:
        rprint(f"[red]Visualization failed for {image}:[/red] {e}")
        raise typer.Exit(code=2)
    rprint(f"[green]Wrote:[/green] {out}")


# ----------------------------- OVERRIDE ------------------------------
@app.command()
def override(
    results_json: str = typer.Argument(..., help="Results file written by 'grade'"),
    overrides_file: str = typer.Option(..., "--overrides", help="YAML/JSON with an 'overrides' list"),
    out_json: Optional[str] = typer.Option(None, "--out-json", "-o", help="Output path (default: overwrite input)"),
):
    """
    Apply reviewer corrections and recompute scores and statistics.
    """
    try:
        results = load_results(results_json)
        raw = load_config_any(overrides_file).get("overrides") or []
        overrides = [GradeOverride.from_dict(o) for o in raw]
    except (OSError, ValueError, KeyError) as e:
        rprint(f"[red]Failed to load inputs:[/red] {e}")
        raise typer.Exit(code=2)

    results.grades = apply_overrides(results.grades, overrides)
    out = out_json or results_json
    save_results(results, out)
    rprint(f"[green]Applied {len(overrides)} override(s):[/green] {out}")


# ------------------------------ ASSIGN -------------------------------
@app.command()
def assign(
    results_json: str = typer.Argument(..., help="Results file written by 'grade'"),
    page: int = typer.Option(..., "--page", help="Unidentified page number"),
    student: str = typer.Option(..., "--student", help="Student id to assign the page to"),
    course: str = typer.Option(..., "--course", help="Course file used for grading"),
    variant: Optional[str] = typer.Option(None, "--variant", help="Variant tag of the sheet, if any"),
    out_json: Optional[str] = typer.Option(None, "--out-json", "-o", help="Output path (default: overwrite input)"),
):
    """
    Grade an unidentified page as the given student.
    """
    try:
        results = load_results(results_json)
        repo = FileCourseRepository(load_course(course))
    except (OSError, ValueError, KeyError) as e:
        rprint(f"[red]Failed to load inputs:[/red] {e}")
        raise typer.Exit(code=2)

    assessment = repo.get_assessment(results.grades.assessment_id)
    roster = repo.get_roster(results.grades.section_id)
    if assessment is None or roster is None:
        rprint("[red]Assessment or roster for these results is missing from the course file[/red]")
        raise typer.Exit(code=2)

    try:
        results.grades, results.unidentified_pages = assign_unidentified_page(
            results.grades, results.unidentified_pages, page, student, assessment, roster, variant,
        )
    except AssignmentError as e:
        rprint(f"[red]Cannot assign:[/red] {e}")
        raise typer.Exit(code=2)

    out = out_json or results_json
    save_results(results, out)
    rprint(f"[green]Assigned page {page} to {student}:[/green] {out}")


# ------------------------------- KEYS --------------------------------
def _store(db: str) -> LookupStore:
    store = LookupStore(db)
    try:
        store.initialize()
    except LookupStoreError as e:
        rprint(f"[red]{e}[/red]")
        raise typer.Exit(code=2)
    return store


DB_OPTION = typer.Option("sqlite:///scantron_keys.db", "--db", help="Lookup store URL")


@keys_app.command("create")
def keys_create(
    assignment_id: str = typer.Argument(..., help="Assignment the sheets belong to"),
    student_ids: List[str] = typer.Argument(..., help="One or more student ids"),
    fmt: Optional[str] = typer.Option(None, "--format", help="Sheet format, e.g. quiz"),
    variant: Optional[str] = typer.Option(None, "--variant", help="Variant tag"),
    db: str = DB_OPTION,
):
    """Create one key per student (single transaction) and print the QR payloads."""
    store = _store(db)
    try:
        keys = store.create_batch(
            {"assignment_id": assignment_id, "student_id": sid, "format": fmt, "variant": variant}
            for sid in student_ids
        )
    finally:
        store.close()
    for sid, key in zip(student_ids, keys):
        typer.echo(f"{sid}\t{format_key_for_qr(key)}")


@keys_app.command("show")
def keys_show(key: str = typer.Argument(..., help="8-character key (with or without TH:)"), db: str = DB_OPTION):
    """Show the identity behind a key."""
    key = key.strip().upper()
    if key.startswith("TH:"):
        key = key[3:]
    store = _store(db)
    try:
        rec = store.get(key)
    finally:
        store.close()
    if rec is None:
        rprint(f"[yellow]No such key:[/yellow] {key}")
        raise typer.Exit(code=1)
    rprint(rec.to_dict())


@keys_app.command("list")
def keys_list(assignment_id: str = typer.Argument(...), db: str = DB_OPTION):
    """List keys generated for an assignment."""
    store = _store(db)
    try:
        records = store.get_by_assignment(assignment_id)
    finally:
        store.close()
    table = Table(title=f"{len(records)} key(s) for {assignment_id}")
    for col in ("Key", "Student", "Format", "Variant", "Created"):
        table.add_column(col)
    for r in records:
        table.add_row(r.key, r.student_id, r.format or "", r.variant or "",
                      r.created_at.isoformat(timespec="seconds") if r.created_at else "")
    console.print(table)


@keys_app.command("purge")
def keys_purge(assignment_id: str = typer.Argument(...), db: str = DB_OPTION):
    """Delete every key of a discarded assignment."""
    store = _store(db)
    try:
        n = store.delete_by_assignment(assignment_id)
    finally:
        store.close()
    rprint(f"[green]Deleted {n} key(s)[/green] for {assignment_id}")


@keys_app.command("cleanup")
def keys_cleanup(days: int = typer.Option(365, "--days", help="Remove keys older than this"), db: str = DB_OPTION):
    """Delete stale keys."""
    store = _store(db)
    try:
        n = store.cleanup_older_than(days)
    finally:
        store.close()
    rprint(f"[green]Removed {n} key(s)[/green] older than {days} days")


@keys_app.command("stats")
def keys_stats(db: str = DB_OPTION):
    """Row count and age range of the key table."""
    store = _store(db)
    try:
        rprint(store.stats())
    finally:
        store.close()


# ------------------------------- MAIN --------------------------------
def app_main() -> None:
    """Entry point for console_scripts."""
    try:
        app()
    except KeyboardInterrupt:
        rprint("\n[red]Interrupted[/red]")
        sys.exit(130)


if __name__ == "__main__":
    app_main()
