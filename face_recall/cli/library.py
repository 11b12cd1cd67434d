"""Library maintenance CLI: list, audit, label and merge."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

import typer

from face_recall.recall_lib import config as config_mod, log as log_mod
from face_recall.recall_lib.encounter_management import EncounterManager
from face_recall.recall_lib.faces import FaceDetector, FaceEmbedder
from face_recall.recall_lib.integrity import EmbeddingIntegrityAuditor, write_audit_report
from face_recall.recall_lib.models import Person
from face_recall.recall_lib.review import ReviewSession
from face_recall.recall_lib.stores import LibraryStore

app = typer.Typer(help="Inspect and maintain the face recall library.")

DATA_DIR_OPTION = typer.Option(None, "--data-dir", help="Library directory (default ~/.face_recall)")
LOG_LEVEL_OPTION = typer.Option("INFO", "--log-level", help="Logging level")


def _open(data_dir: Optional[Path], log_level: str):
    log_mod.setup_logging(log_level)
    cfg = config_mod.load_config(data_dir)
    return cfg, LibraryStore(cfg.library_path)


def _resolve_person(store: LibraryStore, key: str) -> Person:
    person = store.get_person(key) or store.find_person_by_name(key)
    if person is None:
        raise typer.BadParameter(f"No person with id or name {key!r}")
    return person


def _session(cfg, store: LibraryStore, *, with_detector: bool = False) -> ReviewSession:
    logger = logging.getLogger("cli.library")
    return ReviewSession(
        store,
        FaceEmbedder(cfg.detection.model_dir, logger=logger),
        detector=FaceDetector(cfg.detection, logger=logger) if with_detector else None,
        matching=cfg.matching,
        propagation=cfg.propagation,
        reconcile_config=cfg.reconcile,
        padding=cfg.detection.padding,
        logger=logger,
    )


@app.command()
def people(data_dir: Optional[Path] = DATA_DIR_OPTION, log_level: str = LOG_LEVEL_OPTION) -> None:
    """List people with their embedding counts."""
    _, store = _open(data_dir, log_level)
    rows = sorted(store.people(), key=lambda person: person.name.casefold())
    if not rows:
        typer.echo("No people yet.")
        return
    for person in rows:
        seen = person.last_seen_at or "never"
        typer.echo(f"{person.id}  {person.name:<24} faces={len(person.embeddings):<4} last_seen={seen}")


@app.command()
def encounters(data_dir: Optional[Path] = DATA_DIR_OPTION, log_level: str = LOG_LEVEL_OPTION) -> None:
    """List encounters, newest first."""
    _, store = _open(data_dir, log_level)
    names = {person.id: person.name for person in store.people()}
    for encounter in sorted(store.encounters(), key=lambda item: item.timestamp, reverse=True):
        linked = ", ".join(sorted(names.get(pid, pid) for pid in encounter.linked_person_ids)) or "-"
        typer.echo(
            f"{encounter.id}  {encounter.timestamp:%Y-%m-%d %H:%M}  photos={len(encounter.photos)} "
            f"faces={encounter.face_count}  people={linked}"
        )


@app.command()
def audit(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report orphaned embeddings without deleting them"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Remove embeddings whose face now belongs to someone else."""
    cfg, store = _open(data_dir, log_level)
    logger = logging.getLogger("cli.audit")
    result = EmbeddingIntegrityAuditor(store, logger=logger).audit(dry_run=dry_run)
    if result.skipped:
        typer.echo("Audit skipped: library unavailable.")
        raise typer.Exit(code=1)
    verb = "Would remove" if dry_run else "Removed"
    typer.echo(f"{verb} {result.removed_count} embeddings from {result.affected_persons} people.")
    report = write_audit_report(result, store.people(), cfg.reports_dir, logger=logger)
    typer.echo(f"Report: {report}")


@app.command("rename-person")
def rename_person(
    person: str = typer.Argument(..., help="Person id or current name"),
    new_name: str = typer.Argument(..., help="New display name"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    _, store = _open(data_dir, log_level)
    target = _resolve_person(store, person)
    try:
        renamed = store.rename_person(target.id, new_name)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"Renamed {target.name} -> {renamed.name}")


@app.command("delete-person")
def delete_person(
    person: str = typer.Argument(..., help="Person id or name"),
    yes: bool = typer.Option(False, "--yes", help="Skip confirmation"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    _, store = _open(data_dir, log_level)
    target = _resolve_person(store, person)
    if not yes:
        typer.confirm(f"Delete {target.name} and {len(target.embeddings)} faces?", abort=True)
    removed = store.delete_person(target.id)
    typer.echo(f"Deleted {target.name} ({removed} embeddings)")


@app.command("merge-people")
def merge_people(
    primary: str = typer.Argument(..., help="Person id or name to keep"),
    duplicates: List[str] = typer.Argument(..., help="People to fold into the primary"),
    keep_notes: bool = typer.Option(True, "--combine-notes/--no-combine-notes", help="Append duplicate notes"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    _, store = _open(data_dir, log_level)
    target = _resolve_person(store, primary)
    others = [_resolve_person(store, key).id for key in duplicates]
    merged = EncounterManager(store).merge_people(target.id, others, combine_notes=keep_notes)
    typer.echo(f"Merged {len(others)} into {merged.name}")


@app.command("merge-encounters")
def merge_encounters(
    primary: str = typer.Argument(..., help="Encounter id to keep"),
    others: List[str] = typer.Argument(..., help="Encounter ids to fold in"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    _, store = _open(data_dir, log_level)
    try:
        merged = EncounterManager(store).merge_encounters(primary, others)
    except KeyError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"Encounter {merged.id} now has {len(merged.photos)} photos")


@app.command()
def suggest(
    encounter_id: str = typer.Argument(...),
    photo_id: str = typer.Argument(...),
    box_id: str = typer.Argument(...),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Rank likely people for one face."""
    cfg, store = _open(data_dir, log_level)
    session = _session(cfg, store)
    try:
        matches = asyncio.run(session.suggest(encounter_id, photo_id, box_id, store.people()))
    except KeyError as exc:
        raise typer.BadParameter(str(exc)) from exc
    if not matches:
        typer.echo("No likely matches.")
        return
    for match in matches:
        typer.echo(f"{match.person.name:<24} {match.similarity:.3f}  {match.confidence.value}")


@app.command()
def label(
    encounter_id: str = typer.Argument(...),
    photo_id: str = typer.Argument(...),
    box_id: str = typer.Argument(...),
    person: str = typer.Argument(..., help="Person id or name; unknown names create a person"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Label one face and propagate to similar faces in the encounter."""
    cfg, store = _open(data_dir, log_level)
    session = _session(cfg, store)
    existing = store.get_person(person) or store.find_person_by_name(person)
    try:
        if existing is None:
            outcome = asyncio.run(session.create_and_assign(encounter_id, photo_id, box_id, person))
        else:
            outcome = asyncio.run(session.assign(encounter_id, photo_id, box_id, existing))
    except KeyError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"Labeled {box_id} as {outcome.person.name}; propagated to {len(outcome.propagated)} faces")


@app.command()
def redetect(
    encounter_id: str = typer.Argument(...),
    photo_id: str = typer.Argument(...),
    enhance: bool = typer.Option(True, "--enhance/--no-enhance"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Re-run face detection on a photo, keeping labels of boxes that barely moved."""
    cfg, store = _open(data_dir, log_level)
    session = _session(cfg, store, with_detector=True)
    try:
        boxes = asyncio.run(session.redetect(encounter_id, photo_id, enhance=enhance))
    except KeyError as exc:
        raise typer.BadParameter(str(exc)) from exc
    labeled = sum(1 for box in boxes if box.is_labeled)
    typer.echo(f"{len(boxes)} faces, {labeled} labeled")


if __name__ == "__main__":  # pragma: no cover
    app()
