"""CLI to import a folder of photos as encounters with suggested face labels."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Set

import typer
from tqdm import tqdm

from face_recall.recall_lib import config as config_mod, log as log_mod
from face_recall.recall_lib.encounter_clusterer import EncounterClusterer, PhotoGroup, encounter_from_photos
from face_recall.recall_lib.faces import FaceDetectionError, FaceDetector, FaceEmbedder, load_image
from face_recall.recall_lib.imaging import iter_photo_paths, probe_photos
from face_recall.recall_lib.models import EncounterPhoto
from face_recall.recall_lib.review import ReviewSession
from face_recall.recall_lib.stores import LibraryStore


@dataclass
class ScanSummary:
    photos_seen: int = 0
    photos_skipped: int = 0
    encounters_created: int = 0
    faces_detected: int = 0
    faces_suggested: int = 0


async def _import_groups(
    session: ReviewSession,
    store: LibraryStore,
    groups: List[PhotoGroup],
    summary: ScanSummary,
    *,
    enhance: bool,
    logger: logging.Logger,
) -> None:
    people = store.people()
    for group in tqdm(groups, desc="Encounters", unit="enc"):
        photos: List[EncounterPhoto] = []
        # Confident matches earlier in the encounter make the same people likelier later on.
        boost: Set[str] = set()
        for ref in group.photos:
            try:
                image = load_image(str(ref.path))
            except FaceDetectionError as exc:
                logger.warning("Skipping %s: %s", ref.path, exc)
                summary.photos_skipped += 1
                continue
            boxes = await session.scan_photo(image, people, boost=frozenset(boost), enhance=enhance)
            summary.faces_detected += len(boxes)
            summary.faces_suggested += sum(1 for box in boxes if box.is_labeled)
            boost.update(box.person_id for box in boxes if box.is_auto_accepted and box.person_id)
            photos.append(
                EncounterPhoto(image_ref=str(ref.path), timestamp=ref.timestamp, location=ref.location, boxes=boxes)
            )
        if not photos:
            continue
        store.add_encounter(encounter_from_photos(photos))
        summary.encounters_created += 1


def main(
    root: Path = typer.Argument(..., exists=True, file_okay=False, dir_okay=True, help="Folder of photos to import"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Library directory (default ~/.face_recall)"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="JSON file with threshold overrides"),
    time_threshold: Optional[float] = typer.Option(
        None,
        "--time-threshold",
        help="Minutes between consecutive photos of one encounter",
        min=0,
    ),
    distance: Optional[float] = typer.Option(
        None,
        "--distance",
        help="Meters between consecutive geotagged photos of one encounter",
        min=0,
    ),
    enhance: bool = typer.Option(False, "--enhance", help="Boost contrast and sharpen before detection"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report how photos would be grouped"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
) -> None:
    log_mod.setup_logging(log_level)
    logger = logging.getLogger("cli.scan")
    try:
        cfg = config_mod.load_config(data_dir, config_file)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    cluster_cfg = cfg.cluster
    if time_threshold is not None:
        cluster_cfg = replace(cluster_cfg, time_threshold=timedelta(minutes=time_threshold))
    if distance is not None:
        cluster_cfg = replace(cluster_cfg, distance_threshold_m=distance)

    store = LibraryStore(cfg.library_path)
    known = store.imported_image_refs()
    summary = ScanSummary()
    paths = list(iter_photo_paths(root))
    new_paths = [path for path in paths if str(path) not in known]
    summary.photos_seen = len(paths)
    summary.photos_skipped = len(paths) - len(new_paths)
    refs = probe_photos(tqdm(new_paths, desc="Reading metadata", unit="photo"))

    groups = EncounterClusterer(cluster_cfg, logger=logger).cluster(refs)
    if dry_run:
        for group in groups:
            typer.echo(
                f"{group.timestamp:%Y-%m-%d %H:%M} -> {group.end_timestamp:%H:%M} "
                f"photos={len(group.photos)} located={'yes' if group.location else 'no'}"
            )
        logger.info("Dry run: %d new photos in %d encounters", len(refs), len(groups))
        return

    embedder = FaceEmbedder(cfg.detection.model_dir, logger=logger)
    embedder.preload()
    session = ReviewSession(
        store,
        embedder,
        detector=FaceDetector(cfg.detection, logger=logger),
        matching=cfg.matching,
        propagation=cfg.propagation,
        reconcile_config=cfg.reconcile,
        padding=cfg.detection.padding,
        logger=logger,
    )
    asyncio.run(_import_groups(session, store, groups, summary, enhance=enhance, logger=logger))
    logger.info(
        "Scanned %d photos | skipped=%d encounters=%d faces=%d suggested=%d",
        summary.photos_seen,
        summary.photos_skipped,
        summary.encounters_created,
        summary.faces_detected,
        summary.faces_suggested,
    )


def run() -> None:  # pragma: no cover
    typer.run(main)


if __name__ == "__main__":  # pragma: no cover
    run()
