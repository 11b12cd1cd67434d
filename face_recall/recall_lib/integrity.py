"""Detect and remove face embeddings orphaned by relabeling.

Relabeling a box used to create an embedding for the new owner without
removing the one already held by the previous owner, leaving a face attached
to the wrong name. An embedding that remembers its ``bounding_box_id`` can be
checked against the box's current owner:

* box owned by the same person: kept
* box owned by someone else, or by nobody: orphaned
* box not found anywhere (its encounter was deleted): kept, since there is
  nothing left to verify it against
* embedding without a box id: kept (recorded before boxes were tracked)
"""
from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import FaceBoundingBox, FaceEmbedding, Person
from .stores import LibraryStore, StoreError


class Ownership(str, Enum):
    OWNED = "owned"
    UNOWNED = "unowned"
    NOT_FOUND = "not_found"


@dataclass
class AuditResult:
    removed: List[str] = field(default_factory=list)
    affected_persons: int = 0
    skipped: bool = False
    orphans: List[FaceEmbedding] = field(default_factory=list)
    dry_run: bool = False

    @property
    def removed_count(self) -> int:
        return len(self.removed)


class BoxOwnership:
    """Lookup of bounding box id to its current owner."""

    def __init__(self) -> None:
        self._owner_by_box: Dict[str, str] = {}
        self._known: Set[str] = set()

    @classmethod
    def from_boxes(cls, boxes: Iterable[FaceBoundingBox]) -> "BoxOwnership":
        ownership = cls()
        for box in boxes:
            ownership.register(box.id, box.person_id)
        return ownership

    def register(self, box_id: str, person_id: Optional[str]) -> None:
        self._known.add(box_id)
        if person_id:
            self._owner_by_box[box_id] = person_id

    def owner(self, box_id: str) -> Tuple[Ownership, Optional[str]]:
        person_id = self._owner_by_box.get(box_id)
        if person_id is not None:
            return Ownership.OWNED, person_id
        if box_id in self._known:
            return Ownership.UNOWNED, None
        return Ownership.NOT_FOUND, None


def is_orphaned(embedding: FaceEmbedding, ownership: BoxOwnership) -> bool:
    if not embedding.bounding_box_id:
        return False
    status, owner_id = ownership.owner(embedding.bounding_box_id)
    if status is Ownership.OWNED:
        return owner_id != embedding.person_id
    return status is Ownership.UNOWNED


def find_orphans(embeddings: Iterable[FaceEmbedding], boxes: Iterable[FaceBoundingBox]) -> AuditResult:
    """Classify embeddings against box ownership without touching storage."""
    ownership = BoxOwnership.from_boxes(boxes)
    orphans = [embedding for embedding in embeddings if is_orphaned(embedding, ownership)]
    return AuditResult(
        removed=[embedding.id for embedding in orphans],
        affected_persons=len({embedding.person_id for embedding in orphans}),
        orphans=orphans,
    )


class EmbeddingIntegrityAuditor:
    """Scan the library and delete embeddings whose box now belongs to someone else."""

    def __init__(self, store: LibraryStore, *, logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def audit(self, *, dry_run: bool = False) -> AuditResult:
        try:
            boxes = self.store.all_boxes()
            embeddings = self.store.embeddings()
        except StoreError as exc:
            self.logger.warning("Skipping embedding audit, library unavailable: %s", exc)
            return AuditResult(skipped=True)
        result = find_orphans(embeddings, boxes)
        result.dry_run = dry_run
        if not result.removed:
            self.logger.debug("Embedding audit found no orphans across %d embeddings", len(embeddings))
            return result
        if dry_run:
            self.logger.info(
                "Embedding audit (dry run): %d orphans across %d people",
                result.removed_count,
                result.affected_persons,
            )
            return result
        try:
            self.store.delete_embeddings(result.removed)
        except StoreError as exc:
            self.logger.warning("Embedding audit could not persist removals: %s", exc)
            return AuditResult(skipped=True)
        self.logger.info(
            "Removed %d orphaned embeddings from %d people",
            result.removed_count,
            result.affected_persons,
        )
        return result

    def clean_and_filter(self) -> Tuple[List[Person], AuditResult]:
        """Audit, then return the people that still have at least one embedding.

        Run before sampling faces for practice so no face is shown under the
        wrong name.
        """
        result = self.audit()
        people = [person for person in self.store.people() if person.embeddings]
        return people, result


AUDIT_REPORT_FIELDS = ["embedding_id", "person_id", "person_name", "bounding_box_id", "encounter_id", "action"]


def write_audit_report(
    result: AuditResult,
    people: Iterable[Person],
    reports_dir: Path,
    *,
    logger: Optional[logging.Logger] = None,
) -> Path:
    """Write one CSV row per orphaned embedding found by ``result``."""
    logger = logger or logging.getLogger(__name__)
    names = {person.id: person.name for person in people}
    action = "would_remove" if result.dry_run else "removed"
    out_path = reports_dir / "embedding_audit.csv"
    reports_dir.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=AUDIT_REPORT_FIELDS)
        writer.writeheader()
        for embedding in result.orphans:
            writer.writerow(
                {
                    "embedding_id": embedding.id,
                    "person_id": embedding.person_id,
                    "person_name": names.get(embedding.person_id, ""),
                    "bounding_box_id": embedding.bounding_box_id or "",
                    "encounter_id": embedding.encounter_id or "",
                    "action": action,
                }
            )
    logger.info(f"Wrote embedding audit report to {out_path}")
    return out_path
