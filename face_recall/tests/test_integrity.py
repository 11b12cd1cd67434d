"""Tests for the embedding integrity audit."""
from __future__ import annotations

import csv
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

import numpy as np

from face_recall.recall_lib.integrity import (
    BoxOwnership,
    EmbeddingIntegrityAuditor,
    Ownership,
    find_orphans,
    write_audit_report,
)
from face_recall.recall_lib.models import Encounter, EncounterPhoto, FaceBoundingBox, FaceEmbedding, Person
from face_recall.recall_lib.stores import LibraryStore, StoreError


def _embedding(person_id: str, box_id=None) -> FaceEmbedding:
    return FaceEmbedding(vector=np.array([1.0, 0.0]), person_id=person_id, bounding_box_id=box_id)


class OwnershipTests(unittest.TestCase):
    def test_classification(self) -> None:
        owned = FaceBoundingBox(x=0, y=0, width=0.1, height=0.1, person_id="p")
        cleared = FaceBoundingBox(x=0, y=0, width=0.1, height=0.1)
        ownership = BoxOwnership.from_boxes([owned, cleared])
        self.assertEqual(ownership.owner(owned.id), (Ownership.OWNED, "p"))
        self.assertEqual(ownership.owner(cleared.id), (Ownership.UNOWNED, None))
        self.assertEqual(ownership.owner("gone"), (Ownership.NOT_FOUND, None))

    def test_find_orphans(self) -> None:
        box_q = FaceBoundingBox(x=0, y=0, width=0.1, height=0.1, person_id="Q")
        box_cleared = FaceBoundingBox(x=0, y=0, width=0.1, height=0.1)
        relabeled = _embedding("P", box_q.id)
        current = _embedding("Q", box_q.id)
        on_cleared = _embedding("P", box_cleared.id)
        deleted_encounter = _embedding("P", "gone")
        legacy = _embedding("P")
        result = find_orphans([relabeled, current, on_cleared, deleted_encounter, legacy], [box_q, box_cleared])
        self.assertEqual(result.removed, [relabeled.id, on_cleared.id])
        self.assertEqual(result.affected_persons, 1)


class AuditorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.store = LibraryStore(Path(self.tmpdir.name) / "library.json")
        self.p = self.store.add_person(Person(name="P"))
        self.q = self.store.add_person(Person(name="Q"))
        self.box = FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2, person_id=self.q.id, person_name="Q")
        photo = EncounterPhoto(image_ref="a.jpg", timestamp=datetime(2024, 1, 1), boxes=[self.box])
        self.store.add_encounter(Encounter(timestamp=photo.timestamp, photos=[photo]))
        # Stale embedding left behind when the box moved from P to Q.
        self.stale = self.store.add_embedding(_embedding(self.p.id, self.box.id))
        self.fresh = self.store.add_embedding(_embedding(self.q.id, self.box.id))
        self.auditor = EmbeddingIntegrityAuditor(self.store)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_relabel_orphan_is_removed(self) -> None:
        result = self.auditor.audit()
        self.assertEqual(result.removed, [self.stale.id])
        self.assertEqual(result.affected_persons, 1)
        self.assertFalse(result.skipped)
        self.assertEqual(self.store.embeddings_for(self.p.id), [])
        self.assertEqual([e.id for e in self.store.embeddings_for(self.q.id)], [self.fresh.id])

    def test_audit_is_idempotent(self) -> None:
        self.auditor.audit()
        second = self.auditor.audit()
        self.assertEqual(second.removed_count, 0)
        self.assertEqual(second.affected_persons, 0)

    def test_dry_run_keeps_embeddings(self) -> None:
        result = self.auditor.audit(dry_run=True)
        self.assertEqual(result.removed_count, 1)
        self.assertEqual(len(self.store.embeddings_for(self.p.id)), 1)

    def test_report_lists_orphans(self) -> None:
        result = self.auditor.audit(dry_run=True)
        reports_dir = Path(self.tmpdir.name) / "reports"
        out_path = write_audit_report(result, self.store.people(), reports_dir)
        self.assertEqual(out_path, reports_dir / "embedding_audit.csv")
        with out_path.open(newline="", encoding="utf-8") as handle:
            rows = list(csv.DictReader(handle))
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["embedding_id"], self.stale.id)
        self.assertEqual(rows[0]["person_name"], "P")
        self.assertEqual(rows[0]["bounding_box_id"], self.box.id)
        self.assertEqual(rows[0]["action"], "would_remove")

    def test_clean_and_filter_drops_people_without_faces(self) -> None:
        people, result = self.auditor.clean_and_filter()
        self.assertEqual(result.removed_count, 1)
        self.assertEqual([person.name for person in people], ["Q"])
        self.assertEqual(people[0].profile_embedding.id, self.fresh.id)


class _BrokenStore:
    def all_boxes(self):
        raise StoreError("disk gone")

    def embeddings(self):
        raise StoreError("disk gone")


def test_store_failure_skips_audit() -> None:
    result = EmbeddingIntegrityAuditor(_BrokenStore()).audit()
    assert result.skipped
    assert result.removed == []
