"""Unit tests for the JSON library store."""
from __future__ import annotations

import json
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

import numpy as np

from face_recall.recall_lib.models import Encounter, EncounterPhoto, FaceBoundingBox, FaceEmbedding, Person
from face_recall.recall_lib.stores import LibraryStore, StoreError


def _encounter(*boxes: FaceBoundingBox) -> Encounter:
    photo = EncounterPhoto(image_ref="party/001.jpg", timestamp=datetime(2024, 5, 1, 20, 0), boxes=list(boxes))
    return Encounter(timestamp=photo.timestamp, photos=[photo])


class LibraryStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "library.json"
        self.store = LibraryStore(self.path)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _embedding(self, person: Person, **kwargs) -> FaceEmbedding:
        return FaceEmbedding(vector=np.array([1.0, 0.0], dtype=np.float32), person_id=person.id, **kwargs)

    def test_add_person_requires_name(self) -> None:
        with self.assertRaises(ValueError):
            self.store.add_person(Person(name="   "))

    def test_first_embedding_becomes_profile(self) -> None:
        alice = self.store.add_person(Person(name=" Alice "))
        first = self.store.add_embedding(self._embedding(alice))
        self.store.add_embedding(self._embedding(alice))
        reloaded = self.store.get_person(alice.id)
        self.assertEqual(reloaded.name, "Alice")
        self.assertEqual(reloaded.profile_embedding_id, first.id)
        self.assertEqual(reloaded.profile_embedding.id, first.id)
        self.assertEqual(len(reloaded.embeddings), 2)

    def test_embedding_for_unknown_person_is_rejected(self) -> None:
        with self.assertRaises(KeyError):
            self.store.add_embedding(FaceEmbedding(vector=np.zeros(2), person_id="ghost"))

    def test_data_persists_across_instances(self) -> None:
        alice = self.store.add_person(Person(name="Alice", company="Acme"))
        self.store.add_embedding(self._embedding(alice))
        encounter = self.store.add_encounter(_encounter(FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2)))
        other = LibraryStore(self.path)
        self.assertEqual(other.get_person(alice.id).company, "Acme")
        self.assertEqual(len(other.embeddings_for(alice.id)), 1)
        self.assertEqual(other.get_encounter(encounter.id).face_count, 1)
        np.testing.assert_allclose(other.embeddings()[0].vector, [1.0, 0.0])

    def test_rename_rewrites_box_names(self) -> None:
        alice = self.store.add_person(Person(name="Alice"))
        box = FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2, person_id=alice.id, person_name="Alice")
        encounter = self.store.add_encounter(_encounter(box))
        self.store.rename_person(alice.id, "Alicia")
        stored = self.store.get_encounter(encounter.id).photos[0].boxes[0]
        self.assertEqual(stored.person_name, "Alicia")
        self.assertEqual(self.store.find_person_by_name("alicia").id, alice.id)

    def test_delete_person_cascades_embeddings(self) -> None:
        alice = self.store.add_person(Person(name="Alice"))
        bob = self.store.add_person(Person(name="Bob"))
        self.store.add_embedding(self._embedding(alice))
        self.store.add_embedding(self._embedding(alice))
        self.store.add_embedding(self._embedding(bob))
        self.assertEqual(self.store.delete_person(alice.id), 2)
        self.assertIsNone(self.store.get_person(alice.id))
        self.assertEqual([e.person_id for e in self.store.embeddings()], [bob.id])

    def test_commit_face_label_replaces_previous_box_embedding(self) -> None:
        alice = self.store.add_person(Person(name="Alice"))
        bob = self.store.add_person(Person(name="Bob"))
        box = FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2)
        encounter = self.store.add_encounter(_encounter(box))
        photo_id = encounter.photos[0].id
        self.store.commit_face_label(encounter.id, photo_id, box.id, person=alice, embedding=self._embedding(alice))
        self.store.commit_face_label(encounter.id, photo_id, box.id, person=bob, embedding=self._embedding(bob))
        self.assertEqual(self.store.embeddings_for(alice.id), [])
        [bob_embedding] = self.store.embeddings_for(bob.id)
        self.assertEqual(bob_embedding.bounding_box_id, box.id)
        self.assertEqual(bob_embedding.encounter_id, encounter.id)
        self.assertIsNone(self.store.get_person(alice.id).profile_embedding_id)
        self.assertIsNotNone(self.store.get_person(bob.id).last_seen_at)
        stored = self.store.get_encounter(encounter.id).photos[0].boxes[0]
        self.assertEqual((stored.person_id, stored.person_name), (bob.id, "Bob"))

    def test_commit_only_if_unlabeled_refuses_owned_box(self) -> None:
        alice = self.store.add_person(Person(name="Alice"))
        bob = self.store.add_person(Person(name="Bob"))
        box = FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2, person_id=alice.id, person_name="Alice")
        encounter = self.store.add_encounter(_encounter(box))
        accepted = self.store.commit_face_label(
            encounter.id, encounter.photos[0].id, box.id, person=bob, only_if_unlabeled=True
        )
        self.assertFalse(accepted)
        self.assertEqual(self.store.all_boxes()[0].person_id, alice.id)

    def test_clear_face_label_drops_box_embeddings(self) -> None:
        alice = self.store.add_person(Person(name="Alice"))
        box = FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2)
        encounter = self.store.add_encounter(_encounter(box))
        photo_id = encounter.photos[0].id
        self.store.commit_face_label(encounter.id, photo_id, box.id, person=alice, embedding=self._embedding(alice))
        self.assertIsNotNone(self.store.get_person(alice.id).profile_embedding_id)
        self.store.clear_face_label(encounter.id, photo_id, box.id)
        stored = self.store.all_boxes()[0]
        self.assertFalse(stored.is_labeled)
        reloaded = LibraryStore(self.path)
        self.assertEqual(reloaded.embeddings_for(alice.id), [])
        self.assertIsNone(reloaded.get_person(alice.id).profile_embedding_id)

    def test_update_photo_boxes_moves_embeddings_to_new_box(self) -> None:
        alice = self.store.add_person(Person(name="Alice"))
        old = FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2)
        encounter = self.store.add_encounter(_encounter(old))
        photo_id = encounter.photos[0].id
        self.store.commit_face_label(encounter.id, photo_id, old.id, person=alice, embedding=self._embedding(alice))
        new = FaceBoundingBox(x=0.11, y=0.1, width=0.2, height=0.2, person_id=alice.id, person_name="Alice")

        def _swap(boxes):
            boxes[:] = [new]
            return {old.id: new.id}

        self.store.update_photo_boxes(encounter.id, photo_id, _swap)
        self.assertEqual([e.bounding_box_id for e in LibraryStore(self.path).embeddings()], [new.id])

    def test_update_photo_boxes_in_place(self) -> None:
        encounter = self.store.add_encounter(_encounter(FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2)))

        def _append(boxes):
            boxes.append(FaceBoundingBox(x=0.5, y=0.5, width=0.1, height=0.1))

        result = self.store.update_photo_boxes(encounter.id, encounter.photos[0].id, _append)
        self.assertEqual(len(result), 2)
        self.assertEqual(LibraryStore(self.path).get_encounter(encounter.id).face_count, 2)
        with self.assertRaises(KeyError):
            self.store.update_photo_boxes(encounter.id, "missing", _append)

    def test_delete_embeddings_is_single_pass(self) -> None:
        alice = self.store.add_person(Person(name="Alice"))
        keep = self.store.add_embedding(self._embedding(alice))
        drop = self.store.add_embedding(self._embedding(alice))
        self.assertEqual(self.store.delete_embeddings([drop.id, "unknown"]), 1)
        self.assertEqual([e.id for e in self.store.embeddings()], [keep.id])
        self.assertEqual(self.store.delete_embeddings([]), 0)

    def test_imported_image_refs(self) -> None:
        self.store.add_encounter(_encounter())
        self.assertEqual(self.store.imported_image_refs(), {"party/001.jpg"})

    def test_corrupt_file_raises_store_error(self) -> None:
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertRaises(StoreError):
            LibraryStore(self.path)

    def test_written_file_is_versioned_json(self) -> None:
        self.store.add_person(Person(name="Alice"))
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        self.assertEqual(payload["version"], LibraryStore.VERSION)
        self.assertIn("updated_at", payload)
        self.assertFalse(self.path.with_suffix(".json.tmp").exists())


if __name__ == "__main__":
    unittest.main()
