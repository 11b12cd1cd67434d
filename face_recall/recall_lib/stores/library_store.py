"""Store for people, face embeddings and encounters."""
from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..models import Encounter, FaceBoundingBox, FaceEmbedding, Person, utc_now_iso
from .json_store import BaseJSONStore, StoreError

# May return {old_box_id: new_box_id} to move box embeddings onto replacement boxes.
BoxMutator = Callable[[List[FaceBoundingBox]], Optional[Dict[str, str]]]


class LibraryStore(BaseJSONStore):
    """JSON-backed arena of people, embeddings and encounters keyed by id.

    Embeddings live in their own table and point at their owner through
    ``person_id``; boxes live inside the photos of their encounter. Nothing
    enforces referential integrity between the two, which is what the
    embedding integrity audit repairs.

    Every mutating call commits to disk before returning. Thread-safe with
    atomic file writes.
    """

    VERSION = 1

    def _init_data(self) -> Dict[str, Any]:
        """Initialize data structure with empty tables."""
        return {
            "version": self.VERSION,
            "updated_at": int(time.time()),
            "people": {},
            "embeddings": {},
            "encounters": {},
        }

    def _apply_payload(self, data: Dict[str, Any], payload: Dict[str, Any]) -> None:
        for table in ("people", "embeddings", "encounters"):
            rows = payload.get(table)
            data[table] = rows if isinstance(rows, dict) else {}

    # ------------------------------------------------------------------ people

    def add_person(self, person: Person) -> Person:
        clean_name = (person.name or "").strip()
        if not clean_name:
            raise ValueError("person name is required")
        person.name = clean_name
        with self.lock:
            self._refresh_if_changed()
            self._data["people"][person.id] = person.to_dict()
            for embedding in person.embeddings:
                embedding.person_id = person.id
                self._data["embeddings"][embedding.id] = embedding.to_dict()
            self._write_locked()
        return person

    def get_person(self, person_id: str) -> Optional[Person]:
        with self.lock:
            self._refresh_if_changed()
            raw = self._data["people"].get(person_id)
            if not isinstance(raw, dict):
                return None
            return self._hydrate_person(raw, self._embeddings_by_person())

    def people(self) -> List[Person]:
        with self.lock:
            self._refresh_if_changed()
            by_person = self._embeddings_by_person()
            return [
                self._hydrate_person(raw, by_person)
                for raw in self._data["people"].values()
                if isinstance(raw, dict)
            ]

    def find_person_by_name(self, name: str) -> Optional[Person]:
        wanted = name.strip().casefold()
        for person in self.people():
            if person.name.casefold() == wanted:
                return person
        return None

    def update_person(self, person_id: str, mutator: Callable[[Person], None]) -> Person:
        with self.lock:
            self._refresh_if_changed()
            raw = self._require(self._data["people"], person_id, "person")
            person = Person.from_dict(raw)
            mutator(person)
            if not person.name.strip():
                raise ValueError("person name is required")
            self._data["people"][person_id] = person.to_dict()
            self._write_locked()
            return self._hydrate_person(self._data["people"][person_id], self._embeddings_by_person())

    def rename_person(self, person_id: str, name: str) -> Person:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("person name is required")

        with self.lock:
            self._refresh_if_changed()
            raw = self._require(self._data["people"], person_id, "person")
            raw["name"] = clean_name
            # Box names are a denormalized cache of the owner's name.
            self._rewrite_boxes(lambda box: box.person_id == person_id, person_id, clean_name)
            self._write_locked()
            return self._hydrate_person(raw, self._embeddings_by_person())

    def delete_person(self, person_id: str) -> int:
        """Delete a person and every embedding they own; returns embeddings removed."""
        with self.lock:
            self._refresh_if_changed()
            self._require(self._data["people"], person_id, "person")
            owned = [eid for eid, raw in self._data["embeddings"].items() if raw.get("person_id") == person_id]
            for embedding_id in owned:
                del self._data["embeddings"][embedding_id]
            del self._data["people"][person_id]
            self._write_locked()
        return len(owned)

    # -------------------------------------------------------------- embeddings

    def add_embedding(self, embedding: FaceEmbedding) -> FaceEmbedding:
        with self.lock:
            self._refresh_if_changed()
            self._require(self._data["people"], embedding.person_id, "person")
            self._store_embedding_locked(embedding)
            self._write_locked()
        return embedding

    def embeddings(self) -> List[FaceEmbedding]:
        with self.lock:
            self._refresh_if_changed()
            return [FaceEmbedding.from_dict(raw) for raw in self._data["embeddings"].values()]

    def embeddings_for(self, person_id: str) -> List[FaceEmbedding]:
        return [embedding for embedding in self.embeddings() if embedding.person_id == person_id]

    def delete_embeddings(self, embedding_ids: Iterable[str]) -> int:
        """Delete the given embeddings in a single write; unknown ids are ignored."""
        wanted = set(embedding_ids)
        if not wanted:
            return 0
        with self.lock:
            self._refresh_if_changed()
            removed = [eid for eid in wanted if eid in self._data["embeddings"]]
            for embedding_id in removed:
                del self._data["embeddings"][embedding_id]
            if removed:
                self._clear_profile_refs(set(removed))
                self._write_locked()
        return len(removed)

    def reassign_embeddings(self, from_person_id: str, to_person_id: str) -> int:
        with self.lock:
            self._refresh_if_changed()
            moved = 0
            for raw in self._data["embeddings"].values():
                if raw.get("person_id") == from_person_id:
                    raw["person_id"] = to_person_id
                    moved += 1
            if moved:
                self._write_locked()
        return moved

    def retarget_embedding_encounters(
        self,
        from_encounter_id: str,
        to_encounter_id: str,
        box_ids: Optional[Set[str]] = None,
    ) -> int:
        """Point embeddings of ``from_encounter_id`` at ``to_encounter_id``, optionally limited to some boxes."""
        with self.lock:
            self._refresh_if_changed()
            changed = 0
            for raw in self._data["embeddings"].values():
                if raw.get("encounter_id") != from_encounter_id:
                    continue
                if box_ids is not None and raw.get("bounding_box_id") not in box_ids:
                    continue
                raw["encounter_id"] = to_encounter_id
                changed += 1
            if changed:
                self._write_locked()
        return changed

    # -------------------------------------------------------------- encounters

    def add_encounter(self, encounter: Encounter) -> Encounter:
        with self.lock:
            self._refresh_if_changed()
            self._data["encounters"][encounter.id] = encounter.to_dict()
            self._write_locked()
        return encounter

    def replace_encounter(self, encounter: Encounter) -> Encounter:
        with self.lock:
            self._refresh_if_changed()
            self._require(self._data["encounters"], encounter.id, "encounter")
            self._data["encounters"][encounter.id] = encounter.to_dict()
            self._write_locked()
        return encounter

    def get_encounter(self, encounter_id: str) -> Optional[Encounter]:
        with self.lock:
            self._refresh_if_changed()
            raw = self._data["encounters"].get(encounter_id)
            return Encounter.from_dict(raw) if isinstance(raw, dict) else None

    def encounters(self) -> List[Encounter]:
        with self.lock:
            self._refresh_if_changed()
            return [Encounter.from_dict(raw) for raw in self._data["encounters"].values() if isinstance(raw, dict)]

    def delete_encounter(self, encounter_id: str) -> None:
        with self.lock:
            self._refresh_if_changed()
            self._require(self._data["encounters"], encounter_id, "encounter")
            del self._data["encounters"][encounter_id]
            self._write_locked()

    def imported_image_refs(self) -> Set[str]:
        return {photo.image_ref for encounter in self.encounters() for photo in encounter.photos}

    def all_boxes(self) -> List[FaceBoundingBox]:
        """Every bounding box across every photo of every encounter."""
        return [box for encounter in self.encounters() for photo in encounter.photos for box in photo.boxes]

    def update_photo_boxes(self, encounter_id: str, photo_id: str, mutator: BoxMutator) -> List[FaceBoundingBox]:
        """Apply ``mutator`` to a photo's boxes in place and commit, under the store lock.

        When the mutator returns a box id mapping, embeddings derived from an
        old box are pointed at its replacement in the same write.
        """
        with self.lock:
            self._refresh_if_changed()
            raw_photo = self._raw_photo(encounter_id, photo_id)
            boxes = [FaceBoundingBox.from_dict(item) for item in raw_photo.get("boxes") or []]
            moves = mutator(boxes)
            raw_photo["boxes"] = [box.to_dict() for box in boxes]
            if moves:
                for raw in self._data["embeddings"].values():
                    new_id = moves.get(raw.get("bounding_box_id"))
                    if new_id:
                        raw["bounding_box_id"] = new_id
            self._write_locked()
            return boxes

    def commit_face_label(
        self,
        encounter_id: str,
        photo_id: str,
        box_id: str,
        *,
        person: Person,
        confidence: Optional[float] = None,
        auto_accepted: bool = False,
        embedding: Optional[FaceEmbedding] = None,
        only_if_unlabeled: bool = False,
    ) -> bool:
        """Label one box and attach its embedding in a single write.

        Embeddings previously derived from the same box are dropped first so a
        relabel never leaves the old owner holding this face. Returns False
        without writing when ``only_if_unlabeled`` is set and the box already
        has an owner.
        """
        with self.lock:
            self._refresh_if_changed()
            self._require(self._data["people"], person.id, "person")
            raw_box = self._raw_box(encounter_id, photo_id, box_id)
            if only_if_unlabeled and raw_box.get("person_id"):
                return False
            raw_box["person_id"] = person.id
            raw_box["person_name"] = person.name
            raw_box["confidence"] = confidence
            raw_box["is_auto_accepted"] = bool(auto_accepted)
            self._drop_box_embeddings_locked(box_id)
            if embedding is not None:
                embedding.person_id = person.id
                embedding.bounding_box_id = box_id
                embedding.encounter_id = encounter_id
                self._store_embedding_locked(embedding)
            self._data["people"][person.id]["last_seen_at"] = utc_now_iso()
            self._write_locked()
            return True

    def clear_face_label(self, encounter_id: str, photo_id: str, box_id: str) -> None:
        """Remove the owner of a box and drop the embeddings derived from it."""
        with self.lock:
            self._refresh_if_changed()
            raw_box = self._raw_box(encounter_id, photo_id, box_id)
            box = FaceBoundingBox.from_dict(raw_box)
            box.clear_label()
            raw_box.update(box.to_dict())
            self._drop_box_embeddings_locked(box_id)
            self._write_locked()

    def rewrite_box_owner(self, from_person_id: str, to_person: Person) -> int:
        with self.lock:
            self._refresh_if_changed()
            changed = self._rewrite_boxes(lambda box: box.person_id == from_person_id, to_person.id, to_person.name)
            if changed:
                self._write_locked()
        return changed

    # ----------------------------------------------------------------- helpers

    def _embeddings_by_person(self) -> Dict[str, List[FaceEmbedding]]:
        grouped: Dict[str, List[FaceEmbedding]] = {}
        for raw in self._data["embeddings"].values():
            if not isinstance(raw, dict) or not raw.get("person_id"):
                continue
            grouped.setdefault(raw["person_id"], []).append(FaceEmbedding.from_dict(raw))
        return grouped

    def _hydrate_person(self, raw: Dict[str, Any], by_person: Dict[str, List[FaceEmbedding]]) -> Person:
        person = Person.from_dict(raw)
        person.embeddings = list(by_person.get(person.id, []))
        return person

    def _store_embedding_locked(self, embedding: FaceEmbedding) -> None:
        self._data["embeddings"][embedding.id] = embedding.to_dict()
        owner = self._data["people"].get(embedding.person_id)
        if isinstance(owner, dict) and not owner.get("profile_embedding_id"):
            owner["profile_embedding_id"] = embedding.id

    def _drop_box_embeddings_locked(self, box_id: str) -> None:
        stale = {eid for eid, raw in self._data["embeddings"].items() if raw.get("bounding_box_id") == box_id}
        for embedding_id in stale:
            del self._data["embeddings"][embedding_id]
        self._clear_profile_refs(stale)

    def _clear_profile_refs(self, removed: Set[str]) -> None:
        for raw in self._data["people"].values():
            if raw.get("profile_embedding_id") in removed:
                raw["profile_embedding_id"] = None

    def _rewrite_boxes(self, predicate: Callable[[FaceBoundingBox], bool], person_id: str, person_name: str) -> int:
        changed = 0
        for raw_encounter in self._data["encounters"].values():
            for raw_photo in raw_encounter.get("photos") or []:
                for raw_box in raw_photo.get("boxes") or []:
                    if predicate(FaceBoundingBox.from_dict(raw_box)):
                        raw_box["person_id"] = person_id
                        raw_box["person_name"] = person_name
                        changed += 1
        return changed

    def _raw_photo(self, encounter_id: str, photo_id: str) -> Dict[str, Any]:
        raw_encounter = self._require(self._data["encounters"], encounter_id, "encounter")
        for raw_photo in raw_encounter.get("photos") or []:
            if raw_photo.get("id") == photo_id:
                return raw_photo
        raise KeyError(f"Unknown photo {photo_id} in encounter {encounter_id}")

    def _raw_box(self, encounter_id: str, photo_id: str, box_id: str) -> Dict[str, Any]:
        for raw_box in self._raw_photo(encounter_id, photo_id).get("boxes") or []:
            if raw_box.get("id") == box_id:
                return raw_box
        raise KeyError(f"Unknown box {box_id} in photo {photo_id}")

    @staticmethod
    def _require(table: Dict[str, Any], key: str, kind: str) -> Dict[str, Any]:
        raw = table.get(key)
        if not isinstance(raw, dict):
            raise KeyError(f"Unknown {kind}: {key}")
        return raw


__all__ = ["LibraryStore", "StoreError"]
