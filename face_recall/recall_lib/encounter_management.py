"""Merge and split encounters, merge duplicate people."""
from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence, Set

from .models import Encounter, EncounterPhoto, Person
from .stores import LibraryStore

PERSON_TEXT_FIELDS = ("relationship", "company", "how_we_met")


def _box_ids(photos: Iterable[EncounterPhoto]) -> Set[str]:
    return {box.id for photo in photos for box in photo.boxes}


def _combine_notes(parts: Iterable[Optional[str]]) -> Optional[str]:
    kept = [part for part in parts if part and part.strip()]
    return "\n\n".join(kept) if kept else None


class EncounterManager:
    def __init__(self, store: LibraryStore, *, logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def linked_person_ids(encounter: Encounter) -> Set[str]:
        return encounter.linked_person_ids

    def _require(self, encounter_id: str) -> Encounter:
        encounter = self.store.get_encounter(encounter_id)
        if encounter is None:
            raise KeyError(f"Unknown encounter: {encounter_id}")
        return encounter

    def merge_encounters(
        self,
        primary_id: str,
        secondary_ids: Sequence[str],
        *,
        combine_notes: bool = True,
    ) -> Encounter:
        """Fold the secondaries into ``primary_id``; the merged encounter starts at its earliest photo."""
        secondary_ids = [eid for eid in secondary_ids if eid != primary_id]
        primary = self._require(primary_id)
        secondaries = [self._require(eid) for eid in secondary_ids]
        for secondary in secondaries:
            primary.photos.extend(secondary.photos)
            if combine_notes:
                primary.notes = _combine_notes([primary.notes, secondary.notes])
            if primary.location is None:
                primary.location = secondary.location
                primary.location_name = primary.location_name or secondary.location_name
        primary.photos.sort(key=lambda photo: photo.timestamp)
        if primary.photos:
            primary.timestamp = min(primary.timestamp, primary.photos[0].timestamp)
        self.store.replace_encounter(primary)
        for secondary in secondaries:
            self.store.retarget_embedding_encounters(secondary.id, primary.id)
            self.store.delete_encounter(secondary.id)
        self.logger.info("Merged %d encounters into %s", len(secondaries), primary.id)
        return primary

    def move_photos(self, photo_ids: Iterable[str], source_id: str, dest_id: str) -> bool:
        """Move photos between encounters; returns True when the emptied source was deleted.

        Photos whose image is already part of the destination stay in the
        source with their boxes; the source is deleted only once empty.
        """
        if source_id == dest_id:
            return False
        source = self._require(source_id)
        dest = self._require(dest_id)
        wanted = set(photo_ids)
        moving = [photo for photo in source.photos if photo.id in wanted]
        if not moving:
            return False
        existing_refs = {photo.image_ref for photo in dest.photos}
        moved = [photo for photo in moving if photo.image_ref not in existing_refs]
        dest.photos.extend(moved)
        dest.photos.sort(key=lambda photo: photo.timestamp)
        moved_ids = {photo.id for photo in moved}
        source.photos = [photo for photo in source.photos if photo.id not in moved_ids]
        self.store.replace_encounter(dest)
        self.store.retarget_embedding_encounters(source_id, dest_id, box_ids=_box_ids(moved))
        if not source.photos:
            self.store.delete_encounter(source_id)
            return True
        self.store.replace_encounter(source)
        return False

    def move_photos_to_new_encounter(self, photo_ids: Iterable[str], source_id: str) -> Encounter:
        source = self._require(source_id)
        wanted = set(photo_ids)
        moving = sorted((photo for photo in source.photos if photo.id in wanted), key=lambda photo: photo.timestamp)
        if not moving:
            raise ValueError("no photos selected")
        location = next((photo.location for photo in moving if photo.location is not None), None)
        encounter = self.store.add_encounter(Encounter(timestamp=moving[0].timestamp, location=location))
        self.move_photos(wanted, source_id, encounter.id)
        return self._require(encounter.id)

    def merge_people(
        self,
        primary_id: str,
        secondary_ids: Sequence[str],
        *,
        combine_notes: bool = True,
    ) -> Person:
        """Fold duplicate people into ``primary_id`` and delete them."""
        secondaries: List[Person] = []
        for person_id in secondary_ids:
            if person_id == primary_id:
                continue
            person = self.store.get_person(person_id)
            if person is None:
                raise KeyError(f"Unknown person: {person_id}")
            secondaries.append(person)
        primary = self.store.get_person(primary_id)
        if primary is None:
            raise KeyError(f"Unknown person: {primary_id}")

        def _fill(target: Person) -> None:
            for secondary in secondaries:
                for name in PERSON_TEXT_FIELDS:
                    if not getattr(target, name):
                        setattr(target, name, getattr(secondary, name))
                if combine_notes:
                    target.notes = _combine_notes([target.notes, secondary.notes])
                elif not target.notes:
                    target.notes = secondary.notes
                if not target.profile_embedding_id:
                    target.profile_embedding_id = secondary.profile_embedding_id
                if secondary.last_seen_at and (target.last_seen_at or "") < secondary.last_seen_at:
                    target.last_seen_at = secondary.last_seen_at

        for secondary in secondaries:
            self.store.reassign_embeddings(secondary.id, primary.id)
            self.store.rewrite_box_owner(secondary.id, primary)
        merged = self.store.update_person(primary.id, _fill)
        for secondary in secondaries:
            self.store.delete_person(secondary.id)
        self.logger.info("Merged %d people into %s", len(secondaries), merged.name)
        return merged
