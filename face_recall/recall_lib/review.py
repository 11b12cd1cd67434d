"""Encounter review: suggest, confirm and propagate face labels."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AbstractSet, AsyncIterator, Callable, Dict, List, Optional, Sequence

import numpy as np

from .box_reconciler import first_overlap, reconcile
from .config import MatchingConfig, PropagationConfig, ReconcileConfig
from .face_matcher import FaceMatcher, MatchResult
from .faces import (
    DetectedFace,
    DetectionOptions,
    Detector,
    Embedder,
    EmbeddingError,
    FaceDetectionError,
    crop_face,
    embed_faces,
    load_image,
)
from .label_propagator import LabelPropagator, PropagatedLabel, SiblingFace
from .models import Encounter, EncounterPhoto, FaceBoundingBox, FaceEmbedding, Person
from .stores import LibraryStore

ImageLoader = Callable[[str], np.ndarray]


@dataclass
class LabelOutcome:
    box_id: str
    person: Person
    embedding: Optional[FaceEmbedding] = None
    propagated: List[PropagatedLabel] = field(default_factory=list)


class ReviewSession:
    """One user's review of encounters; the single writer for the encounters it touches.

    Each confirmed face is committed on its own, so cancelling mid-session
    keeps every label already made.
    """

    def __init__(
        self,
        store: LibraryStore,
        embedder: Embedder,
        *,
        detector: Optional[Detector] = None,
        matching: Optional[MatchingConfig] = None,
        propagation: Optional[PropagationConfig] = None,
        reconcile_config: Optional[ReconcileConfig] = None,
        padding: float = 0.3,
        image_loader: ImageLoader = load_image,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.detector = detector
        self.matcher = FaceMatcher(matching)
        self.propagation = propagation or PropagationConfig()
        self.reconcile_config = reconcile_config or ReconcileConfig()
        self.padding = padding
        self.image_loader = image_loader
        self.logger = logger or logging.getLogger(__name__)
        self.propagator = LabelPropagator(embedder, self.propagation, logger=self.logger)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _encounter_lock(self, encounter_id: str) -> AsyncIterator[None]:
        # A lock lives only while someone holds or waits on it.
        lock = self._locks.get(encounter_id)
        if lock is None:
            lock = self._locks[encounter_id] = asyncio.Lock()
        self._lock_users[encounter_id] = self._lock_users.get(encounter_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[encounter_id] -= 1
            if not self._lock_users[encounter_id]:
                del self._lock_users[encounter_id]
                del self._locks[encounter_id]

    # -------------------------------------------------------------- suggestion

    async def match_faces(
        self,
        faces: Sequence[DetectedFace],
        people: Sequence[Person],
        *,
        boost: AbstractSet[str] = frozenset(),
    ) -> List[FaceBoundingBox]:
        """One box per detected face, prefilled with the best matching person if any."""
        vectors = await embed_faces(self.embedder, [face.crop for face in faces], self.logger)
        boxes: List[FaceBoundingBox] = []
        for face, vector in zip(faces, vectors):
            box = FaceBoundingBox.from_rect(face.normalized_box)
            if vector is not None:
                matches = self.matcher.find_matches(vector, people, boost=boost)
                if matches:
                    top = matches[0]
                    box.person_id = top.person.id
                    box.person_name = top.person.name
                    box.confidence = top.similarity
                    box.is_auto_accepted = top.similarity >= self.propagation.auto_accept_threshold
            boxes.append(box)
        return boxes

    async def scan_photo(
        self,
        image: np.ndarray,
        people: Sequence[Person],
        *,
        boost: AbstractSet[str] = frozenset(),
        enhance: bool = False,
    ) -> List[FaceBoundingBox]:
        """Detect and match faces in one photo; a detector failure yields no boxes."""
        if self.detector is None:
            raise ValueError("scan_photo requires a detector")
        try:
            faces = await self.detector.detect(image, DetectionOptions(enhance=enhance))
        except FaceDetectionError as exc:
            self.logger.warning("Face detection failed: %s", exc)
            return []
        return await self.match_faces(faces, people, boost=boost)

    async def suggest(
        self,
        encounter_id: str,
        photo_id: str,
        box_id: str,
        people: Sequence[Person],
    ) -> List[MatchResult]:
        """Ranked candidates for one box, favouring people already seen in its encounter."""
        encounter = self._require_encounter(encounter_id)
        photo = self._require_photo(encounter, photo_id)
        box = photo.box(box_id)
        if box is None:
            raise KeyError(f"Unknown box {box_id} in photo {photo_id}")
        vector = await self._embed_box(photo, box)
        if vector is None:
            return []
        boost = encounter.linked_person_ids - {box.person_id}
        config = self.matcher.config
        return self.matcher.find_matches(
            vector,
            people,
            top_k=config.suggestion_top_k,
            threshold=config.suggestion_threshold,
            boost=boost,
        )

    # ---------------------------------------------------------------- labeling

    async def assign(self, encounter_id: str, photo_id: str, box_id: str, person: Person) -> LabelOutcome:
        """Label a box with ``person`` and propagate to near-identical faces of the encounter."""
        async with self._encounter_lock(encounter_id):
            encounter = self._require_encounter(encounter_id)
            photo = self._require_photo(encounter, photo_id)
            box = photo.box(box_id)
            if box is None:
                raise KeyError(f"Unknown box {box_id} in photo {photo_id}")
            vector = await self._embed_box(photo, box)
            embedding = None
            if vector is not None:
                embedding = FaceEmbedding(vector=vector, person_id=person.id)
            self.store.commit_face_label(
                encounter_id,
                photo_id,
                box_id,
                person=person,
                confidence=None,
                auto_accepted=False,
                embedding=embedding,
            )
            outcome = LabelOutcome(box_id=box_id, person=person, embedding=embedding)
            if vector is None or not self.propagation.enabled:
                return outcome
            refreshed = self._require_encounter(encounter_id)
            siblings = self._sibling_faces(refreshed, exclude_box_id=box_id)

            def _commit(label: PropagatedLabel) -> bool:
                return self.store.commit_face_label(
                    encounter_id,
                    label.photo_id,
                    label.box.id,
                    person=person,
                    confidence=label.similarity,
                    auto_accepted=True,
                    embedding=label.embedding,
                    only_if_unlabeled=True,
                )

            outcome.propagated = await self.propagator.propagate(
                box_id,
                vector,
                person,
                siblings,
                encounter_id=encounter_id,
                commit=_commit,
            )
            return outcome

    async def create_and_assign(self, encounter_id: str, photo_id: str, box_id: str, name: str) -> LabelOutcome:
        photo = self._require_photo(self._require_encounter(encounter_id), photo_id)
        if photo.box(box_id) is None:
            raise KeyError(f"Unknown box {box_id} in photo {photo_id}")
        person = self.store.add_person(Person(name=name))
        return await self.assign(encounter_id, photo_id, box_id, person)

    async def clear_label(self, encounter_id: str, photo_id: str, box_id: str) -> None:
        async with self._encounter_lock(encounter_id):
            self.store.clear_face_label(encounter_id, photo_id, box_id)

    async def redetect(self, encounter_id: str, photo_id: str, *, enhance: bool = True) -> List[FaceBoundingBox]:
        """Re-run detection on a photo, keeping labels of boxes that barely moved.

        A kept label takes the embedding of the box it came from, so the face
        stays attached to its owner.

        If the image cannot be read or detection fails, the photo's boxes are
        left as they were.
        """
        if self.detector is None:
            raise ValueError("redetect requires a detector")
        async with self._encounter_lock(encounter_id):
            photo = self._require_photo(self._require_encounter(encounter_id), photo_id)
            try:
                image = self.image_loader(photo.image_ref)
                faces = await self.detector.detect(image, DetectionOptions(enhance=enhance))
            except FaceDetectionError as exc:
                self.logger.warning("Re-detection failed for photo %s: %s", photo_id, exc)
                return list(photo.boxes)
            fresh = [FaceBoundingBox.from_rect(face.normalized_box) for face in faces]

            threshold = self.reconcile_config.iou_threshold

            def _apply(boxes: List[FaceBoundingBox]) -> Dict[str, str]:
                moves: Dict[str, str] = {}
                for box in fresh:
                    match = first_overlap(box, boxes, threshold)
                    if match is not None and match.is_labeled:
                        moves.setdefault(match.id, box.id)
                boxes[:] = reconcile(boxes, fresh, iou_threshold=threshold)
                return moves

            return self.store.update_photo_boxes(encounter_id, photo_id, _apply)

    # ----------------------------------------------------------------- helpers

    async def _embed_box(self, photo: EncounterPhoto, box: FaceBoundingBox) -> Optional[np.ndarray]:
        try:
            image = self.image_loader(photo.image_ref)
            crop = crop_face(image, box.rect, self.padding)
            return await self.embedder.embed(crop)
        except (FaceDetectionError, EmbeddingError) as exc:
            self.logger.warning("No embedding for box %s: %s", box.id, exc)
            return None

    def _sibling_faces(self, encounter: Encounter, *, exclude_box_id: str) -> List[SiblingFace]:
        siblings: List[SiblingFace] = []
        for photo in encounter.photos:
            pending = [box for box in photo.boxes if box.id != exclude_box_id and not box.is_labeled]
            if not pending:
                continue
            try:
                image = self.image_loader(photo.image_ref)
            except FaceDetectionError as exc:
                self.logger.warning("Skipping photo %s during propagation: %s", photo.id, exc)
                continue
            for box in pending:
                try:
                    crop = crop_face(image, box.rect, self.padding)
                except FaceDetectionError:
                    continue
                siblings.append(SiblingFace(photo_id=photo.id, box=box, crop=crop))
        return siblings

    def _require_encounter(self, encounter_id: str) -> Encounter:
        encounter = self.store.get_encounter(encounter_id)
        if encounter is None:
            raise KeyError(f"Unknown encounter: {encounter_id}")
        return encounter

    @staticmethod
    def _require_photo(encounter: Encounter, photo_id: str) -> EncounterPhoto:
        photo = encounter.photo(photo_id)
        if photo is None:
            raise KeyError(f"Unknown photo {photo_id} in encounter {encounter.id}")
        return photo
