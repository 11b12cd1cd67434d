"""Extend one manual label to near-identical faces in the same encounter."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Union

import numpy as np

from .config import PropagationConfig
from .faces import Embedder, EmbeddingError
from .models import FaceBoundingBox, FaceEmbedding, Person
from .vectors import VectorLike, cosine_similarity


@dataclass
class SiblingFace:
    photo_id: str
    box: FaceBoundingBox
    crop: np.ndarray


@dataclass
class PropagatedLabel:
    photo_id: str
    box: FaceBoundingBox
    similarity: float
    embedding: FaceEmbedding


# Called once per accepted sibling; returns False if the write was refused.
CommitFn = Callable[[PropagatedLabel], Union[bool, Awaitable[bool]]]


class LabelPropagator:
    """Auto-accept siblings whose embedding is within ``auto_accept_threshold`` of the labeled face.

    Near-identical people (twins) will be labeled alike; set
    ``PropagationConfig.enabled`` to False to turn this off.
    """

    def __init__(
        self,
        embedder: Embedder,
        config: Optional[PropagationConfig] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.embedder = embedder
        self.config = config or PropagationConfig()
        self.logger = logger or logging.getLogger(__name__)

    async def propagate(
        self,
        source_box_id: str,
        source_embedding: VectorLike,
        person: Person,
        siblings: Sequence[SiblingFace],
        *,
        encounter_id: Optional[str] = None,
        commit: Optional[CommitFn] = None,
    ) -> List[PropagatedLabel]:
        """Label every unlabeled sibling similar enough to the source face.

        Sibling embeddings are computed concurrently; ``commit`` calls are
        serialized so each accepted face is persisted on its own. Returns the
        committed labels in sibling order. A sibling whose embedding fails is
        left unlabeled.
        """
        if not self.config.enabled:
            return []
        candidates = [
            sibling for sibling in siblings
            if sibling.box.id != source_box_id and not sibling.box.is_labeled
        ]
        if not candidates:
            return []
        write_lock = asyncio.Lock()

        async def _evaluate(sibling: SiblingFace) -> Optional[PropagatedLabel]:
            try:
                vector = await self.embedder.embed(sibling.crop)
            except EmbeddingError as exc:
                self.logger.warning("Skipping sibling face %s: %s", sibling.box.id, exc)
                return None
            similarity = cosine_similarity(source_embedding, vector)
            if similarity < self.config.auto_accept_threshold:
                return None
            box = FaceBoundingBox(
                id=sibling.box.id,
                x=sibling.box.x,
                y=sibling.box.y,
                width=sibling.box.width,
                height=sibling.box.height,
                person_id=person.id,
                person_name=person.name,
                confidence=similarity,
                is_auto_accepted=True,
            )
            label = PropagatedLabel(
                photo_id=sibling.photo_id,
                box=box,
                similarity=similarity,
                embedding=FaceEmbedding(
                    vector=np.asarray(vector, dtype=np.float32),
                    person_id=person.id,
                    bounding_box_id=box.id,
                    encounter_id=encounter_id,
                ),
            )
            if commit is None:
                return label
            async with write_lock:
                accepted = commit(label)
                if asyncio.iscoroutine(accepted):
                    accepted = await accepted
            return label if accepted else None

        results = await asyncio.gather(*(_evaluate(sibling) for sibling in candidates))
        labels = [label for label in results if label is not None]
        if labels:
            self.logger.info("Propagated %s to %d similar faces", person.name, len(labels))
        return labels
