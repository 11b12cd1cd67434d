"""Rank known people against a query face embedding."""
from __future__ import annotations

from dataclasses import dataclass
from typing import AbstractSet, Iterable, List, Optional

from .config import MatchingConfig
from .models import Person
from .vectors import MatchConfidence, VectorLike, confidence_level, cosine_similarity


@dataclass
class MatchResult:
    person: Person
    similarity: float
    confidence: MatchConfidence


class FaceMatcher:
    """Best-embedding cosine matching with an optional per-encounter boost."""

    def __init__(self, config: Optional[MatchingConfig] = None) -> None:
        self.config = config or MatchingConfig()

    def best_similarity(self, query: VectorLike, person: Person) -> float:
        scores = [cosine_similarity(query, embedding.vector) for embedding in person.embeddings]
        return max(scores, default=0.0)

    def find_matches(
        self,
        query: VectorLike,
        candidates: Iterable[Person],
        *,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        boost: AbstractSet[str] = frozenset(),
    ) -> List[MatchResult]:
        """Return at most ``top_k`` people whose adjusted similarity beats ``threshold``.

        People in ``boost`` (usually those already identified in the same
        encounter) get ``encounter_boost`` added to their score, capped at 1.0.
        Ties keep their input order.
        """
        limit = self.config.top_k if top_k is None else top_k
        if limit <= 0:
            return []
        cutoff = self.config.ambiguous_threshold if threshold is None else threshold
        scored = []
        for person in candidates:
            best = self.best_similarity(query, person)
            if person.id in boost:
                best = min(best + self.config.encounter_boost, 1.0)
            if best > cutoff:
                scored.append((person, best))
        scored.sort(key=lambda item: item[1], reverse=True)
        return [
            MatchResult(person=person, similarity=similarity, confidence=self.confidence_for(similarity))
            for person, similarity in scored[:limit]
        ]

    def confidence_for(self, similarity: float) -> MatchConfidence:
        return confidence_level(
            similarity,
            high_threshold=self.config.high_threshold,
            ambiguous_threshold=self.config.ambiguous_threshold,
        )
