import asyncio
import unittest

import numpy as np

from face_recall.recall_lib.config import PropagationConfig
from face_recall.recall_lib.label_propagator import LabelPropagator, SiblingFace
from face_recall.recall_lib.models import FaceBoundingBox, Person

from .fakes import TableEmbedder

SOURCE = [1.0, 0.0, 0.0]
TABLE = {
    10: [1.0, 0.0, 0.0],
    20: [0.99, 0.141067, 0.0],  # ~0.99 to the source
    30: [0.0, 1.0, 0.0],
    40: [0.6, 0.8, 0.0],
}


def _sibling(value: int, photo_id: str = "photo", **box_fields) -> SiblingFace:
    box = FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2, **box_fields)
    return SiblingFace(photo_id=photo_id, box=box, crop=np.full((4, 4, 3), value, dtype=np.uint8))


class LabelPropagatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.person = Person(name="Alice")
        self.embedder = TableEmbedder(TABLE, failing=[50])

    def _run(self, siblings, config=None, commit=None, source_box_id="source"):
        propagator = LabelPropagator(self.embedder, config or PropagationConfig())
        return asyncio.run(
            propagator.propagate(source_box_id, SOURCE, self.person, siblings, encounter_id="enc", commit=commit)
        )

    def test_only_similar_unlabeled_siblings_are_labeled(self) -> None:
        similar = _sibling(20)
        different = _sibling(30)
        partial = _sibling(40)
        labeled = _sibling(10, person_id="someone", person_name="Someone")
        labels = self._run([similar, different, partial, labeled])
        self.assertEqual([label.box.id for label in labels], [similar.box.id])
        [label] = labels
        self.assertEqual(label.box.person_id, self.person.id)
        self.assertEqual(label.box.person_name, "Alice")
        self.assertTrue(label.box.is_auto_accepted)
        self.assertGreaterEqual(label.similarity, 0.9)
        self.assertAlmostEqual(label.box.confidence, label.similarity)
        self.assertEqual(label.embedding.bounding_box_id, similar.box.id)
        self.assertEqual(label.embedding.encounter_id, "enc")
        self.assertEqual(label.embedding.person_id, self.person.id)
        # the sibling passed in is not mutated
        self.assertIsNone(similar.box.person_id)

    def test_source_box_is_skipped(self) -> None:
        sibling = _sibling(10)
        self.assertEqual(self._run([sibling], source_box_id=sibling.box.id), [])

    def test_threshold_is_inclusive(self) -> None:
        labels = self._run([_sibling(10)], config=PropagationConfig(auto_accept_threshold=1.0))
        self.assertEqual(len(labels), 1)

    def test_disabled_propagation_does_nothing(self) -> None:
        labels = self._run([_sibling(10)], config=PropagationConfig(enabled=False))
        self.assertEqual(labels, [])
        self.assertEqual(self.embedder.calls, 0)

    def test_embedding_failure_skips_sibling(self) -> None:
        good = _sibling(10)
        labels = self._run([_sibling(50), good])
        self.assertEqual([label.box.id for label in labels], [good.box.id])

    def test_refused_commit_drops_label(self) -> None:
        first = _sibling(10)
        second = _sibling(20)
        committed = []

        def _commit(label):
            committed.append(label.box.id)
            return label.box.id == second.box.id

        labels = self._run([first, second], commit=_commit)
        self.assertEqual(sorted(committed), sorted([first.box.id, second.box.id]))
        self.assertEqual([label.box.id for label in labels], [second.box.id])

    def test_async_commit_is_awaited(self) -> None:
        async def _commit(label):
            await asyncio.sleep(0)
            return True

        self.assertEqual(len(self._run([_sibling(10), _sibling(20)], commit=_commit)), 2)


if __name__ == "__main__":
    unittest.main()
