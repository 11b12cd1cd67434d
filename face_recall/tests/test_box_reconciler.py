import pytest

from face_recall.recall_lib.box_reconciler import intersection_over_union, reconcile
from face_recall.recall_lib.models import FaceBoundingBox, Rect


def test_iou_of_shifted_boxes() -> None:
    iou = intersection_over_union(Rect(0.0, 0.0, 0.5, 0.5), Rect(0.1, 0.1, 0.5, 0.5))
    assert iou == pytest.approx(0.16 / 0.34)
    assert iou > 0.25


def test_iou_disjoint_and_identical() -> None:
    assert intersection_over_union(Rect(0.0, 0.0, 0.2, 0.2), Rect(0.5, 0.5, 0.2, 0.2)) == 0.0
    assert intersection_over_union(Rect(0.1, 0.1, 0.2, 0.2), Rect(0.1, 0.1, 0.2, 0.2)) == pytest.approx(1.0)
    assert intersection_over_union(Rect(0.1, 0.1, 0.0, 0.0), Rect(0.1, 0.1, 0.0, 0.0)) == 0.0


def test_new_box_inherits_label_from_overlapping_box() -> None:
    old = FaceBoundingBox(x=0.0, y=0.0, width=0.5, height=0.5, person_id="p1", person_name="Alice", confidence=0.7, is_auto_accepted=True)
    new = FaceBoundingBox(x=0.1, y=0.1, width=0.5, height=0.5)
    [result] = reconcile([old], [new])
    assert result.person_id == "p1"
    assert result.person_name == "Alice"
    assert result.is_auto_accepted is True
    assert result.id == new.id
    assert result.confidence is None
    assert (result.x, result.y) == (0.1, 0.1)
    # inputs are untouched
    assert new.person_id is None


def test_unmatched_box_is_unlabeled() -> None:
    old = FaceBoundingBox(x=0.0, y=0.0, width=0.2, height=0.2, person_id="p1", person_name="Alice")
    new = FaceBoundingBox(x=0.6, y=0.6, width=0.2, height=0.2, person_id="stale", person_name="Stale")
    [result] = reconcile([old], [new])
    assert result.person_id is None
    assert result.person_name is None


def test_first_overlapping_box_wins() -> None:
    first = FaceBoundingBox(x=0.0, y=0.0, width=0.5, height=0.5, person_id="p1", person_name="Alice")
    better = FaceBoundingBox(x=0.1, y=0.1, width=0.5, height=0.5, person_id="p2", person_name="Bob")
    new = FaceBoundingBox(x=0.1, y=0.1, width=0.5, height=0.5)
    [result] = reconcile([first, better], [new])
    assert result.person_id == "p1"


def test_empty_inputs() -> None:
    assert reconcile([], []) == []
    new = FaceBoundingBox(x=0.1, y=0.1, width=0.2, height=0.2)
    assert reconcile([], [new])[0].person_id is None
