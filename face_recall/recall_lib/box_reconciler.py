"""Carry labels from earlier detection passes onto freshly detected boxes."""
from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Sequence

from .models import FaceBoundingBox, Rect

DEFAULT_IOU_THRESHOLD = 0.25


def intersection_over_union(a: Rect, b: Rect) -> float:
    left = max(a.x, b.x)
    bottom = max(a.y, b.y)
    right = min(a.x + a.width, b.x + b.width)
    top = min(a.y + a.height, b.y + b.height)
    if right <= left or top <= bottom:
        return 0.0
    intersection = (right - left) * (top - bottom)
    union = a.area + b.area - intersection
    if union <= 0:
        return 0.0
    return intersection / union


def first_overlap(
    box: FaceBoundingBox,
    existing: Sequence[FaceBoundingBox],
    threshold: float = DEFAULT_IOU_THRESHOLD,
) -> Optional[FaceBoundingBox]:
    # Greedy: the first existing box above threshold wins, not the best one.
    for candidate in existing:
        if intersection_over_union(candidate.rect, box.rect) > threshold:
            return candidate
    return None


def reconcile(
    existing_boxes: Sequence[FaceBoundingBox],
    new_boxes: Sequence[FaceBoundingBox],
    *,
    iou_threshold: float = DEFAULT_IOU_THRESHOLD,
) -> List[FaceBoundingBox]:
    """Return copies of ``new_boxes`` labeled from overlapping ``existing_boxes``.

    Only ``person_id``, ``person_name`` and ``is_auto_accepted`` are carried
    over; geometry, id and confidence stay with the new detection. Boxes
    without a sufficiently overlapping predecessor come back unlabeled.
    """
    reconciled: List[FaceBoundingBox] = []
    for box in new_boxes:
        match = first_overlap(box, existing_boxes, iou_threshold)
        if match is None:
            reconciled.append(replace(box, person_id=None, person_name=None, is_auto_accepted=False))
            continue
        reconciled.append(
            replace(
                box,
                person_id=match.person_id,
                person_name=match.person_name,
                is_auto_accepted=match.is_auto_accepted,
            )
        )
    return reconciled
