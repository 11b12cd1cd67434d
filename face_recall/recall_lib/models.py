"""Domain records for people, faces and encounters."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import numpy as np
from dateutil import parser as dateparser


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["GeoPoint"]:
        if not isinstance(raw, dict):
            return None
        try:
            return cls(latitude=float(raw["latitude"]), longitude=float(raw["longitude"]))
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class Rect:
    """Normalized rectangle; origin is the bottom-left corner of the unit square."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)


@dataclass
class FaceBoundingBox:
    x: float
    y: float
    width: float
    height: float
    id: str = field(default_factory=new_id)
    person_id: Optional[str] = None
    person_name: Optional[str] = None
    confidence: Optional[float] = None
    is_auto_accepted: bool = False

    @classmethod
    def from_rect(cls, rect: Rect, **kwargs: Any) -> "FaceBoundingBox":
        return cls(x=rect.x, y=rect.y, width=rect.width, height=rect.height, **kwargs)

    @property
    def rect(self) -> Rect:
        return Rect(self.x, self.y, self.width, self.height)

    @property
    def is_labeled(self) -> bool:
        return self.person_id is not None

    def clear_label(self) -> None:
        self.person_id = None
        self.person_name = None
        self.confidence = None
        self.is_auto_accepted = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "person_id": self.person_id,
            "person_name": self.person_name,
            "confidence": self.confidence,
            "is_auto_accepted": self.is_auto_accepted,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "FaceBoundingBox":
        confidence = raw.get("confidence")
        return cls(
            id=str(raw["id"]),
            x=float(raw.get("x") or 0.0),
            y=float(raw.get("y") or 0.0),
            width=float(raw.get("width") or 0.0),
            height=float(raw.get("height") or 0.0),
            person_id=raw.get("person_id") or None,
            person_name=raw.get("person_name") or None,
            confidence=float(confidence) if confidence is not None else None,
            is_auto_accepted=bool(raw.get("is_auto_accepted")),
        )


@dataclass
class FaceEmbedding:
    vector: np.ndarray
    person_id: str
    id: str = field(default_factory=new_id)
    face_crop_ref: str = ""
    bounding_box_id: Optional[str] = None
    encounter_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "person_id": self.person_id,
            "vector": [float(value) for value in np.asarray(self.vector).ravel()],
            "face_crop_ref": self.face_crop_ref,
            "bounding_box_id": self.bounding_box_id,
            "encounter_id": self.encounter_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "FaceEmbedding":
        return cls(
            id=str(raw["id"]),
            person_id=str(raw["person_id"]),
            vector=np.asarray(raw.get("vector") or [], dtype=np.float32),
            face_crop_ref=str(raw.get("face_crop_ref") or ""),
            bounding_box_id=raw.get("bounding_box_id") or None,
            encounter_id=raw.get("encounter_id") or None,
            created_at=str(raw.get("created_at") or ""),
        )


@dataclass
class Person:
    name: str
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now_iso)
    last_seen_at: Optional[str] = None
    profile_embedding_id: Optional[str] = None
    notes: Optional[str] = None
    relationship: Optional[str] = None
    company: Optional[str] = None
    how_we_met: Optional[str] = None
    # Hydrated by the store from the embedding arena, never serialized here.
    embeddings: List[FaceEmbedding] = field(default_factory=list)

    @property
    def profile_embedding(self) -> Optional[FaceEmbedding]:
        if self.profile_embedding_id:
            for embedding in self.embeddings:
                if embedding.id == self.profile_embedding_id:
                    return embedding
        return self.embeddings[0] if self.embeddings else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "last_seen_at": self.last_seen_at,
            "profile_embedding_id": self.profile_embedding_id,
            "notes": self.notes,
            "relationship": self.relationship,
            "company": self.company,
            "how_we_met": self.how_we_met,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Person":
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name") or ""),
            created_at=str(raw.get("created_at") or ""),
            last_seen_at=raw.get("last_seen_at"),
            profile_embedding_id=raw.get("profile_embedding_id"),
            notes=raw.get("notes"),
            relationship=raw.get("relationship"),
            company=raw.get("company"),
            how_we_met=raw.get("how_we_met"),
        )


@dataclass
class EncounterPhoto:
    image_ref: str
    timestamp: datetime
    id: str = field(default_factory=new_id)
    location: Optional[GeoPoint] = None
    boxes: List[FaceBoundingBox] = field(default_factory=list)

    def box(self, box_id: str) -> Optional[FaceBoundingBox]:
        for box in self.boxes:
            if box.id == box_id:
                return box
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image_ref": self.image_ref,
            "timestamp": self.timestamp.isoformat(),
            "location": self.location.to_dict() if self.location else None,
            "boxes": [box.to_dict() for box in self.boxes],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EncounterPhoto":
        return cls(
            id=str(raw["id"]),
            image_ref=str(raw.get("image_ref") or ""),
            timestamp=dateparser.isoparse(raw["timestamp"]),
            location=GeoPoint.from_dict(raw.get("location")),
            boxes=[FaceBoundingBox.from_dict(item) for item in raw.get("boxes") or [] if isinstance(item, dict)],
        )


@dataclass
class Encounter:
    timestamp: datetime
    id: str = field(default_factory=new_id)
    location: Optional[GeoPoint] = None
    location_name: Optional[str] = None
    occasion: Optional[str] = None
    notes: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    photos: List[EncounterPhoto] = field(default_factory=list)

    @property
    def linked_person_ids(self) -> Set[str]:
        """People in this encounter, derived from box ownership."""
        return {box.person_id for photo in self.photos for box in photo.boxes if box.person_id}

    @property
    def face_count(self) -> int:
        return sum(len(photo.boxes) for photo in self.photos)

    def photo(self, photo_id: str) -> Optional[EncounterPhoto]:
        for photo in self.photos:
            if photo.id == photo_id:
                return photo
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "location": self.location.to_dict() if self.location else None,
            "location_name": self.location_name,
            "occasion": self.occasion,
            "notes": self.notes,
            "created_at": self.created_at,
            "photos": [photo.to_dict() for photo in self.photos],
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Encounter":
        return cls(
            id=str(raw["id"]),
            timestamp=dateparser.isoparse(raw["timestamp"]),
            location=GeoPoint.from_dict(raw.get("location")),
            location_name=raw.get("location_name"),
            occasion=raw.get("occasion"),
            notes=raw.get("notes"),
            created_at=str(raw.get("created_at") or ""),
            photos=[EncounterPhoto.from_dict(item) for item in raw.get("photos") or [] if isinstance(item, dict)],
        )
