"""Group photos into encounters by capture time and place."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .config import ClusterConfig
from .models import Encounter, EncounterPhoto, GeoPoint, new_id

EARTH_RADIUS_M = 6_371_000.0


@dataclass
class PhotoRef:
    id: str
    timestamp: datetime
    location: Optional[GeoPoint] = None
    path: Optional[Path] = None


@dataclass
class PhotoGroup:
    photos: List[PhotoRef]
    id: str = field(default_factory=new_id)

    @property
    def timestamp(self) -> datetime:
        return self.photos[0].timestamp

    @property
    def location(self) -> Optional[GeoPoint]:
        for photo in self.photos:
            if photo.location is not None:
                return photo.location
        return None

    @property
    def end_timestamp(self) -> datetime:
        return self.photos[-1].timestamp


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


class EncounterClusterer:
    """Single-pass chain clustering over photos sorted by capture time."""

    def __init__(self, config: Optional[ClusterConfig] = None, *, logger: Optional[logging.Logger] = None) -> None:
        self.config = config or ClusterConfig()
        self.logger = logger or logging.getLogger(__name__)

    def cluster(self, photos: Iterable[PhotoRef]) -> List[PhotoGroup]:
        ordered = sorted(photos, key=lambda photo: photo.timestamp)
        if not ordered:
            return []
        groups: List[PhotoGroup] = []
        current = [ordered[0]]
        for photo in ordered[1:]:
            if self.belongs_together(current[-1], photo):
                current.append(photo)
                continue
            groups.append(PhotoGroup(photos=current))
            current = [photo]
        groups.append(PhotoGroup(photos=current))
        self.logger.debug("Clustered %d photos into %d encounters", len(ordered), len(groups))
        return groups

    def belongs_together(self, previous: PhotoRef, photo: PhotoRef) -> bool:
        elapsed = abs(photo.timestamp - previous.timestamp)
        if elapsed > self.config.time_threshold:
            return False
        if previous.location is None or photo.location is None:
            return True
        return haversine_m(previous.location, photo.location) <= self.config.distance_threshold_m


def cluster_photos(
    photos: Sequence[PhotoRef],
    *,
    time_threshold: timedelta = timedelta(minutes=30),
    distance_threshold_m: float = 500.0,
) -> List[PhotoGroup]:
    clusterer = EncounterClusterer(ClusterConfig(time_threshold=time_threshold, distance_threshold_m=distance_threshold_m))
    return clusterer.cluster(photos)


def encounter_from_photos(photos: Sequence[EncounterPhoto], **kwargs) -> Encounter:
    """Build an encounter dated by its earliest photo and placed at the first geotagged one."""
    if not photos:
        raise ValueError("an encounter needs at least one photo")
    ordered = sorted(photos, key=lambda photo: photo.timestamp)
    location = next((photo.location for photo in ordered if photo.location is not None), None)
    return Encounter(timestamp=ordered[0].timestamp, location=location, photos=list(ordered), **kwargs)
