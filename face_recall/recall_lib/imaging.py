"""Photo metadata helpers using Pillow."""
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from dateutil import parser as dateparser
from PIL import Image, UnidentifiedImageError

from .encounter_clusterer import PhotoRef
from .models import GeoPoint

EXIF_DATETIME_TAGS = (36867, 36868, 306)  # DateTimeOriginal, DateTimeDigitized, DateTime
EXIF_IFD = 0x8769
GPS_IFD = 0x8825
IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".heic", ".tif", ".tiff", ".webp"}

logger = logging.getLogger(__name__)


def iter_photo_paths(root: Path) -> List[Path]:
    return sorted(path for path in root.rglob("*") if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES)


def probe_photo(path: Path) -> PhotoRef:
    """Capture time (EXIF, else file mtime) and GPS position for one photo."""
    timestamp: Optional[datetime] = None
    location: Optional[GeoPoint] = None
    try:
        with Image.open(path) as img:
            exif = img.getexif()
            if exif:
                timestamp = _exif_timestamp(exif)
                location = _exif_location(exif)
    except (UnidentifiedImageError, OSError) as exc:
        logger.debug("No metadata for %s: %s", path, exc)
    if timestamp is None:
        timestamp = datetime.fromtimestamp(path.stat().st_mtime)
    return PhotoRef(id=str(path), timestamp=timestamp, location=location, path=path)


def probe_photos(paths: Iterable[Path]) -> List[PhotoRef]:
    return [probe_photo(path) for path in paths]


def _exif_timestamp(exif) -> Optional[datetime]:
    sources = [exif]
    try:
        sources.insert(0, exif.get_ifd(EXIF_IFD))
    except (KeyError, AttributeError):
        pass
    for source in sources:
        for tag in EXIF_DATETIME_TAGS:
            value = source.get(tag)
            if value:
                parsed = _normalize_datetime(str(value))
                if parsed:
                    return parsed
    return None


def _normalize_datetime(value: str) -> Optional[datetime]:
    # EXIF writes dates as "YYYY:MM:DD HH:MM:SS".
    text = value.strip().rstrip("\x00")
    if len(text) >= 10 and text[4] == ":" and text[7] == ":":
        text = text[:10].replace(":", "-") + text[10:]
    try:
        return dateparser.parse(text)
    except (ValueError, TypeError, OverflowError):
        return None


def _exif_location(exif) -> Optional[GeoPoint]:
    try:
        gps = exif.get_ifd(GPS_IFD)
    except (KeyError, AttributeError):
        return None
    if not gps:
        return None
    latitude = _dms_to_degrees(gps.get(2), gps.get(1))
    longitude = _dms_to_degrees(gps.get(4), gps.get(3))
    if latitude is None or longitude is None:
        return None
    return GeoPoint(latitude=latitude, longitude=longitude)


def _dms_to_degrees(dms, ref) -> Optional[float]:
    if not dms or len(dms) != 3:
        return None
    try:
        degrees, minutes, seconds = (float(part) for part in dms)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    value = degrees + minutes / 60.0 + seconds / 3600.0
    if isinstance(ref, bytes):
        ref = ref.decode("ascii", "ignore")
    if str(ref or "").strip().upper() in {"S", "W"}:
        value = -value
    return value
