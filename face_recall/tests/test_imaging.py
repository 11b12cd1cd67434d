from datetime import datetime
from fractions import Fraction

from PIL import Image

from face_recall.recall_lib.imaging import (
    _dms_to_degrees,
    _normalize_datetime,
    iter_photo_paths,
    probe_photo,
    probe_photos,
)


def test_dms_to_degrees_signs() -> None:
    assert abs(_dms_to_degrees((52, 31, 12), "N") - 52.52) < 1e-9
    assert abs(_dms_to_degrees((13, 24, Fraction(18, 1)), b"W") + 13.405) < 1e-9
    assert _dms_to_degrees(None, "N") is None
    assert _dms_to_degrees((1, 2), "N") is None


def test_normalize_exif_datetime() -> None:
    assert _normalize_datetime("2024:05:01 12:30:00") == datetime(2024, 5, 1, 12, 30)
    assert _normalize_datetime("2024:05:01 12:30:00\x00") == datetime(2024, 5, 1, 12, 30)
    assert _normalize_datetime("not a date") is None


def test_probe_reads_exif_timestamp(tmp_path) -> None:
    path = tmp_path / "shot.jpg"
    exif = Image.Exif()
    exif[306] = "2023:07:14 18:05:09"
    Image.new("RGB", (8, 8), "white").save(path, "JPEG", exif=exif)
    ref = probe_photo(path)
    assert ref.timestamp == datetime(2023, 7, 14, 18, 5, 9)
    assert ref.location is None
    assert ref.path == path


def test_probe_falls_back_to_mtime(tmp_path) -> None:
    path = tmp_path / "plain.png"
    Image.new("RGB", (8, 8), "white").save(path)
    ref = probe_photo(path)
    assert ref.timestamp == datetime.fromtimestamp(path.stat().st_mtime)


def test_iter_photo_paths_filters_by_suffix(tmp_path) -> None:
    (tmp_path / "nested").mkdir()
    (tmp_path / "nested" / "b.JPG").write_bytes(b"")
    (tmp_path / "a.png").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("x")
    assert [p.name for p in iter_photo_paths(tmp_path)] == ["a.png", "b.JPG"]


def test_probe_photos_keeps_order(tmp_path) -> None:
    paths = []
    for name, stamp in [("b.jpg", "2023:07:14 18:05:09"), ("a.jpg", "2023:07:14 09:00:00")]:
        exif = Image.Exif()
        exif[306] = stamp
        path = tmp_path / name
        Image.new("RGB", (8, 8), "white").save(path, "JPEG", exif=exif)
        paths.append(path)
    refs = probe_photos(iter(paths))
    assert [ref.path for ref in refs] == paths
    assert [ref.timestamp.hour for ref in refs] == [18, 9]
