"""Face detection + embedding backed by OpenCV's YuNet + SFace models."""
from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple
from urllib.error import URLError
from urllib.request import urlretrieve

import cv2  # type: ignore
import numpy as np

from .config import DetectionConfig
from .models import Rect
from .vectors import l2_normalize

MODEL_SPECS = {
    "detector": {
        "filename": "face_detection_yunet_2023mar.onnx",
        "url": "https://github.com/opencv/opencv_zoo/raw/main/models/face_detection_yunet/face_detection_yunet_2023mar.onnx",
    },
    "recognizer": {
        "filename": "face_recognition_sface_2021dec.onnx",
        "url": "https://github.com/opencv/opencv_zoo/raw/main/models/face_recognition_sface/face_recognition_sface_2021dec.onnx",
    },
}

EMBEDDER_INPUT_SIZE = (112, 112)
MIN_FACE_DIMENSION_RATIO = 0.01


class FaceDetectionError(RuntimeError):
    """The image could not be read or the detector failed."""


class EmbeddingError(RuntimeError):
    """The embedding model is unavailable or produced unusable output."""


@dataclass(frozen=True)
class DetectionOptions:
    enhance: bool = False


@dataclass
class DetectedFace:
    normalized_box: Rect
    crop: np.ndarray


class Detector(Protocol):
    async def detect(self, image: np.ndarray, options: DetectionOptions = DetectionOptions()) -> List[DetectedFace]:
        ...


class Embedder(Protocol):
    async def embed(self, crop: np.ndarray) -> np.ndarray:
        ...


def ensure_models(model_dir: Path, logger: logging.Logger) -> Dict[str, Path]:
    model_dir.mkdir(parents=True, exist_ok=True)
    resolved: Dict[str, Path] = {}
    for key, spec in MODEL_SPECS.items():
        target = model_dir / spec["filename"]
        if not target.exists():
            logger.info("Downloading %s to %s", spec["filename"], target)
            try:
                urlretrieve(spec["url"], target)
            except URLError as exc:  # pragma: no cover - network failures
                raise RuntimeError(f"Failed to download {spec['filename']}") from exc
        resolved[key] = target
    return resolved


def load_image(path: str) -> np.ndarray:
    image = cv2.imread(str(path))
    if image is None:
        raise FaceDetectionError(f"Unable to read image: {path}")
    return image


def padded_pixel_rect(rect: Rect, width: int, height: int, padding: float) -> Tuple[int, int, int, int]:
    """Convert a bottom-left-origin normalized rect into a padded, clamped top-left pixel rect.

    Returns ``(left, top, right, bottom)`` in pixel coordinates.
    """
    pad_x = rect.width * padding
    pad_y = rect.height * padding
    x = rect.x - pad_x
    y = rect.y - pad_y
    w = rect.width + 2 * pad_x
    h = rect.height + 2 * pad_y
    left = int(round(x * width))
    top = int(round((1.0 - y - h) * height))
    right = int(round((x + w) * width))
    bottom = int(round((1.0 - y) * height))
    left = max(0, min(width, left))
    right = max(0, min(width, right))
    top = max(0, min(height, top))
    bottom = max(0, min(height, bottom))
    return left, top, right, bottom


def crop_face(image: np.ndarray, rect: Rect, padding: float = 0.3) -> np.ndarray:
    height, width = image.shape[:2]
    left, top, right, bottom = padded_pixel_rect(rect, width, height, padding)
    if right <= left or bottom <= top:
        raise FaceDetectionError("Face box lies outside the image")
    return image[top:bottom, left:right].copy()


def enhance_image(image: np.ndarray) -> np.ndarray:
    """Slight contrast and brightness boost followed by an unsharp mask."""
    adjusted = cv2.convertScaleAbs(image, alpha=1.1, beta=0.05 * 255)
    blurred = cv2.GaussianBlur(adjusted, (0, 0), sigmaX=2.0)
    return cv2.addWeighted(adjusted, 1.4, blurred, -0.4, 0)


class FaceDetector:
    """Detect faces, returning bottom-left-origin normalized boxes and padded crops."""

    def __init__(self, config: DetectionConfig, *, logger: Optional[logging.Logger] = None) -> None:
        if config.model_dir is None:
            raise ValueError("DetectionConfig.model_dir is required")
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        paths = ensure_models(config.model_dir, self.logger)
        self.detector = cv2.FaceDetectorYN_create(
            str(paths["detector"]),
            "",
            (320, 320),
            score_threshold=config.min_score,
            nms_threshold=0.3,
            top_k=5000,
        )
        self._lock = threading.Lock()

    async def detect(self, image: np.ndarray, options: DetectionOptions = DetectionOptions()) -> List[DetectedFace]:
        return await asyncio.to_thread(self.detect_sync, image, options)

    def detect_sync(self, image: np.ndarray, options: DetectionOptions = DetectionOptions()) -> List[DetectedFace]:
        if image is None or image.ndim < 2 or image.size == 0:
            raise FaceDetectionError("Invalid image")
        source = enhance_image(image) if options.enhance else image
        orig_height, orig_width = source.shape[:2]
        scale = 1.0
        largest = max(orig_height, orig_width)
        if self.config.max_dimension and largest > self.config.max_dimension:
            scale = self.config.max_dimension / float(largest)
            resized = cv2.resize(
                source,
                (max(1, int(round(orig_width * scale))), max(1, int(round(orig_height * scale)))),
            )
        else:
            resized = source
        height, width = resized.shape[:2]
        # The OpenCV detector keeps per-call input size state.
        with self._lock:
            self.detector.setInputSize((width, height))
            try:
                _, raw_faces = self.detector.detect(resized)
            except cv2.error as exc:
                raise FaceDetectionError(f"Face detection failed: {exc}") from exc
        if raw_faces is None or not len(raw_faces):
            return []
        results: List[DetectedFace] = []
        for face in np.array(raw_faces):
            rect = _normalize_box(face[:4], width, height)
            if rect.width < MIN_FACE_DIMENSION_RATIO or rect.height < MIN_FACE_DIMENSION_RATIO:
                continue
            try:
                crop = crop_face(image, rect, self.config.padding)
            except FaceDetectionError:
                continue
            results.append(DetectedFace(normalized_box=rect, crop=crop))
        self.logger.debug("Detected %d faces", len(results))
        return results


class FaceEmbedder:
    """SFace embeddings for face crops, L2-normalized."""

    def __init__(self, model_dir: Path, *, logger: Optional[logging.Logger] = None) -> None:
        self.model_dir = model_dir
        self.logger = logger or logging.getLogger(__name__)
        self._recognizer = None
        self._load_lock = threading.Lock()
        self._run_lock = threading.Lock()

    def preload(self) -> threading.Thread:
        """Load the model on a background thread so the first face is not slow."""
        thread = threading.Thread(target=self._safe_load, name="face-embedder-preload", daemon=True)
        thread.start()
        return thread

    def _safe_load(self) -> None:
        try:
            self._model()
        except EmbeddingError as exc:
            self.logger.warning("Embedder preload failed: %s", exc)

    def _model(self):
        with self._load_lock:
            if self._recognizer is None:
                try:
                    paths = ensure_models(self.model_dir, self.logger)
                    self._recognizer = cv2.FaceRecognizerSF_create(str(paths["recognizer"]), "")
                except (RuntimeError, cv2.error) as exc:
                    raise EmbeddingError(f"Face embedding model is not loaded: {exc}") from exc
            return self._recognizer

    async def embed(self, crop: np.ndarray) -> np.ndarray:
        return await asyncio.to_thread(self.embed_sync, crop)

    def embed_sync(self, crop: np.ndarray) -> np.ndarray:
        if crop is None or crop.size == 0:
            raise EmbeddingError("Failed to preprocess image")
        recognizer = self._model()
        resized = cv2.resize(crop, EMBEDDER_INPUT_SIZE)
        with self._run_lock:
            try:
                feature = recognizer.feature(resized)
            except cv2.error as exc:
                raise EmbeddingError(f"Embedding generation failed: {exc}") from exc
        vector = np.asarray(feature, dtype=np.float32).reshape(-1)
        if not vector.size or not np.isfinite(vector).all():
            raise EmbeddingError("Invalid model output")
        return l2_normalize(vector)


async def embed_faces(embedder: Embedder, crops: Sequence[np.ndarray], logger: logging.Logger) -> List[Optional[np.ndarray]]:
    """Embed crops concurrently; a failure yields None for that crop only."""

    async def _one(crop: np.ndarray) -> Optional[np.ndarray]:
        try:
            return await embedder.embed(crop)
        except EmbeddingError as exc:
            logger.warning("Embedding failed: %s", exc)
            return None

    return list(await asyncio.gather(*(_one(crop) for crop in crops)))


def _normalize_box(bbox: Sequence[float], width: int, height: int) -> Rect:
    """Top-left-origin pixel box to a bottom-left-origin unit-square rect."""
    x, y, w, h = [float(value) for value in bbox]
    left = _clamp_ratio(x, width)
    right = _clamp_ratio(x + w, width)
    top = _clamp_ratio(y, height)
    bottom = _clamp_ratio(y + h, height)
    return Rect(x=left, y=1.0 - bottom, width=right - left, height=bottom - top)


def _clamp_ratio(value: float, denom: int) -> float:
    if denom <= 0:
        return 0.0
    ratio = value / float(denom)
    return max(0.0, min(1.0, ratio))
