"""Configuration for matching thresholds and on-disk locations.

Every component receives the slice of configuration it needs explicitly; there
is no process-wide settings object.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class MatchingConfig:
    ambiguous_threshold: float = 0.75
    high_threshold: float = 0.85
    encounter_boost: float = 0.05
    top_k: int = 1
    # Ranked candidates offered when the user labels a face by hand.
    suggestion_top_k: int = 5
    suggestion_threshold: float = 0.5

    def __post_init__(self) -> None:
        _check_ratio("ambiguous_threshold", self.ambiguous_threshold)
        _check_ratio("high_threshold", self.high_threshold)
        _check_ratio("encounter_boost", self.encounter_boost)
        _check_ratio("suggestion_threshold", self.suggestion_threshold)
        if self.high_threshold < self.ambiguous_threshold:
            raise ValueError("high_threshold must not be below ambiguous_threshold")
        if self.top_k < 1:
            raise ValueError("top_k must be at least 1")
        if self.suggestion_top_k < 1:
            raise ValueError("suggestion_top_k must be at least 1")


@dataclass(frozen=True)
class PropagationConfig:
    # Near-identical people (twins) can be mislabeled; disable to review every face by hand.
    enabled: bool = True
    auto_accept_threshold: float = 0.90

    def __post_init__(self) -> None:
        _check_ratio("auto_accept_threshold", self.auto_accept_threshold)


@dataclass(frozen=True)
class ReconcileConfig:
    iou_threshold: float = 0.25

    def __post_init__(self) -> None:
        _check_ratio("iou_threshold", self.iou_threshold)


@dataclass(frozen=True)
class ClusterConfig:
    time_threshold: timedelta = timedelta(minutes=30)
    distance_threshold_m: float = 500.0

    def __post_init__(self) -> None:
        if self.time_threshold < timedelta(0):
            raise ValueError("time_threshold must not be negative")
        if self.distance_threshold_m < 0:
            raise ValueError("distance_threshold_m must not be negative")


@dataclass(frozen=True)
class DetectionConfig:
    padding: float = 0.3
    min_score: float = 0.6
    max_dimension: int = 1600
    model_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.padding < 0:
            raise ValueError("padding must not be negative")
        _check_ratio("min_score", self.min_score)


@dataclass(frozen=True)
class RecallConfig:
    data_dir: Path
    library_path: Path
    reports_dir: Path
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)


SECTIONS = {
    "matching": MatchingConfig,
    "propagation": PropagationConfig,
    "reconcile": ReconcileConfig,
    "cluster": ClusterConfig,
    "detection": DetectionConfig,
}


def default_data_dir() -> Path:
    return Path.home() / ".face_recall"


def load_config(data_dir: Optional[Path] = None, overrides_path: Optional[Path] = None) -> RecallConfig:
    resolved = Path(data_dir).expanduser() if data_dir else default_data_dir()
    resolved.mkdir(parents=True, exist_ok=True)
    reports_dir = resolved / "reports"
    reports_dir.mkdir(parents=True, exist_ok=True)
    cfg = RecallConfig(
        data_dir=resolved,
        library_path=resolved / "library.json",
        reports_dir=reports_dir,
        detection=DetectionConfig(model_dir=resolved / "models"),
    )
    if overrides_path:
        payload = json.loads(Path(overrides_path).read_text(encoding="utf-8"))
        cfg = apply_overrides(cfg, payload)
    return cfg


def apply_overrides(cfg: RecallConfig, payload: Dict[str, Any]) -> RecallConfig:
    """Return a copy of ``cfg`` with the per-section values in ``payload`` applied."""
    if not isinstance(payload, dict):
        raise ValueError("config overrides must be a JSON object")
    updates: Dict[str, Any] = {}
    for section, values in payload.items():
        section_cls = SECTIONS.get(section)
        if section_cls is None:
            raise ValueError(f"Unknown config section: {section}")
        if not isinstance(values, dict):
            raise ValueError(f"Config section {section} must be an object")
        known = {item.name for item in fields(section_cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown keys for {section}: {', '.join(unknown)}")
        coerced = dict(values)
        if section == "cluster" and "time_threshold" in coerced:
            coerced["time_threshold"] = timedelta(minutes=float(coerced["time_threshold"]))
        if section == "detection" and coerced.get("model_dir"):
            coerced["model_dir"] = Path(coerced["model_dir"]).expanduser()
        updates[section] = replace(getattr(cfg, section), **coerced)
    return replace(cfg, **updates)


def _check_ratio(name: str, value: float) -> None:
    if not 0.0 <= float(value) <= 1.0:
        raise ValueError(f"{name} must be between 0 and 1")
