from datetime import timedelta

import pytest

from face_recall.recall_lib.config import (
    MatchingConfig,
    PropagationConfig,
    apply_overrides,
    load_config,
)


def test_defaults(tmp_path) -> None:
    cfg = load_config(tmp_path)
    assert cfg.library_path == tmp_path / "library.json"
    assert cfg.reports_dir.is_dir()
    assert cfg.detection.model_dir == tmp_path / "models"
    assert cfg.matching.ambiguous_threshold == 0.75
    assert cfg.matching.high_threshold == 0.85
    assert cfg.propagation.auto_accept_threshold == 0.90
    assert cfg.reconcile.iou_threshold == 0.25
    assert cfg.cluster.time_threshold == timedelta(minutes=30)
    assert cfg.cluster.distance_threshold_m == 500.0


def test_overrides_file(tmp_path) -> None:
    overrides = tmp_path / "overrides.json"
    overrides.write_text(
        '{"cluster": {"time_threshold": 45, "distance_threshold_m": 250}, "propagation": {"enabled": false}}',
        encoding="utf-8",
    )
    cfg = load_config(tmp_path, overrides)
    assert cfg.cluster.time_threshold == timedelta(minutes=45)
    assert cfg.cluster.distance_threshold_m == 250
    assert cfg.propagation.enabled is False
    assert cfg.matching == MatchingConfig()


def test_unknown_keys_rejected(tmp_path) -> None:
    cfg = load_config(tmp_path)
    with pytest.raises(ValueError):
        apply_overrides(cfg, {"matching": {"treshold": 0.5}})
    with pytest.raises(ValueError):
        apply_overrides(cfg, {"colors": {}})


def test_invalid_values_rejected() -> None:
    with pytest.raises(ValueError):
        MatchingConfig(ambiguous_threshold=0.9, high_threshold=0.8)
    with pytest.raises(ValueError):
        MatchingConfig(top_k=0)
    with pytest.raises(ValueError):
        MatchingConfig(suggestion_top_k=0)
    with pytest.raises(ValueError):
        PropagationConfig(auto_accept_threshold=1.5)
