from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from smutdetect.config import ConfigurationError, DetectionSettings, Settings, load_settings

DEFAULT_CONFIG = Path(__file__).resolve().parents[1] / "configs" / "default.yaml"


def test_default_config_matches_model_defaults() -> None:
    assert load_settings(DEFAULT_CONFIG) == Settings()


def test_env_overrides_nested_fields(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("SMUTDETECT_DETECTION__SKIN_TONE_SUSPECT_THRESHOLD", "0.25")
    monkeypatch.setenv("SMUTDETECT_PIPELINE__WORKERS", "2")
    monkeypatch.setenv("SMUTDETECT_PIPELINE__EXPAND_ARCHIVES", "false")
    monkeypatch.setenv("SMUTDETECT_DECODE__ISOLATE_DECODING", "0")
    monkeypatch.setenv("SMUTDETECT_REFERENCE__REFERENCE_SET_PATH", str(tmp_path / "reference.csv"))
    monkeypatch.setenv("SMUTDETECT_UNKNOWN__FIELD", "ignored")

    settings = load_settings(DEFAULT_CONFIG)

    assert settings.detection.skin_tone_suspect_threshold == 0.25
    assert settings.pipeline.workers == 2
    assert settings.pipeline.expand_archives is False
    assert settings.decode.isolate_decoding is False
    assert settings.reference.reference_set_path == tmp_path / "reference.csv"


def test_config_path_falls_back_to_env(tmp_path: Path, monkeypatch) -> None:
    config_path = tmp_path / "custom.yaml"
    config_path.write_text("decode:\n  video_frame_sample_count: 3\n", encoding="utf-8")
    monkeypatch.setenv("SMUTDETECT_CONFIG", str(config_path))

    settings = load_settings()

    assert settings.decode.video_frame_sample_count == 3
    assert settings.detection == DetectionSettings()


@pytest.mark.parametrize(
    "body",
    [
        "detection:\n  skin_tone_suspect_threshold: 0.7\n  skin_tone_known_threshold: 0.6\n",
        "detection:\n  skin_tone_known_threshold: 1.5\n",
        "detection:\n  near_hash_max_distance: 65\n",
        "decode:\n  max_decode_bytes: 0\n",
        "pipeline:\n  workers: 0\n",
        "detection:\n  unknown_option: 1\n",
        "- just\n- a list\n",
        "detection: [unclosed\n",
    ],
)
def test_invalid_configuration_is_rejected(tmp_path: Path, body: str) -> None:
    config_path = tmp_path / "bad.yaml"
    config_path.write_text(body, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_settings(config_path)


def test_missing_config_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Unable to read"):
        load_settings(tmp_path / "absent.yaml")


def test_invalid_env_override_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("SMUTDETECT_DECODE__MAX_DECODE_MILLIS", "soon")

    with pytest.raises(ConfigurationError):
        load_settings(DEFAULT_CONFIG)


def test_settings_are_immutable() -> None:
    settings = Settings()

    with pytest.raises(ValidationError):
        settings.detection.skin_tone_suspect_threshold = 0.1
