from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "SMUTDETECT_"


class ConfigurationError(ValueError):
    """Raised when job settings cannot be used; fatal before any file is processed."""


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DetectionSettings(_FrozenModel):
    skin_tone_suspect_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    skin_tone_known_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    near_hash_max_distance: int = Field(default=8, ge=0, le=64)

    @model_validator(mode="after")
    def _check_threshold_order(self) -> DetectionSettings:
        if self.skin_tone_suspect_threshold >= self.skin_tone_known_threshold:
            raise ValueError(
                "skin_tone_suspect_threshold must be lower than skin_tone_known_threshold "
                f"(got {self.skin_tone_suspect_threshold} >= {self.skin_tone_known_threshold})"
            )
        return self


class DecodeSettings(_FrozenModel):
    max_decode_bytes: int = Field(default=256 * 1024 * 1024, gt=0)
    max_decode_millis: int = Field(default=10_000, gt=0)
    video_frame_sample_count: int = Field(default=8, ge=1, le=256)
    max_raster_dimension: int = Field(default=1024, ge=16)
    isolate_decoding: bool = True


class ReferenceSettings(_FrozenModel):
    reference_set_path: Path | None = None


class WeightSettings(_FrozenModel):
    skin_ratio: float = 0.5
    skin_region_ratio: float = 0.3
    skin_smoothness: float = 0.2
    edge_density: float = 0.0


class PipelineSettings(_FrozenModel):
    workers: int = Field(default=4, ge=1)
    output_dir: Path = Path("data/outputs")
    expand_archives: bool = True


class LoggingSettings(_FrozenModel):
    level: str = "INFO"


class Settings(_FrozenModel):
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    decode: DecodeSettings = Field(default_factory=DecodeSettings)
    reference: ReferenceSettings = Field(default_factory=ReferenceSettings)
    weights: WeightSettings = Field(default_factory=WeightSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    try:
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigurationError(f"Unable to read configuration file {resolved_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file {resolved_path} is not valid YAML: {exc}") from exc

    if not isinstance(raw_config, dict):
        raise ConfigurationError(f"Configuration file {resolved_path} must contain a mapping at the top level.")

    try:
        data = Settings.model_validate(raw_config).model_dump(mode="python")

        for key, raw_value in os.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue

            suffix = key[len(ENV_PREFIX) :]
            if suffix == "CONFIG":
                continue

            path = [part.lower() for part in suffix.split("__")]
            _apply_override(data, path, raw_value)

        return Settings.model_validate(data)
    except (ValidationError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration in {resolved_path}: {exc}") from exc


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if existing_value is None:
        return raw_value or None
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
