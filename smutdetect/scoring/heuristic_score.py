from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol

from smutdetect.features.skin import largest_region_ratio, skin_mask, skin_ratio
from smutdetect.features.texture import edge_density, edge_map, skin_smoothness
from smutdetect.models import DecodedMedia, DecodedRaster, FeatureVector


DEFAULT_WEIGHTS = {
    "skin_ratio": 0.5,
    "skin_region_ratio": 0.3,
    "skin_smoothness": 0.2,
    "edge_density": 0.0,
}


class _Budget(Protocol):
    def check(self, stage: str) -> None: ...


@dataclass(slots=True)
class HeuristicScoreDetails:
    """Explainable output for deterministic raster scoring."""

    score: float
    reason_tags: list[str]
    weighted_contributions: dict[str, float]
    feature_values: dict[str, float]
    weights: dict[str, float]
    frame_index: int = 0


def score(raster: DecodedRaster, frame_index: int = 0) -> FeatureVector:
    """Compute the raster's feature vector; a pure function of its pixels."""

    mask = skin_mask(raster)
    edges = edge_map(raster)
    return FeatureVector(
        values={
            "skin_ratio": _clamp(skin_ratio(mask)),
            "skin_region_ratio": _clamp(largest_region_ratio(mask)),
            "skin_smoothness": _clamp(skin_smoothness(edges, mask)),
            "edge_density": _clamp(edge_density(edges)),
        },
        frame_index=frame_index,
    )


def score_features(
    features: FeatureVector,
    weights: Mapping[str, float] | None = None,
    *,
    reason_threshold: float = 0.55,
    max_reason_tags: int = 3,
) -> HeuristicScoreDetails:
    """Score a feature vector and emit deterministic explainability metadata.

    Only features present in the vector appear in `feature_values`; absent
    ones contribute nothing, so an empty result means there was no signal.
    """

    resolved_weights = _resolve_weights(weights)
    if not resolved_weights:
        return HeuristicScoreDetails(
            score=0.0,
            reason_tags=[],
            weighted_contributions={},
            feature_values={},
            weights={},
            frame_index=features.frame_index,
        )

    weighted_contributions: dict[str, float] = {}
    feature_values: dict[str, float] = {}

    for key, weight in resolved_weights.items():
        if key not in features.values:
            continue
        value = _clamp(features.values[key])
        feature_values[key] = value
        weighted_contributions[key] = value * weight

    total = _clamp(sum(weighted_contributions.values()))
    reason_tags = _generate_reason_tags(
        feature_values=feature_values,
        weighted_contributions=weighted_contributions,
        reason_threshold=reason_threshold,
        max_reason_tags=max_reason_tags,
    )

    return HeuristicScoreDetails(
        score=total,
        reason_tags=reason_tags,
        weighted_contributions=weighted_contributions,
        feature_values=feature_values,
        weights=resolved_weights,
        frame_index=features.frame_index,
    )


def score_media(
    media: DecodedMedia,
    weights: Mapping[str, float] | None = None,
    *,
    budget: _Budget | None = None,
) -> HeuristicScoreDetails | None:
    """Score every decoded frame and keep the highest (earliest on ties)."""

    best: HeuristicScoreDetails | None = None
    frame_indices = media.frame_indices or tuple(range(len(media.frames)))
    for raster, frame_index in zip(media.frames, frame_indices):
        if budget is not None:
            budget.check(f"scoring frame {frame_index}")
        details = score_features(score(raster, frame_index=frame_index), weights=weights)
        if best is None or details.score > best.score:
            best = details
    return best


def _resolve_weights(weights: Mapping[str, float] | None) -> dict[str, float]:
    active_weights = DEFAULT_WEIGHTS if weights is None else weights

    non_negative = {
        feature_name: max(0.0, raw_weight)
        for feature_name, raw_weight in active_weights.items()
    }
    total_weight = sum(non_negative.values())
    if total_weight == 0:
        return {}

    return {
        feature_name: weight / total_weight
        for feature_name, weight in non_negative.items()
    }


def _generate_reason_tags(
    *,
    feature_values: dict[str, float],
    weighted_contributions: dict[str, float],
    reason_threshold: float,
    max_reason_tags: int,
) -> list[str]:
    if max_reason_tags <= 0:
        return []

    tagged = [
        feature_name
        for feature_name, value in feature_values.items()
        if value >= _clamp(reason_threshold)
    ]
    if not tagged:
        tagged = [
            feature_name
            for feature_name, contribution in weighted_contributions.items()
            if contribution > 0
        ]

    tagged.sort(key=lambda key: (-weighted_contributions.get(key, 0.0), key))
    return [f"signal:{feature_name}" for feature_name in tagged[:max_reason_tags]]


def _clamp(value: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    return max(minimum, min(maximum, value))
