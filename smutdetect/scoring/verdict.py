from __future__ import annotations

from smutdetect.config import DetectionSettings
from smutdetect.models import DecodeFailure, HashMatch, Signal, Verdict
from smutdetect.scoring.heuristic_score import HeuristicScoreDetails

INSUFFICIENT_SIGNAL = "insufficient_signal"
HIGH_PRIORITY_HEURISTIC = "heuristic_priority:high"


def aggregate(
    match: HashMatch,
    details: HeuristicScoreDetails | None,
    detection: DetectionSettings,
    *,
    failure: DecodeFailure | None = None,
    not_applicable: str | None = None,
) -> Verdict:
    """Combine hash evidence and heuristic score into one verdict.

    Policy, in order: a decode failure is always clear; a known-bad hash hit
    is known, including on archives and irrelevant files that are never
    decoded; a known-clear hit is clear; a container with nothing to decode is
    clear; else the heuristic score is placed against the two thresholds.
    Heuristics never produce known, and missing features never produce
    anything but clear.
    """

    if failure is not None:
        return _clear_without_evidence(failure.annotation, match)

    if match.hit:
        return _hash_verdict(match)

    if not_applicable is not None:
        return Verdict(
            outcome="clear",
            confidence=0.0,
            annotations=(f"not_applicable:{not_applicable}", INSUFFICIENT_SIGNAL),
        )

    if details is None or not details.feature_values:
        return Verdict(outcome="clear", confidence=0.0, annotations=(INSUFFICIENT_SIGNAL,))

    return _heuristic_verdict(details, detection)


def _hash_verdict(match: HashMatch) -> Verdict:
    confidence = _clamp(1.0 - match.normalized_distance)
    name = "exact_hash_match" if match.exact else "near_hash_match"
    signal = Signal(name=name, value=float(match.distance), weight=1.0)
    annotations = [f"reference:{match.category}", f"hash_kind:{match.hash_kind}"]
    if match.frame_index is not None and match.hash_kind == "phash":
        annotations.append(f"frame:{match.frame_index}")

    if match.category == "known_bad":
        return Verdict(
            outcome="known",
            confidence=confidence,
            signals=(signal,),
            annotations=tuple(annotations),
            priority="high",
        )
    return Verdict(
        outcome="clear",
        confidence=confidence,
        signals=(signal,),
        annotations=tuple(annotations),
    )


def _heuristic_verdict(details: HeuristicScoreDetails, detection: DetectionSettings) -> Verdict:
    suspect_threshold = detection.skin_tone_suspect_threshold
    known_threshold = detection.skin_tone_known_threshold
    heuristic = _clamp(details.score)

    signals = tuple(
        Signal(name=name, value=value, weight=details.weights.get(name, 0.0))
        for name, value in sorted(
            details.feature_values.items(),
            key=lambda item: (-details.weighted_contributions.get(item[0], 0.0), item[0]),
        )
    )
    annotations = list(details.reason_tags)
    if details.frame_index:
        annotations.append(f"frame:{details.frame_index}")

    if heuristic < suspect_threshold:
        return Verdict(
            outcome="clear",
            confidence=_clear_confidence(heuristic, suspect_threshold),
            signals=signals,
            annotations=tuple(annotations),
            score=heuristic,
        )

    priority = "normal"
    if heuristic >= known_threshold:
        priority = "high"
        annotations.append(HIGH_PRIORITY_HEURISTIC)

    return Verdict(
        outcome="suspect",
        confidence=_suspect_confidence(heuristic, suspect_threshold),
        signals=signals,
        annotations=tuple(annotations),
        priority=priority,
        score=heuristic,
    )


def _clear_without_evidence(annotation: str, match: HashMatch) -> Verdict:
    signals: tuple[Signal, ...] = ()
    annotations = [annotation, INSUFFICIENT_SIGNAL]
    # A digest hit on bytes we could not decode is kept for audit but never escalates.
    if match.hit:
        name = "exact_hash_match" if match.exact else "near_hash_match"
        signals = (Signal(name=name, value=float(match.distance), weight=0.0),)
        annotations.append(f"reference_hit_not_applied:{match.category}")
    return Verdict(outcome="clear", confidence=0.0, signals=signals, annotations=tuple(annotations))


def _clear_confidence(score: float, suspect_threshold: float) -> float:
    # 1.0 at score 0, 0.5 just under the suspect threshold.
    if suspect_threshold <= 0:
        return 0.5
    return _clamp(0.5 + 0.5 * (suspect_threshold - score) / suspect_threshold)


def _suspect_confidence(score: float, suspect_threshold: float) -> float:
    # 0.5 on the suspect threshold, 1.0 at score 1.
    headroom = 1.0 - suspect_threshold
    if headroom <= 0:
        return 1.0
    return _clamp(0.5 + 0.5 * (score - suspect_threshold) / headroom)


def _clamp(value: float, minimum: float = 0.0, maximum: float = 1.0) -> float:
    return max(minimum, min(maximum, value))
