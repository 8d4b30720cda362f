from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from smutdetect.ingest.decode import DecodeBudget, DecodeError, decode, decode_isolated
from smutdetect.ingest.selector import sniff_signature
from smutdetect.matching.hashes import compute_content_hashes
from smutdetect.matching.matcher import match, match_exact
from smutdetect.models import CandidateFile, ContentHashes, DecodedMedia, DecodeFailure, HashMatch, ResultRecord
from smutdetect.report.reporter import report
from smutdetect.scoring.heuristic_score import HeuristicScoreDetails, score_media
from smutdetect.scoring.verdict import aggregate

if TYPE_CHECKING:
    from smutdetect.job import JobContext

logger = logging.getLogger(__name__)


def process_file(candidate: CandidateFile, context: JobContext) -> ResultRecord:
    """Run one file through select → decode → hash → score → verdict → record.

    Never raises for content problems: anything that goes wrong after the
    container is identified becomes a DecodeFailure on a clear verdict. All
    working state lives in this call; only the reference set is shared.
    """

    settings = context.settings
    signature = sniff_signature(candidate.data, candidate.declared_name)
    hashes = compute_content_hashes(candidate.data)

    if signature.kind in ("irrelevant", "archive"):
        verdict = aggregate(
            match_exact(hashes, context.reference_set),
            None,
            settings.detection,
            not_applicable=signature.kind,
        )
        logger.debug("Skipped %s (%s)", candidate.path, signature.kind)
        return report(
            candidate,
            verdict,
            hashes=hashes,
            kind=signature.kind,
            format_name=signature.format_name,
        )

    budget = DecodeBudget(settings.decode.max_decode_millis)
    decoder = decode_isolated if settings.decode.isolate_decoding else decode
    failure: DecodeFailure | None = None
    media: DecodedMedia | None = None
    hash_match = HashMatch.miss()
    details: HeuristicScoreDetails | None = None

    try:
        decoded = decoder(
            candidate.data,
            signature.kind,
            settings.decode,
            format_name=signature.format_name,
            budget=budget,
        )
        if isinstance(decoded, DecodeFailure):
            failure = decoded
        else:
            media = decoded
            hashes = compute_content_hashes(candidate.data, media)
            budget.check("hashing")
            hash_match = match(
                hashes,
                context.reference_set,
                max_distance=settings.detection.near_hash_max_distance,
            )
            if not hash_match.hit:
                details = score_media(
                    media,
                    settings.weights.model_dump(mode="python"),
                    budget=budget,
                )
    except DecodeError as exc:
        failure = exc.failure
    except MemoryError:
        failure = DecodeFailure(reason="resource_limit_exceeded", detail="out of memory")
    except Exception as exc:
        logger.warning("Unexpected error while processing %s: %s", candidate.path, exc, exc_info=True)
        failure = DecodeFailure(reason="malformed_header", detail=f"{type(exc).__name__}: {exc}")

    if failure is not None:
        logger.warning("Decode failure for %s: %s %s", candidate.path, failure.reason, failure.detail)
        media = None
        hashes = ContentHashes(md5=hashes.md5, sha1=hashes.sha1, sha256=hashes.sha256)
        hash_match = match_exact(hashes, context.reference_set)
        details = None

    verdict = aggregate(hash_match, details, settings.detection, failure=failure)
    logger.debug(
        "Verdict for %s: %s (confidence=%.3f, priority=%s)",
        candidate.path,
        verdict.outcome,
        verdict.confidence,
        verdict.priority,
    )
    return report(
        candidate,
        verdict,
        hashes=hashes,
        kind=signature.kind,
        format_name=signature.format_name,
        frame_count=len(media.frames) if media is not None else 0,
        failure=failure,
    )
