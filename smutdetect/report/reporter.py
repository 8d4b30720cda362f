from __future__ import annotations

from dataclasses import asdict

from smutdetect.models import CandidateFile, ContainerKind, ContentHashes, DecodeFailure, ResultRecord, Verdict


def report(
    candidate: CandidateFile,
    verdict: Verdict,
    *,
    hashes: ContentHashes,
    kind: ContainerKind,
    format_name: str | None = None,
    frame_count: int = 0,
    failure: DecodeFailure | None = None,
) -> ResultRecord:
    """Assemble the audit record for one file. No I/O."""

    return ResultRecord(
        path=candidate.path,
        declared_name=candidate.declared_name,
        inode=candidate.inode,
        offset=candidate.offset,
        size_bytes=candidate.size,
        container=dict(candidate.container),
        container_kind=kind,
        format_name=format_name,
        md5=hashes.md5,
        sha1=hashes.sha1,
        sha256=hashes.sha256,
        perceptual_hashes=list(hashes.perceptual),
        outcome=verdict.outcome,
        confidence=round(verdict.confidence, 6),
        priority=verdict.priority,
        score=round(verdict.score, 6) if verdict.score is not None else None,
        signals=[asdict(signal) for signal in verdict.signals],
        annotations=list(verdict.annotations),
        frame_count=frame_count,
        decode_failure=failure.reason if failure else None,
        decode_failure_detail=failure.detail if failure else None,
    )
