from __future__ import annotations

from smutdetect.matching.hashes import PHASH_BITS
from smutdetect.matching.reference_set import ReferenceSet
from smutdetect.models import CATEGORY_SEVERITY, ContentHashes, HashKind, HashMatch

# Strongest digest first; breaks ties between hits of equal severity.
EXACT_LOOKUP_ORDER: tuple[HashKind, ...] = ("sha256", "sha1", "md5")


def match(hashes: ContentHashes, reference_set: ReferenceSet, *, max_distance: int) -> HashMatch:
    """Look content hashes up against the reference set.

    Exact digest hits win outright. Otherwise each decoded frame's perceptual
    hash is tried and the closest hit (most severe on ties, earliest frame
    after that) is returned.
    """

    exact = match_exact(hashes, reference_set)
    if exact.hit:
        return exact

    best: HashMatch | None = None
    for frame_index, frame_hash in enumerate(hashes.perceptual):
        near = reference_set.lookup_near(frame_hash, max_distance)
        if near is None:
            continue
        candidate = HashMatch(
            category=near.category,
            hash_kind="phash",
            distance=near.distance,
            hash_bits=PHASH_BITS,
            reference_hash=near.reference_hash,
            frame_index=frame_index,
        )
        if best is None or _rank(candidate) < _rank(best):
            best = candidate

    return best or HashMatch.miss()


def match_exact(hashes: ContentHashes, reference_set: ReferenceSet) -> HashMatch:
    """Look every digest up and keep the most severe hit.

    Lookup order only breaks ties between hits of the same category, so a
    known-bad MD5 still wins over a known-clear SHA-1 for the same bytes.
    """

    best: HashMatch | None = None
    for kind in EXACT_LOOKUP_ORDER:
        digest = getattr(hashes, kind)
        category = reference_set.lookup_exact(digest)
        if category is None:
            continue
        candidate = HashMatch(category=category, hash_kind=kind, distance=0, reference_hash=digest)
        if best is None or _severity(candidate) > _severity(best):
            best = candidate
    return best or HashMatch.miss()


def _severity(candidate: HashMatch) -> int:
    return CATEGORY_SEVERITY.get(candidate.category or "", 0)


def _rank(candidate: HashMatch) -> tuple[int, int]:
    return candidate.distance, -_severity(candidate)
