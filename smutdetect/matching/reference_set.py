"""Known-content reference set: load once per job, read-only afterwards."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

import imagehash

from smutdetect.config import ConfigurationError
from smutdetect.models import CATEGORY_SEVERITY, HashKind, ReferenceCategory

logger = logging.getLogger(__name__)

REFERENCE_FIELDS = ("hash_value", "hash_kind", "category")

_CATEGORY_ALIASES: dict[str, ReferenceCategory] = {
    "known_bad": "known_bad",
    "known-bad": "known_bad",
    "bad": "known_bad",
    "known_clear": "known_clear",
    "known-clear": "known_clear",
    "clear": "known_clear",
}
_DIGEST_LENGTHS: dict[str, int] = {"md5": 32, "sha1": 40, "sha256": 64}
_HEX_CHARS = set("0123456789abcdef")


@dataclass(frozen=True, slots=True)
class ReferenceEntry:
    hash_value: str
    hash_kind: HashKind
    category: ReferenceCategory


@dataclass(frozen=True, slots=True)
class NearMatch:
    category: ReferenceCategory
    distance: int
    reference_hash: str


class ReferenceSet:
    """Immutable hash → category table shared by every file in a job.

    Exact digests live in a read-only mapping; perceptual hashes are kept as
    a tuple and scanned linearly, so concurrent lookups need no locking.
    """

    __slots__ = ("_exact", "_perceptual", "source")

    def __init__(self, entries: Iterable[ReferenceEntry] = (), *, source: str | None = None) -> None:
        exact: dict[str, ReferenceCategory] = {}
        perceptual: dict[str, ReferenceCategory] = {}
        for entry in entries:
            table = perceptual if entry.hash_kind == "phash" else exact
            table[entry.hash_value] = _more_severe(table.get(entry.hash_value), entry.category)

        self._exact: Mapping[str, ReferenceCategory] = MappingProxyType(exact)
        self._perceptual: tuple[tuple[imagehash.ImageHash, str, ReferenceCategory], ...] = tuple(
            (imagehash.hex_to_hash(value), value, category) for value, category in sorted(perceptual.items())
        )
        self.source = source

    def __len__(self) -> int:
        return len(self._exact) + len(self._perceptual)

    @property
    def exact_count(self) -> int:
        return len(self._exact)

    @property
    def perceptual_count(self) -> int:
        return len(self._perceptual)

    def lookup_exact(self, digest: str) -> ReferenceCategory | None:
        return self._exact.get(digest.lower())

    def lookup_near(self, perceptual_hash: str, max_distance: int) -> NearMatch | None:
        """Closest perceptual entry within max_distance bits.

        Equal distances resolve to the most severe category, then to the
        lowest reference hash so the answer never depends on load order.
        """

        if not self._perceptual or max_distance < 0:
            return None

        query = imagehash.hex_to_hash(perceptual_hash)
        best: tuple[int, int, str, ReferenceCategory] | None = None
        for reference, value, category in self._perceptual:
            if reference.hash.shape != query.hash.shape:
                continue
            distance = int(query - reference)
            if distance > max_distance:
                continue
            candidate = (distance, -CATEGORY_SEVERITY[category], value, category)
            if best is None or candidate[:3] < best[:3]:
                best = candidate

        if best is None:
            return None
        distance, _, value, category = best
        return NearMatch(category=category, distance=distance, reference_hash=value)


def load_reference_set(path: str | Path) -> ReferenceSet:
    """Load a `hash_value,hash_kind,category` CSV; any defect is a ConfigurationError."""

    resolved = Path(path).expanduser()
    if not resolved.is_file():
        raise ConfigurationError(f"Reference set not found: {resolved}")

    try:
        with resolved.open("r", encoding="utf-8", newline="") as handle:
            reader = csv.DictReader(handle)
            missing = [name for name in REFERENCE_FIELDS if name not in (reader.fieldnames or [])]
            if missing:
                raise ConfigurationError(
                    f"Reference set {resolved} is missing column(s): {', '.join(missing)}"
                )
            entries = [_parse_row(row, line_number=index) for index, row in enumerate(reader, start=2)]
    except OSError as exc:
        raise ConfigurationError(f"Unable to read reference set {resolved}: {exc}") from exc
    except ValueError as exc:
        if isinstance(exc, ConfigurationError):
            raise
        raise ConfigurationError(f"Reference set {resolved}: {exc}") from exc

    reference_set = ReferenceSet(entries, source=str(resolved))
    logger.info(
        "Loaded reference set %s (%d exact, %d perceptual)",
        resolved,
        reference_set.exact_count,
        reference_set.perceptual_count,
    )
    return reference_set


def write_reference_set(entries: Iterable[ReferenceEntry], path: str | Path) -> Path:
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    with output.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(REFERENCE_FIELDS))
        writer.writeheader()
        for entry in entries:
            writer.writerow(
                {"hash_value": entry.hash_value, "hash_kind": entry.hash_kind, "category": entry.category}
            )
    return output


def normalize_category(raw: str) -> ReferenceCategory:
    category = _CATEGORY_ALIASES.get(raw.strip().lower())
    if category is None:
        raise ValueError(f"unknown reference category '{raw}'")
    return category


def _parse_row(row: dict[str, str | None], *, line_number: int) -> ReferenceEntry:
    value = (row.get("hash_value") or "").strip().lower()
    kind = (row.get("hash_kind") or "").strip().lower()
    raw_category = row.get("category") or ""

    try:
        category = normalize_category(raw_category)
    except ValueError as exc:
        raise ValueError(f"line {line_number}: {exc}") from exc

    if not value or not set(value) <= _HEX_CHARS:
        raise ValueError(f"line {line_number}: hash_value must be hexadecimal, got '{value}'")

    if kind == "phash":
        if len(value) != 16:
            raise ValueError(f"line {line_number}: phash values must be 16 hex characters")
        return ReferenceEntry(hash_value=value, hash_kind="phash", category=category)

    expected_length = _DIGEST_LENGTHS.get(kind)
    if expected_length is None:
        raise ValueError(f"line {line_number}: unsupported hash_kind '{kind}'")
    if len(value) != expected_length:
        raise ValueError(f"line {line_number}: {kind} digests must be {expected_length} hex characters")
    return ReferenceEntry(hash_value=value, hash_kind=kind, category=category)  # type: ignore[arg-type]


def _more_severe(current: ReferenceCategory | None, incoming: ReferenceCategory) -> ReferenceCategory:
    if current is None:
        return incoming
    return current if CATEGORY_SEVERITY[current] >= CATEGORY_SEVERITY[incoming] else incoming
