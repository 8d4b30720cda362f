from __future__ import annotations

from pathlib import Path

import pytest

from smutdetect.config import ConfigurationError
from smutdetect.matching.reference_set import (
    ReferenceEntry,
    ReferenceSet,
    load_reference_set,
    normalize_category,
    write_reference_set,
)

SHA256 = "a" * 64
MD5 = "b" * 32


def _write_csv(path: Path, rows: list[str], header: str = "hash_value,hash_kind,category") -> Path:
    path.write_text("\n".join([header, *rows]) + "\n", encoding="utf-8")
    return path


def test_load_reference_set_reads_exact_and_perceptual_entries(tmp_path: Path) -> None:
    csv_path = _write_csv(
        tmp_path / "reference.csv",
        [
            f"{SHA256.upper()},sha256,known_bad",
            f"{MD5},md5,known-clear",
            "ffffffffffffffff,phash,bad",
        ],
    )

    reference_set = load_reference_set(csv_path)

    assert len(reference_set) == 3
    assert reference_set.exact_count == 2
    assert reference_set.perceptual_count == 1
    assert reference_set.lookup_exact(SHA256) == "known_bad"
    assert reference_set.lookup_exact(MD5.upper()) == "known_clear"
    assert reference_set.lookup_exact("c" * 64) is None
    assert reference_set.source == str(csv_path)


def test_conflicting_categories_resolve_to_known_bad() -> None:
    reference_set = ReferenceSet(
        [
            ReferenceEntry(hash_value=SHA256, hash_kind="sha256", category="known_bad"),
            ReferenceEntry(hash_value=SHA256, hash_kind="sha256", category="known_clear"),
        ]
    )

    assert reference_set.lookup_exact(SHA256) == "known_bad"
    assert len(reference_set) == 1


def test_lookup_near_returns_closest_entry() -> None:
    reference_set = ReferenceSet(
        [
            ReferenceEntry(hash_value="ffffffffffffffff", hash_kind="phash", category="known_clear"),
            ReferenceEntry(hash_value="fffffffffffffff0", hash_kind="phash", category="known_bad"),
        ]
    )

    near = reference_set.lookup_near("ffffffffffffff00", max_distance=8)

    assert near is not None
    assert near.category == "known_bad"
    assert near.distance == 4
    assert near.reference_hash == "fffffffffffffff0"


def test_lookup_near_breaks_ties_by_severity_then_hash() -> None:
    severity_tie = ReferenceSet(
        [
            ReferenceEntry(hash_value="00000000000000ff", hash_kind="phash", category="known_clear"),
            ReferenceEntry(hash_value="000000000000ff00", hash_kind="phash", category="known_bad"),
        ]
    )
    hash_tie = ReferenceSet(
        [
            ReferenceEntry(hash_value="000000000000ff00", hash_kind="phash", category="known_bad"),
            ReferenceEntry(hash_value="00000000000000ff", hash_kind="phash", category="known_bad"),
        ]
    )

    assert severity_tie.lookup_near("0" * 16, max_distance=8).category == "known_bad"
    assert hash_tie.lookup_near("0" * 16, max_distance=8).reference_hash == "00000000000000ff"


def test_lookup_near_respects_max_distance() -> None:
    reference_set = ReferenceSet([ReferenceEntry(hash_value="ffffffffffffffff", hash_kind="phash", category="known_bad")])

    assert reference_set.lookup_near("ffffffffffffff00", max_distance=7) is None
    assert ReferenceSet().lookup_near("ffffffffffffffff", max_distance=64) is None


def test_missing_reference_file_is_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        load_reference_set(tmp_path / "missing.csv")


def test_missing_column_is_configuration_error(tmp_path: Path) -> None:
    csv_path = _write_csv(tmp_path / "reference.csv", [f"{SHA256},sha256"], header="hash_value,hash_kind")

    with pytest.raises(ConfigurationError, match="category"):
        load_reference_set(csv_path)


@pytest.mark.parametrize(
    ("row", "message"),
    [
        ("zzzz,sha256,known_bad", "hexadecimal"),
        (f"{MD5},sha256,known_bad", "64 hex characters"),
        (f"{SHA256},crc32,known_bad", "unsupported hash_kind"),
        (f"{SHA256},sha256,maybe", "unknown reference category"),
        ("fff,phash,known_bad", "16 hex characters"),
    ],
)
def test_malformed_rows_are_configuration_errors(tmp_path: Path, row: str, message: str) -> None:
    csv_path = _write_csv(tmp_path / "reference.csv", [row])

    with pytest.raises(ConfigurationError, match=message) as excinfo:
        load_reference_set(csv_path)

    assert "line 2" in str(excinfo.value)


def test_written_reference_set_loads_back(tmp_path: Path) -> None:
    entries = [
        ReferenceEntry(hash_value=SHA256, hash_kind="sha256", category="known_bad"),
        ReferenceEntry(hash_value="0123456789abcdef", hash_kind="phash", category="known_clear"),
    ]

    written = write_reference_set(entries, tmp_path / "nested" / "reference.csv")
    loaded = load_reference_set(written)

    assert loaded.lookup_exact(SHA256) == "known_bad"
    assert loaded.lookup_near("0123456789abcdef", max_distance=0).category == "known_clear"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("known_bad", "known_bad"), (" Known-Bad ", "known_bad"), ("bad", "known_bad"), ("CLEAR", "known_clear")],
)
def test_normalize_category_aliases(raw: str, expected: str) -> None:
    assert normalize_category(raw) == expected
