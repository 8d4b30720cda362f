from __future__ import annotations

import csv
import json
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any

from smutdetect.models import ResultRecord

_OUTCOME_RANK = {"known": 0, "suspect": 1, "clear": 2}


def export_records(records: list[ResultRecord], output_path: str) -> Path:
    """Export result records to JSON (default) or CSV, based on file extension."""

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() == ".csv":
        _write_csv(records, path)
    else:
        _write_json(records, path)

    return path


def export_final_outputs(
    records: list[ResultRecord],
    output_dir: str | Path,
    *,
    basename: str = "triage_results",
    include_clear: bool = False,
) -> dict[str, Path]:
    """Export JSON/CSV result files and a ranked review manifest for investigators."""

    resolved_output_dir = Path(output_dir)
    resolved_output_dir.mkdir(parents=True, exist_ok=True)

    json_path = resolved_output_dir / f"{basename}.json"
    csv_path = resolved_output_dir / f"{basename}.csv"
    review_path = resolved_output_dir / f"{basename}_review.json"

    export_records(records, str(json_path))
    export_records(records, str(csv_path))

    review_manifest = generate_review_manifest(records, include_clear=include_clear)
    review_path.write_text(json.dumps(review_manifest, indent=2, ensure_ascii=False), encoding="utf-8")

    return {
        "json": json_path,
        "csv": csv_path,
        "review": review_path,
    }


def generate_review_manifest(
    records: list[ResultRecord],
    *,
    include_clear: bool = False,
) -> list[dict[str, Any]]:
    """Rank records for human review: known, high-priority suspect, suspect, then clear."""

    selected = [record for record in records if include_clear or record.outcome != "clear"]
    ranked = sorted(selected, key=triage_rank)

    manifest: list[dict[str, Any]] = []
    for idx, record in enumerate(ranked, start=1):
        manifest.append(
            {
                "rank": idx,
                "path": record.path,
                "container": record.container,
                "outcome": record.outcome,
                "priority": record.priority,
                "confidence": record.confidence,
                "confidence_label": _confidence_label(record.confidence),
                "sha256": record.sha256,
                "reason_summary": _reason_summary(record),
            }
        )

    return manifest


def triage_rank(record: ResultRecord) -> tuple[int, int, float, str, str]:
    return (
        _OUTCOME_RANK.get(record.outcome, len(_OUTCOME_RANK)),
        0 if record.priority == "high" else 1,
        -record.confidence,
        record.path,
        record.container.get("member", ""),
    )


def load_records(path: str | Path) -> list[ResultRecord]:
    """Load result records from the exporter JSON contract."""

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError("Result contract must be a JSON array.")

    known_fields = {item.name for item in fields(ResultRecord)}
    records: list[ResultRecord] = []
    for idx, row in enumerate(payload, start=1):
        if not isinstance(row, dict):
            raise ValueError(f"Result row {idx} must be an object.")
        unexpected = set(row) - known_fields
        if unexpected:
            raise ValueError(f"Result row {idx} has unexpected field(s): {', '.join(sorted(unexpected))}")
        try:
            records.append(ResultRecord(**row))
        except TypeError as exc:
            raise ValueError(f"Result row {idx} is incomplete: {exc}") from exc

    return records


def _write_json(records: list[ResultRecord], path: Path) -> None:
    payload = [asdict(record) for record in records]
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _write_csv(records: list[ResultRecord], path: Path) -> None:
    fields_out = [
        "path",
        "archive_member",
        "inode",
        "offset",
        "size_bytes",
        "container_kind",
        "format_name",
        "outcome",
        "priority",
        "confidence",
        "score",
        "reason_summary",
        "decode_failure",
        "md5",
        "sha1",
        "sha256",
        "perceptual_hashes",
    ]

    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fields_out)
        writer.writeheader()
        for record in records:
            writer.writerow(
                {
                    "path": record.path,
                    "archive_member": record.container.get("member", ""),
                    "inode": "" if record.inode is None else record.inode,
                    "offset": "" if record.offset is None else record.offset,
                    "size_bytes": record.size_bytes,
                    "container_kind": record.container_kind,
                    "format_name": record.format_name or "",
                    "outcome": record.outcome,
                    "priority": record.priority,
                    "confidence": f"{record.confidence:.4f}",
                    "score": "" if record.score is None else f"{record.score:.4f}",
                    "reason_summary": _reason_summary(record),
                    "decode_failure": record.decode_failure or "",
                    "md5": record.md5,
                    "sha1": record.sha1,
                    "sha256": record.sha256,
                    "perceptual_hashes": "|".join(record.perceptual_hashes),
                }
            )


def _confidence_label(confidence: float) -> str:
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.6:
        return "medium"
    return "low"


def _reason_summary(record: ResultRecord) -> str:
    if record.decode_failure:
        return f"decode failure: {record.decode_failure}"
    fired = [signal["name"] for signal in record.signals if signal.get("weight", 0.0) > 0]
    if record.outcome == "known" and fired:
        return ", ".join(fired)
    if record.annotations:
        return ", ".join(record.annotations)
    if fired:
        return ", ".join(fired)
    return "no signal"
