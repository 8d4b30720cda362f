from __future__ import annotations

import json
import logging
from dataclasses import asdict
from importlib import metadata
from pathlib import Path
from time import perf_counter
from typing import Callable, TypeVar

import typer

from smutdetect.config import ConfigurationError, Settings, load_settings
from smutdetect.ingest.decode import decode, decode_isolated
from smutdetect.ingest.discovery import iter_candidates, iter_files
from smutdetect.ingest.selector import sniff_signature
from smutdetect.job import run_job, start_job
from smutdetect.logging_config import configure_logging
from smutdetect.matching.hashes import compute_content_hashes
from smutdetect.matching.reference_set import ReferenceEntry, normalize_category, write_reference_set
from smutdetect.models import CandidateFile, DecodedMedia
from smutdetect.pipeline import process_file
from smutdetect.report.exporter import export_final_outputs, load_records

MODULE_NAME = "SmutDetect"
MODULE_DESCRIPTION = (
    "Flags files that are likely to contain explicit imagery so investigators can review them first."
)

app = typer.Typer(help="Forensic triage of images and video for explicit content.")
config_app = typer.Typer(help="Configuration commands.")
reference_app = typer.Typer(help="Reference set commands.")

app.add_typer(config_app, name="config")
app.add_typer(reference_app, name="reference")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIG_OPTION_HELP = "Path to YAML configuration file."


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _fail(exc: Exception) -> typer.Exit:
    logger.error("Command failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


def _module_version() -> str:
    try:
        return metadata.version("smutdetect")
    except metadata.PackageNotFoundError:
        return "unknown"


@app.command()
def about() -> None:
    """Print module name, description and version."""

    typer.echo(
        json.dumps(
            {"name": MODULE_NAME, "description": MODULE_DESCRIPTION, "version": _module_version()},
            indent=2,
        )
    )


@config_app.command("show")
def show_config(
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="SMUTDETECT_CONFIG",
        help=CONFIG_OPTION_HELP,
    )
) -> None:
    """Print resolved runtime configuration."""

    try:
        settings = _bootstrap(config_path)
    except ConfigurationError as exc:
        raise _fail(exc) from exc
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command("select")
def select(path: Path = typer.Argument(..., help="File whose container signature should be sniffed.")) -> None:
    """Report how the file selector classifies a file."""

    try:
        data = path.read_bytes()
    except OSError as exc:
        raise _fail(exc) from exc
    signature = sniff_signature(data, path.name)
    typer.echo(json.dumps({"path": str(path), "kind": signature.kind, "format": signature.format_name}, indent=2))


@app.command("inspect")
def inspect(
    path: Path = typer.Argument(..., help="Single file to triage."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="SMUTDETECT_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Triage one file and print its full result record."""

    try:
        settings = _bootstrap(config_path)
        context = start_job(settings)
        data = path.read_bytes()
    except (ConfigurationError, OSError) as exc:
        raise _fail(exc) from exc

    candidate = CandidateFile(path=str(path.resolve()), declared_name=path.name, data=data, inode=path.stat().st_ino)
    record = process_file(candidate, context)
    typer.echo(json.dumps(asdict(record), indent=2))


@app.command("scan")
def scan(
    paths: list[Path] = typer.Argument(..., help="Files or directories standing in for the data source."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="SMUTDETECT_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", help="Directory for JSON/CSV/review outputs."),
    basename: str = typer.Option("triage_results", help="Base filename for exported artifacts."),
    workers: int | None = typer.Option(None, help="Worker threads (defaults to pipeline.workers)."),
    include_clear: bool = typer.Option(False, help="List clear files in the review manifest too."),
) -> None:
    """Triage every file under the given paths and export ranked results."""

    total_steps = 3
    try:
        settings = _bootstrap(config_path)
        context = _run_with_progress(1, total_steps, "Load job settings and reference set", lambda: start_job(settings))

        candidates = iter_candidates(
            paths,
            expand_archives=settings.pipeline.expand_archives,
            max_read_bytes=settings.decode.max_decode_bytes,
        )
        records = _run_with_progress(
            2,
            total_steps,
            "Triage files",
            lambda: run_job(context, candidates, workers=workers),
        )

        exported = _run_with_progress(
            3,
            total_steps,
            "Export results",
            lambda: export_final_outputs(
                records,
                output_dir=output_dir or settings.pipeline.output_dir,
                basename=basename,
                include_clear=include_clear,
            ),
        )
    except (ConfigurationError, RuntimeError, ValueError) as exc:
        raise _fail(exc) from exc

    counts = {outcome: sum(1 for record in records if record.outcome == outcome) for outcome in ("known", "suspect", "clear")}
    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "job_id": context.job_id,
                "file_count": len(records),
                "outcomes": counts,
                "decode_failures": sum(1 for record in records if record.decode_failure),
                "outputs": {key: str(value) for key, value in exported.items()},
            },
            indent=2,
        )
    )


@app.command("review")
def review_results(
    results_path: Path = typer.Argument(..., help="Path to a results JSON written by scan."),
    output_dir: Path = typer.Option(Path("data/outputs"), "--output-dir", "-o", help="Directory for JSON/CSV/review outputs."),
    basename: str = typer.Option("triage_results", help="Base filename for exported artifacts."),
    include_clear: bool = typer.Option(False, help="List clear files in the review manifest too."),
) -> None:
    """Re-export a results file and rebuild its ranked review manifest."""

    try:
        records = load_records(results_path)
        exported = export_final_outputs(
            records,
            output_dir=output_dir,
            basename=basename,
            include_clear=include_clear,
        )
    except (OSError, ValueError) as exc:
        raise _fail(exc) from exc

    logger.info("Re-exported %d record(s) from %s", len(records), results_path)
    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "file_count": len(records),
                "outputs": {key: str(value) for key, value in exported.items()},
            },
            indent=2,
        )
    )


@reference_app.command("build")
def build_reference(
    paths: list[Path] = typer.Argument(..., help="Files or directories whose hashes should be catalogued."),
    category: str = typer.Option(..., help="Category for every entry: known_bad or known_clear."),
    output: Path = typer.Option(..., "--output", "-o", help="Reference CSV to write."),
    perceptual: bool = typer.Option(True, help="Also record perceptual hashes of decodable media."),
    config_path: Path = typer.Option(
        Path("configs/default.yaml"),
        "--config",
        "-c",
        envvar="SMUTDETECT_CONFIG",
        help=CONFIG_OPTION_HELP,
    ),
) -> None:
    """Write a reference CSV from a directory of already-categorised files."""

    try:
        settings = _bootstrap(config_path)
        resolved_category = normalize_category(category)
    except (ConfigurationError, ValueError) as exc:
        raise _fail(exc) from exc

    entries: list[ReferenceEntry] = []
    seen: set[tuple[str, str]] = set()
    decoder = decode_isolated if settings.decode.isolate_decoding else decode
    file_count = 0
    for root in paths:
        for path in iter_files(Path(root).expanduser().resolve()):
            try:
                data = path.read_bytes()
            except OSError as exc:
                logger.warning("Unable to read %s: %s", path, exc)
                continue
            file_count += 1
            media: DecodedMedia | None = None
            if perceptual:
                signature = sniff_signature(data, path.name)
                if signature.kind in ("image", "video"):
                    decoded = decoder(data, signature.kind, settings.decode, format_name=signature.format_name)
                    if isinstance(decoded, DecodedMedia):
                        media = decoded
                    else:
                        logger.warning("No perceptual hash for %s: %s", path, decoded.annotation)
            hashes = compute_content_hashes(data, media)
            rows = [("sha256", hashes.sha256), ("md5", hashes.md5)]
            rows.extend(("phash", value) for value in hashes.perceptual)
            for kind, value in rows:
                if (kind, value) in seen:
                    continue
                seen.add((kind, value))
                entries.append(ReferenceEntry(hash_value=value, hash_kind=kind, category=resolved_category))

    written = write_reference_set(entries, output)
    logger.info("Wrote %d reference entries for %d file(s) to %s", len(entries), file_count, written)
    typer.echo(json.dumps({"status": "ok", "file_count": file_count, "entry_count": len(entries), "output": str(written)}, indent=2))


if __name__ == "__main__":
    app()
