"""Stand-in for the host's file discovery: walk paths, unpack zip members."""

from __future__ import annotations

import io
import logging
import zipfile
from pathlib import Path
from typing import Iterable, Iterator

from smutdetect.ingest.selector import sniff_signature
from smutdetect.models import CandidateFile

logger = logging.getLogger(__name__)


def iter_files(root: Path) -> Iterator[Path]:
    """Yield root itself if it is a file, else every file beneath it in sorted order."""

    if root.is_file():
        yield root
        return

    for path in sorted(root.rglob("*")):
        if path.is_file() and not path.is_symlink():
            yield path


def iter_candidates(
    paths: Iterable[Path],
    *,
    expand_archives: bool = True,
    max_read_bytes: int | None = None,
) -> Iterator[CandidateFile]:
    """Yield one candidate per file, plus one per zip member when expanding archives.

    Files and members larger than max_read_bytes are yielded as their first
    max_read_bytes + 1 bytes so the decoder's own size ceiling reports them.
    Zip members are read from the archive on disk, not from the capped prefix.
    """

    for root in paths:
        resolved_root = Path(root).expanduser().resolve()
        if not resolved_root.exists():
            logger.warning("Input path does not exist: %s", resolved_root)
            continue

        for path in iter_files(resolved_root):
            try:
                stat = path.stat()
                data = _read_capped(path, max_read_bytes)
            except OSError as exc:
                logger.warning("Unable to read %s: %s", path, exc)
                continue

            if len(data) < stat.st_size:
                logger.debug("Read first %d of %d bytes from %s", len(data), stat.st_size, path)
            candidate = CandidateFile(
                path=str(path),
                declared_name=path.name,
                data=data,
                inode=stat.st_ino,
                total_size=stat.st_size,
            )
            yield candidate

            if expand_archives and sniff_signature(data, path.name).format_name == "zip":
                yield from iter_zip_members(candidate, source=path, max_read_bytes=max_read_bytes)


def iter_zip_members(
    candidate: CandidateFile,
    *,
    source: Path | None = None,
    max_read_bytes: int | None = None,
) -> Iterator[CandidateFile]:
    """Yield the regular-file members of a zip archive as separate candidates.

    The archive is read from source when given, else from the candidate's
    bytes. Members are not expanded recursively.
    """

    try:
        with zipfile.ZipFile(source if source is not None else io.BytesIO(candidate.data)) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                try:
                    with archive.open(info) as handle:
                        data = handle.read(_read_limit(max_read_bytes))
                except (zipfile.BadZipFile, RuntimeError, NotImplementedError, OSError, EOFError) as exc:
                    # Encrypted or damaged members have no readable bytes to triage.
                    logger.warning("Skipping unreadable member %s in %s: %s", info.filename, candidate.path, exc)
                    continue

                yield CandidateFile(
                    path=candidate.path,
                    declared_name=Path(info.filename).name,
                    data=data,
                    inode=candidate.inode,
                    offset=info.header_offset,
                    container={"archive": candidate.path, "member": info.filename},
                    total_size=info.file_size,
                )
    except (zipfile.BadZipFile, OSError, EOFError) as exc:
        logger.warning("Unable to open archive %s: %s", candidate.path, exc)


def _read_capped(path: Path, max_read_bytes: int | None) -> bytes:
    with path.open("rb") as handle:
        return handle.read(_read_limit(max_read_bytes))


def _read_limit(max_read_bytes: int | None) -> int:
    return -1 if max_read_bytes is None else max_read_bytes + 1
