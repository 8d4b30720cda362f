from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable
from uuid import uuid4

from smutdetect.config import Settings
from smutdetect.matching.reference_set import ReferenceSet, load_reference_set
from smutdetect.models import CandidateFile, ResultRecord
from smutdetect.pipeline import process_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobContext:
    """Per-job handle: immutable settings plus the shared, read-only reference set."""

    settings: Settings
    reference_set: ReferenceSet
    job_id: str = field(default_factory=lambda: uuid4().hex[:12])
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        """Stop starting new files; files already mid-decode run to completion."""

        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()


def start_job(settings: Settings, *, reference_set: ReferenceSet | None = None) -> JobContext:
    """Load job-wide resources; raises ConfigurationError before any file is touched."""

    if reference_set is None:
        reference_path = settings.reference.reference_set_path
        if reference_path is None:
            logger.warning("No reference_set_path configured; hash matching is disabled for this job.")
            reference_set = ReferenceSet()
        else:
            reference_set = load_reference_set(reference_path)

    context = JobContext(settings=settings, reference_set=reference_set)
    logger.info(
        "Started triage job %s (%d reference entries, suspect>=%.3f, high>=%.3f)",
        context.job_id,
        len(reference_set),
        settings.detection.skin_tone_suspect_threshold,
        settings.detection.skin_tone_known_threshold,
    )
    return context


def run_job(
    context: JobContext,
    candidates: Iterable[CandidateFile],
    *,
    workers: int | None = None,
    on_record: Callable[[ResultRecord], None] | None = None,
) -> list[ResultRecord]:
    """Process candidates on a worker pool, returning records in presentation order.

    Cancellation is honoured only at file boundaries: a file that has not
    started is dropped, a file that has started finishes normally.
    """

    max_workers = max(1, workers or context.settings.pipeline.workers)
    window = max_workers * 2
    records: list[ResultRecord] = []
    pending: deque[Future[ResultRecord | None]] = deque()

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"triage-{context.job_id}") as executor:
        for candidate in candidates:
            if context.cancelled:
                break
            pending.append(executor.submit(_process_unless_cancelled, candidate, context))
            if len(pending) >= window:
                _collect(pending.popleft(), records, on_record)

        while pending:
            _collect(pending.popleft(), records, on_record)

    logger.info(
        "Finished triage job %s: %d record(s)%s",
        context.job_id,
        len(records),
        " (cancelled)" if context.cancelled else "",
    )
    return records


def _process_unless_cancelled(candidate: CandidateFile, context: JobContext) -> ResultRecord | None:
    if context.cancelled:
        return None
    return process_file(candidate, context)


def _collect(
    future: Future[ResultRecord | None],
    records: list[ResultRecord],
    on_record: Callable[[ResultRecord], None] | None,
) -> None:
    record = future.result()
    if record is None:
        return
    records.append(record)
    if on_record is not None:
        on_record(record)
