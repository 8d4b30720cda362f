from __future__ import annotations

import logging

from smutdetect.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at startup."""

    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format=DEFAULT_LOG_FORMAT,
        force=True,
    )
    # PIL logs every plugin it tries at DEBUG.
    logging.getLogger("PIL").setLevel(max(logging.INFO, logging.getLogger().level))
