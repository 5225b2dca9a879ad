"""Logging utilities for gencar commands."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

_LOGGER_NAME = "gencar"
_NO_JOB = "-"

_context = threading.local()


class JobContextFilter(logging.Filter):
    """Stamps each record with the batch index of the job running on its thread."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.job = getattr(_context, "job", _NO_JOB)
        return True


@contextmanager
def job_context(index: int) -> Iterator[None]:
    """Tag log records emitted by the current thread with job ``index``."""
    previous = getattr(_context, "job", _NO_JOB)
    _context.job = str(index)
    try:
        yield
    finally:
        _context.job = previous


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a module-scoped logger under the gencar hierarchy."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


def configure_logging(
    *, verbose: bool = False, log_file: Path | None = None
) -> logging.Logger:
    """Configure the gencar logger with stderr output and optional file sink.

    Records from scheduler workers carry the job index, so the interleaved
    output of parallel jobs can be told apart.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    # Drop handlers from a previous invocation; closing releases any open log file.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Results go to stdout, so log records stay on stderr.
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.addFilter(JobContextFilter())
    stream_handler.setFormatter(logging.Formatter("[gencar job=%(job)s] %(levelname)s %(message)s"))
    logger.addHandler(stream_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.addFilter(JobContextFilter())
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s [%(threadName)s job=%(job)s]: %(message)s"
            )
        )
        logger.addHandler(file_handler)

    return logger


__all__ = ["JobContextFilter", "configure_logging", "get_logger", "job_context"]
