"""
Logging setup shared by the API process, the worker pool and the CLI.

Every line carries the import job being processed (`job=<id>`, or `job=-`
outside of one). The supervisor binds the job id with `job_context()` for the
duration of a run, so chunk, store and storage messages emitted deep in the
pipeline can be traced back to their job without threading the id through
every call.
"""
from __future__ import annotations

import contextvars
import logging
from contextlib import contextmanager
from logging.config import dictConfig
from typing import Iterator, Optional

NO_JOB = "-"

_current_job_id: contextvars.ContextVar[str] = contextvars.ContextVar("import_job_id", default=NO_JOB)

# Third-party loggers that flood DEBUG output while streaming large files
QUIET_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "openpyxl", "multipart")

_is_configured = False


@contextmanager
def job_context(job_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with `job_id`."""
    token = _current_job_id.set(job_id)
    try:
        yield
    finally:
        _current_job_id.reset(token)


def current_job_id() -> str:
    return _current_job_id.get()


class JobContextFilter(logging.Filter):
    """Adds `record.job_id` from the active job context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "job_id"):
            record.job_id = _current_job_id.get()
        return True


def build_logging_config(level: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"job_context": {"()": JobContextFilter}},
        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)-7s | %(threadName)s | job=%(job_id)s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "filters": ["job_context"],
                "level": level,
            }
        },
        "root": {"handlers": ["console"], "level": level},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    }


def configure_logging(level: Optional[str] = None) -> None:
    """Install the console handler once per process. Later calls are no-ops."""
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    dictConfig(build_logging_config(log_level))
    logging.getLogger("import_engine").setLevel(log_level)

    _is_configured = True
