"""
Read-only progress projection of import jobs.

All numbers come from the checkpoint counters on the job row, so a snapshot
costs one primary-key lookup whatever the size of the import.
"""
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Optional

from import_engine.core.config import settings
from import_engine.domain.imports.jobs import COMPLETED, TERMINAL_STATUSES, require_import_job
from import_engine.utils.date import utcnow


@dataclass
class ImportProgress:
    job_id: str
    status: str
    total_rows: Optional[int]
    processed_rows: int
    success_count: int
    duplicate_count: int
    error_count: int
    current_chunk: int
    percent: Optional[float]
    errors_logged: int
    errors_not_logged: int
    rows_per_second: Optional[float]
    eta_seconds: Optional[float]
    is_terminal: bool
    failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _percent(status: str, processed: int, total: Optional[int]) -> Optional[float]:
    if status == COMPLETED:
        return 100.0
    if not total:
        return None
    return round(min(100.0, processed * 100.0 / total), 1)


def build_progress(job: Dict[str, Any], now: Optional[datetime] = None) -> ImportProgress:
    """Project a job record into an ImportProgress."""
    now = now or utcnow()
    status = job["status"]
    processed = job["processed_rows"] or 0
    total = job["total_rows"]
    terminal = status in TERMINAL_STATUSES

    rate = None
    started_at = job.get("started_at")
    if started_at is not None:
        end = job.get("completed_at") or (job.get("updated_at") if terminal else now)
        elapsed = (end - started_at).total_seconds() if end else 0
        if elapsed > 0 and processed:
            rate = round(processed / elapsed, 2)

    eta = None
    if not terminal and rate and total is not None and total > processed:
        eta = round((total - processed) / rate, 1)

    logged = sum(1 for entry in job.get("error_log") or [] if entry.get("row") is not None)
    return ImportProgress(
        job_id=job["id"],
        status=status,
        total_rows=total,
        processed_rows=processed,
        success_count=job["success_count"],
        duplicate_count=job["duplicate_count"],
        error_count=job["error_count"],
        current_chunk=job["current_chunk"],
        percent=_percent(status, processed, total),
        errors_logged=logged,
        errors_not_logged=max(0, job["error_count"] - logged),
        rows_per_second=rate,
        eta_seconds=eta,
        is_terminal=terminal,
        failure_reason=job.get("failure_reason"),
        started_at=started_at,
        completed_at=job.get("completed_at"),
        updated_at=job.get("updated_at"),
    )


class ProgressReporter:
    """
    Snapshot or watch job progress.

    The polling interval is explicit per reporter instead of process-wide.
    """

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.poll_interval = settings.import_progress_poll_seconds if poll_interval is None else poll_interval
        self._sleep = sleep
        self._clock = clock

    def snapshot(self, job_id: str) -> ImportProgress:
        return build_progress(require_import_job(job_id), now=self._clock())

    def watch(self, job_id: str, *, max_polls: Optional[int] = None) -> Iterator[ImportProgress]:
        """Yield a snapshot every poll interval until the job is terminal."""
        polls = 0
        while True:
            progress = self.snapshot(job_id)
            yield progress
            polls += 1
            if progress.is_terminal or (max_polls is not None and polls >= max_polls):
                return
            self._sleep(self.poll_interval)
