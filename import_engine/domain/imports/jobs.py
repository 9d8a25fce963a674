"""
Persistent tracking for long-running import jobs.

The import_jobs row is the only state that survives a crash or restart. It is
written by one supervisor at a time (the holder of `claim_token`); other
callers may only request pause/resume/cancel through `control_signal`.
"""
from __future__ import annotations

import logging
import threading
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Integer,
    String,
    Table,
    Text,
    and_,
    delete,
    func,
    insert,
    or_,
    select,
    update,
)

from import_engine.core.config import settings
from import_engine.db.records import is_transient_error
from import_engine.db.session import get_engine, metadata
from import_engine.domain.imports.errors import (
    ClaimLostError,
    ControlSignalChangedError,
    InvalidTransitionError,
    JobFatalError,
    JobNotDeletableError,
    JobNotFoundError,
)
from import_engine.domain.imports.modules import get_module_schema
from import_engine.utils.date import utcnow
from import_engine.utils.retry import RetryExhaustedError, call_with_backoff

logger = logging.getLogger(__name__)

UPLOADED = "uploaded"
PROCESSING = "processing"
CHUNK_COMPLETED = "chunk_completed"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = {COMPLETED, FAILED}
ACTIVE_STATUSES = {PROCESSING, CHUNK_COMPLETED}

ALLOWED_TRANSITIONS = {
    UPLOADED: {PROCESSING, FAILED},
    PROCESSING: {CHUNK_COMPLETED, PAUSED, COMPLETED, FAILED},
    CHUNK_COMPLETED: {PROCESSING, PAUSED, COMPLETED, FAILED},
    PAUSED: {PROCESSING, FAILED},
    COMPLETED: set(),
    FAILED: set(),
}

CONTROL_ACTIONS = {"pause", "resume", "cancel"}

_ANY_SIGNAL = object()

# Columns a status transition may set alongside the status itself.
TRANSITION_FIELDS = {
    "total_rows",
    "chunk_metadata",
    "started_at",
    "completed_at",
    "failure_reason",
    "control_signal",
    "last_processed_offset",
}

import_jobs = Table(
    "import_jobs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("owner_id", String(255), nullable=False, index=True),
    Column("file_name", String(512), nullable=False),
    Column("file_path", String(1024), nullable=False),
    Column("file_size_bytes", BigInteger),
    Column("file_hash", String(64), index=True),
    Column("module", String(50), nullable=False, index=True),
    Column("import_type", String(50)),
    Column("metadata", JSON),
    Column("status", String(32), nullable=False, index=True),
    Column("total_rows", Integer),
    Column("processed_rows", Integer, nullable=False, default=0),
    Column("success_count", Integer, nullable=False, default=0),
    Column("duplicate_count", Integer, nullable=False, default=0),
    Column("error_count", Integer, nullable=False, default=0),
    Column("last_processed_offset", BigInteger, nullable=False, default=0),
    Column("current_chunk", Integer, nullable=False, default=0),
    Column("chunk_metadata", JSON),
    Column("error_log", JSON),
    Column("failure_reason", Text),
    Column("control_signal", String(16)),
    Column("claim_token", String(64)),
    Column("heartbeat_at", DateTime),
    Column("started_at", DateTime),
    Column("completed_at", DateTime),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

_table_initialized = False
_table_init_lock = threading.Lock()


def ensure_import_jobs_table() -> None:
    """Create the import_jobs table on-demand."""
    global _table_initialized
    if _table_initialized:
        return

    with _table_init_lock:
        if _table_initialized:
            return
        metadata.create_all(get_engine(), tables=[import_jobs], checkfirst=True)
        _table_initialized = True


def _reset_table_flag() -> None:
    global _table_initialized
    with _table_init_lock:
        _table_initialized = False


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "owner_id": row["owner_id"],
        "file_name": row["file_name"],
        "file_path": row["file_path"],
        "file_size_bytes": row["file_size_bytes"],
        "file_hash": row["file_hash"],
        "module": row["module"],
        "import_type": row["import_type"],
        "metadata": row["metadata"] or {},
        "status": row["status"],
        "total_rows": row["total_rows"],
        "processed_rows": row["processed_rows"],
        "success_count": row["success_count"],
        "duplicate_count": row["duplicate_count"],
        "error_count": row["error_count"],
        "last_processed_offset": row["last_processed_offset"],
        "current_chunk": row["current_chunk"],
        "chunk_metadata": row["chunk_metadata"] or {},
        "error_log": row["error_log"] or [],
        "failure_reason": row["failure_reason"],
        "control_signal": row["control_signal"],
        "claim_token": row["claim_token"],
        "heartbeat_at": row["heartbeat_at"],
        "started_at": row["started_at"],
        "completed_at": row["completed_at"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _fetch_row(conn, job_id: str) -> Optional[Any]:
    return conn.execute(select(import_jobs).where(import_jobs.c.id == job_id)).mappings().first()


def create_import_job(
    *,
    owner_id: str,
    file_name: str,
    file_path: str,
    file_size_bytes: Optional[int],
    module: str,
    metadata: Optional[Dict[str, Any]] = None,
    file_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """Create and persist a new import job in status `uploaded`."""
    schema = get_module_schema(module)
    ensure_import_jobs_table()
    job_id = str(uuid.uuid4())
    now = utcnow()
    job_metadata = dict(metadata or {})

    values = {
        "id": job_id,
        "owner_id": owner_id,
        "file_name": file_name,
        "file_path": file_path,
        "file_size_bytes": file_size_bytes,
        "file_hash": file_hash,
        "module": schema.name,
        "import_type": job_metadata.get("importType"),
        "metadata": job_metadata,
        "status": UPLOADED,
        "processed_rows": 0,
        "success_count": 0,
        "duplicate_count": 0,
        "error_count": 0,
        "last_processed_offset": 0,
        "current_chunk": 0,
        "chunk_metadata": {},
        "error_log": [],
        "created_at": now,
        "updated_at": now,
    }
    with get_engine().begin() as conn:
        conn.execute(insert(import_jobs), values)
        row = _fetch_row(conn, job_id)

    logger.info("Created import job %s (%s, module=%s, owner=%s)", job_id, file_name, schema.name, owner_id)
    return _row_to_job(row)


def get_import_job(job_id: str) -> Optional[Dict[str, Any]]:
    """Return a single import job."""
    ensure_import_jobs_table()
    with get_engine().connect() as conn:
        row = _fetch_row(conn, job_id)
    return _row_to_job(row) if row else None


def require_import_job(job_id: str) -> Dict[str, Any]:
    job = get_import_job(job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def list_import_jobs(
    *,
    owner_id: Optional[str] = None,
    module: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """Job history, newest first, with the total count for pagination."""
    ensure_import_jobs_table()
    conditions = []
    if owner_id:
        conditions.append(import_jobs.c.owner_id == owner_id)
    if module:
        conditions.append(import_jobs.c.module == module)

    stmt = (
        select(import_jobs)
        .where(*conditions)
        .order_by(import_jobs.c.created_at.desc(), import_jobs.c.id.desc())
        .limit(limit)
        .offset(offset)
    )
    count_stmt = select(func.count()).select_from(import_jobs).where(*conditions)
    with get_engine().connect() as conn:
        rows = conn.execute(stmt).mappings().all()
        total = conn.execute(count_stmt).scalar_one()
    return [_row_to_job(row) for row in rows], total


def _check_transition(job_id: str, from_status: Optional[str], to_status: str) -> None:
    if from_status not in ALLOWED_TRANSITIONS or to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise InvalidTransitionError(job_id, from_status, to_status)


def _explain_no_update(
    conn,
    job_id: str,
    from_status: str,
    to_status: str,
    claim_token: Optional[str],
    expected_signal: Any = _ANY_SIGNAL,
) -> Exception:
    row = _fetch_row(conn, job_id)
    if row is None:
        return JobNotFoundError(job_id)
    if claim_token is not None and row["claim_token"] != claim_token:
        return ClaimLostError(job_id)
    if row["status"] == from_status and expected_signal is not _ANY_SIGNAL:
        return ControlSignalChangedError(job_id, expected_signal, row["control_signal"])
    return InvalidTransitionError(job_id, from_status, to_status, current=row["status"])


def transition_status(
    job_id: str,
    from_status: str,
    to_status: str,
    *,
    claim_token: Optional[str] = None,
    error_entry: Optional[Dict[str, Any]] = None,
    expected_signal: Any = _ANY_SIGNAL,
    **fields: Any,
) -> Dict[str, Any]:
    """
    Move a job from `from_status` to `to_status` with a compare-and-set update.

    Extra keyword fields (see TRANSITION_FIELDS) are written in the same
    statement. `error_entry` is appended to the error log regardless of its
    cap so a job failure reason is never dropped.
    When `expected_signal` is given the update also requires the stored
    control_signal to still equal it, so a request written after the caller
    read the job is not overwritten.

    Raises:
        InvalidTransitionError: illegal edge, or the job is no longer in `from_status`
        ClaimLostError: `claim_token` given and no longer held
        ControlSignalChangedError: `expected_signal` given and no longer current
    """
    _check_transition(job_id, from_status, to_status)
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Unsupported transition field(s): {', '.join(sorted(unknown))}")

    ensure_import_jobs_table()
    now = utcnow()
    values: Dict[str, Any] = {"status": to_status, "updated_at": now, **fields}

    conditions = [import_jobs.c.id == job_id, import_jobs.c.status == from_status]
    if claim_token is not None:
        conditions.append(import_jobs.c.claim_token == claim_token)
        values["heartbeat_at"] = now
    if expected_signal is not _ANY_SIGNAL:
        if expected_signal is None:
            conditions.append(import_jobs.c.control_signal.is_(None))
        else:
            conditions.append(import_jobs.c.control_signal == expected_signal)

    with get_engine().begin() as conn:
        if error_entry is not None:
            row = _fetch_row(conn, job_id)
            if row is not None:
                values["error_log"] = list(row["error_log"] or []) + [error_entry]
        result = conn.execute(update(import_jobs).where(and_(*conditions)).values(**values))
        if result.rowcount != 1:
            raise _explain_no_update(conn, job_id, from_status, to_status, claim_token, expected_signal)
        row = _fetch_row(conn, job_id)

    logger.info("Import job %s: %s -> %s", job_id, from_status, to_status)
    return _row_to_job(row)


def _validate_delta(delta: Dict[str, Any]) -> None:
    counts = {name: int(delta.get(name, 0)) for name in ("processed_rows", "success_count", "duplicate_count", "error_count")}
    if any(value < 0 for value in counts.values()):
        raise ValueError(f"Checkpoint counters must not decrease: {counts}")
    if counts["success_count"] + counts["duplicate_count"] + counts["error_count"] != counts["processed_rows"]:
        raise ValueError(
            "Checkpoint delta breaks accounting: success + duplicate + error != processed "
            f"({counts})"
        )


def checkpoint(
    job_id: str,
    claim_token: str,
    delta: Dict[str, Any],
    *,
    status: Optional[str] = None,
    max_attempts: Optional[int] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> Dict[str, Any]:
    """
    Durably record one processed chunk in a single transaction.

    `delta` carries processed_rows, success_count, duplicate_count,
    error_count (increments), errors (list of {row, reason}) and
    last_processed_offset (absolute resume position). The chunk counter is
    incremented, the heartbeat refreshed, and the status optionally moved.

    Raises:
        ValueError: the delta breaks the accounting identity
        ClaimLostError: the caller no longer holds the job
        InvalidTransitionError: `status` is not reachable from the current status
        JobFatalError: the write kept failing transiently
    """
    _validate_delta(delta)
    ensure_import_jobs_table()

    def _write() -> Dict[str, Any]:
        with get_engine().begin() as conn:
            stmt = select(import_jobs).where(import_jobs.c.id == job_id).with_for_update()
            row = conn.execute(stmt).mappings().first()
            if row is None:
                raise JobNotFoundError(job_id)
            if row["claim_token"] != claim_token:
                raise ClaimLostError(job_id)
            if status is not None and status != row["status"]:
                _check_transition(job_id, row["status"], status)

            processed = row["processed_rows"] + int(delta.get("processed_rows", 0))
            total_rows = row["total_rows"]
            if total_rows is not None and processed > total_rows:
                total_rows = processed

            error_log = list(row["error_log"] or [])
            room = max(0, settings.import_error_log_limit - len(error_log))
            error_log.extend((delta.get("errors") or [])[:room])

            new_offset = delta.get("last_processed_offset")
            now = utcnow()
            values = {
                "processed_rows": processed,
                "success_count": row["success_count"] + int(delta.get("success_count", 0)),
                "duplicate_count": row["duplicate_count"] + int(delta.get("duplicate_count", 0)),
                "error_count": row["error_count"] + int(delta.get("error_count", 0)),
                "total_rows": total_rows,
                "last_processed_offset": row["last_processed_offset"] if new_offset is None else new_offset,
                "current_chunk": row["current_chunk"] + 1,
                "error_log": error_log,
                "heartbeat_at": now,
                "updated_at": now,
            }
            if status is not None:
                values["status"] = status

            conn.execute(
                update(import_jobs)
                .where(import_jobs.c.id == job_id, import_jobs.c.claim_token == claim_token)
                .values(**values)
            )
            return _row_to_job(_fetch_row(conn, job_id))

    retry_kwargs = {"sleep": sleep} if sleep is not None else {}
    try:
        return call_with_backoff(
            _write,
            max_attempts=max_attempts or settings.import_persist_max_attempts,
            is_transient=is_transient_error,
            base_delay=settings.import_retry_base_delay_seconds,
            max_delay=settings.import_retry_max_delay_seconds,
            description=f"Checkpoint for job {job_id}",
            **retry_kwargs,
        )
    except RetryExhaustedError as exc:
        raise JobFatalError(f"Checkpoint write failed after {exc.attempts} attempts: {exc.last_error}") from exc


def claim_import_job(job_id: str, token: str, stale_after: Optional[float] = None) -> Optional[Dict[str, Any]]:
    """
    Take the single-writer claim on a non-terminal job.

    Succeeds when the job is unclaimed, already held by `token`, or held by a
    worker whose heartbeat is older than `stale_after` seconds. Returns the
    claimed job, or None.
    """
    ensure_import_jobs_table()
    stale_after = settings.import_claim_stale_seconds if stale_after is None else stale_after
    now = utcnow()
    cutoff = now - timedelta(seconds=stale_after)

    stmt = (
        update(import_jobs)
        .where(
            import_jobs.c.id == job_id,
            import_jobs.c.status.notin_(TERMINAL_STATUSES),
            or_(
                import_jobs.c.claim_token.is_(None),
                import_jobs.c.claim_token == token,
                import_jobs.c.heartbeat_at.is_(None),
                import_jobs.c.heartbeat_at < cutoff,
            ),
        )
        .values(claim_token=token, heartbeat_at=now, updated_at=now)
    )
    with get_engine().begin() as conn:
        previous = _fetch_row(conn, job_id)
        result = conn.execute(stmt)
        if result.rowcount != 1:
            return None
        row = _fetch_row(conn, job_id)

    if previous is not None and previous["claim_token"] not in (None, token):
        logger.warning(
            "Import job %s: took over stale claim (last heartbeat %s)", job_id, previous["heartbeat_at"]
        )
    return _row_to_job(row)


def release_import_job(job_id: str, token: str) -> bool:
    """Drop the claim if still held by `token`."""
    ensure_import_jobs_table()
    stmt = (
        update(import_jobs)
        .where(import_jobs.c.id == job_id, import_jobs.c.claim_token == token)
        .values(claim_token=None, updated_at=utcnow())
    )
    with get_engine().begin() as conn:
        return conn.execute(stmt).rowcount == 1


def heartbeat(job_id: str, token: str) -> bool:
    """Refresh the heartbeat; False when the claim was lost."""
    ensure_import_jobs_table()
    now = utcnow()
    stmt = (
        update(import_jobs)
        .where(import_jobs.c.id == job_id, import_jobs.c.claim_token == token)
        .values(heartbeat_at=now, updated_at=now)
    )
    with get_engine().begin() as conn:
        return conn.execute(stmt).rowcount == 1


def request_control(job_id: str, action: str) -> Dict[str, Any]:
    """
    Record a pause/resume/cancel request. The supervisor acts on it at the
    next chunk boundary; the status is never written here.
    """
    action = (action or "").strip().lower()
    if action not in CONTROL_ACTIONS:
        raise ValueError(f"Unknown control action '{action}'. Expected one of: {', '.join(sorted(CONTROL_ACTIONS))}")

    ensure_import_jobs_table()
    with get_engine().begin() as conn:
        row = _fetch_row(conn, job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        if row["status"] in TERMINAL_STATUSES:
            raise InvalidTransitionError(job_id, row["status"], action, current=row["status"])
        conn.execute(
            update(import_jobs)
            .where(import_jobs.c.id == job_id)
            .values(control_signal=action, updated_at=utcnow())
        )
        row = _fetch_row(conn, job_id)

    logger.info("Import job %s: %s requested", job_id, action)
    return _row_to_job(row)


def delete_import_job(job_id: str) -> Dict[str, Any]:
    """Delete a finished job record. Imported rows are kept."""
    ensure_import_jobs_table()
    with get_engine().begin() as conn:
        row = _fetch_row(conn, job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        if row["status"] not in TERMINAL_STATUSES:
            raise JobNotDeletableError(job_id, row["status"])
        conn.execute(
            delete(import_jobs).where(import_jobs.c.id == job_id, import_jobs.c.status.in_(TERMINAL_STATUSES))
        )
    logger.info("Deleted import job %s", job_id)
    return _row_to_job(row)


def find_completed_import_by_hash(file_hash: str, module: str) -> Optional[Dict[str, Any]]:
    """Latest successful import of the same file content into the module."""
    ensure_import_jobs_table()
    stmt = (
        select(import_jobs)
        .where(
            import_jobs.c.file_hash == file_hash,
            import_jobs.c.module == module,
            import_jobs.c.status == COMPLETED,
        )
        .order_by(import_jobs.c.completed_at.desc())
        .limit(1)
    )
    with get_engine().connect() as conn:
        row = conn.execute(stmt).mappings().first()
    return _row_to_job(row) if row else None


def find_stranded_jobs(
    *,
    stale_after: Optional[float] = None,
    uploaded_grace: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Jobs nobody is making progress on: `uploaded` past the grace period,
    active with a stale or missing heartbeat, or paused with a pending
    resume/cancel that no worker picked up.
    """
    ensure_import_jobs_table()
    now = utcnow()
    stale_cutoff = now - timedelta(seconds=settings.import_claim_stale_seconds if stale_after is None else stale_after)
    uploaded_cutoff = now - timedelta(
        seconds=settings.import_uploaded_grace_seconds if uploaded_grace is None else uploaded_grace
    )
    unclaimed_or_stale = or_(
        import_jobs.c.claim_token.is_(None),
        import_jobs.c.heartbeat_at.is_(None),
        import_jobs.c.heartbeat_at < stale_cutoff,
    )
    stmt = (
        select(import_jobs)
        .where(
            or_(
                and_(import_jobs.c.status == UPLOADED, import_jobs.c.created_at < uploaded_cutoff, unclaimed_or_stale),
                and_(import_jobs.c.status.in_(ACTIVE_STATUSES), unclaimed_or_stale),
                and_(
                    import_jobs.c.status == PAUSED,
                    import_jobs.c.control_signal.in_(("resume", "cancel")),
                    import_jobs.c.updated_at < uploaded_cutoff,
                    unclaimed_or_stale,
                ),
            )
        )
        .order_by(import_jobs.c.created_at)
    )
    with get_engine().connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [_row_to_job(row) for row in rows]
