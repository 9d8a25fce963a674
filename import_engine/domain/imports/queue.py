"""
Durable at-least-once queue of processing triggers.

A task is leased by a worker for a bounded time and acknowledged once its
supervisor returns. A worker that dies holding a lease simply lets it expire
and the task is delivered again; the supervisor's claim token makes the
redelivery harmless.
"""
import logging
import threading
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Table, Text, and_, insert, or_, select, update

from import_engine.core.config import settings
from import_engine.db.session import get_engine, metadata
from import_engine.utils.date import utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
LEASED = "leased"
ACKED = "acked"

import_tasks = Table(
    "import_tasks",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("job_id", String(36), nullable=False, index=True),
    Column("status", String(16), nullable=False, index=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("available_at", DateTime, nullable=False),
    Column("lease_token", String(36)),
    Column("leased_until", DateTime),
    Column("last_error", Text),
    Column("created_at", DateTime, nullable=False),
    Column("acked_at", DateTime),
)

_table_initialized = False
_table_init_lock = threading.Lock()


def ensure_import_tasks_table() -> None:
    """Create the import_tasks table on-demand."""
    global _table_initialized
    if _table_initialized:
        return

    with _table_init_lock:
        if _table_initialized:
            return
        metadata.create_all(get_engine(), tables=[import_tasks], checkfirst=True)
        _table_initialized = True


def _reset_table_flag() -> None:
    global _table_initialized
    with _table_init_lock:
        _table_initialized = False


def _row_to_task(row: Any) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "job_id": row["job_id"],
        "status": row["status"],
        "attempts": row["attempts"],
        "available_at": row["available_at"],
        "lease_token": row["lease_token"],
        "leased_until": row["leased_until"],
        "last_error": row["last_error"],
        "created_at": row["created_at"],
        "acked_at": row["acked_at"],
    }


def enqueue_import_task(job_id: str, *, delay_seconds: float = 0) -> Dict[str, Any]:
    """Queue a processing trigger for a job. Returns the open task if one already exists."""
    ensure_import_tasks_table()
    now = utcnow()
    with get_engine().begin() as conn:
        existing = conn.execute(
            select(import_tasks)
            .where(import_tasks.c.job_id == job_id, import_tasks.c.status.in_((PENDING, LEASED)))
            .limit(1)
        ).mappings().first()
        if existing is not None:
            return _row_to_task(existing)

        task_id = str(uuid.uuid4())
        conn.execute(
            insert(import_tasks),
            {
                "id": task_id,
                "job_id": job_id,
                "status": PENDING,
                "attempts": 0,
                "available_at": now + timedelta(seconds=delay_seconds),
                "created_at": now,
            },
        )
        row = conn.execute(select(import_tasks).where(import_tasks.c.id == task_id)).mappings().first()

    logger.info("Enqueued import task %s for job %s", task_id, job_id)
    return _row_to_task(row)


def _deliverable(now):
    return or_(
        and_(import_tasks.c.status == PENDING, import_tasks.c.available_at <= now),
        and_(import_tasks.c.status == LEASED, import_tasks.c.leased_until < now),
    )


def lease_import_tasks(limit: int, *, lease_seconds: Optional[float] = None) -> List[Dict[str, Any]]:
    """
    Lease up to `limit` deliverable tasks: pending ones that are due and
    leased ones whose lease expired.
    """
    if limit <= 0:
        return []
    ensure_import_tasks_table()
    lease_seconds = settings.import_task_lease_seconds if lease_seconds is None else lease_seconds
    now = utcnow()
    leased: List[Dict[str, Any]] = []

    with get_engine().begin() as conn:
        candidates = conn.execute(
            select(import_tasks.c.id).where(_deliverable(now)).order_by(import_tasks.c.available_at).limit(limit)
        ).scalars().all()

        for task_id in candidates:
            token = str(uuid.uuid4())
            result = conn.execute(
                update(import_tasks)
                .where(import_tasks.c.id == task_id, _deliverable(now))
                .values(
                    status=LEASED,
                    lease_token=token,
                    leased_until=now + timedelta(seconds=lease_seconds),
                    attempts=import_tasks.c.attempts + 1,
                )
            )
            if result.rowcount == 1:
                row = conn.execute(select(import_tasks).where(import_tasks.c.id == task_id)).mappings().first()
                leased.append(_row_to_task(row))

    for task in leased:
        if task["attempts"] > 1:
            logger.warning("Redelivering import task %s for job %s (attempt %d)", task["id"], task["job_id"], task["attempts"])
    return leased


def ack_import_task(task_id: str, token: str) -> bool:
    """Mark a leased task done. False if the lease was lost in the meantime."""
    ensure_import_tasks_table()
    with get_engine().begin() as conn:
        result = conn.execute(
            update(import_tasks)
            .where(import_tasks.c.id == task_id, import_tasks.c.lease_token == token, import_tasks.c.status == LEASED)
            .values(status=ACKED, acked_at=utcnow(), lease_token=None, leased_until=None)
        )
    return result.rowcount == 1


def retry_import_task(task_id: str, token: str, error: str, *, delay_seconds: float = 0) -> bool:
    """Hand a leased task back to the queue after a failure."""
    ensure_import_tasks_table()
    now = utcnow()
    with get_engine().begin() as conn:
        result = conn.execute(
            update(import_tasks)
            .where(import_tasks.c.id == task_id, import_tasks.c.lease_token == token, import_tasks.c.status == LEASED)
            .values(
                status=PENDING,
                available_at=now + timedelta(seconds=delay_seconds),
                lease_token=None,
                leased_until=None,
                last_error=(error or "")[:2000],
            )
        )
    return result.rowcount == 1


def list_import_tasks(job_id: str) -> List[Dict[str, Any]]:
    ensure_import_tasks_table()
    stmt = select(import_tasks).where(import_tasks.c.job_id == job_id).order_by(import_tasks.c.created_at)
    with get_engine().connect() as conn:
        return [_row_to_task(row) for row in conn.execute(stmt).mappings().all()]
