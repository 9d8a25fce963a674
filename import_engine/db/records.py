"""
The target dataset: every row accepted by an import, one table for all modules.

Rows are identified per module by their dedup key. The `import_job_id` and
`source_row_number` system columns record which job admitted a row and from
which source row, so a chunk replayed after a crash can recognise its own
earlier writes.
"""
import logging
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import JSON, Column, DateTime, Integer, String, Table, UniqueConstraint, func, insert, select
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from import_engine.db.session import get_engine, metadata
from import_engine.domain.imports.errors import PersistenceError
from import_engine.utils.date import utcnow
from import_engine.utils.serialization import to_json_safe

logger = logging.getLogger(__name__)

# Upper bound of keys per existence query (IN-list size).
EXISTENCE_BATCH_SIZE = 500

imported_records = Table(
    "imported_records",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("module", String(50), nullable=False),
    Column("dedup_key", String(64), nullable=False),
    Column("import_job_id", String(36), nullable=False, index=True),
    Column("source_row_number", Integer),
    Column("payload", JSON, nullable=False),
    Column("imported_at", DateTime, nullable=False),
    UniqueConstraint("module", "dedup_key", name="uq_imported_records_module_key"),
)

_table_initialized = False
_table_init_lock = threading.Lock()


def ensure_imported_records_table() -> None:
    """Create the imported_records table on-demand."""
    global _table_initialized
    if _table_initialized:
        return

    with _table_init_lock:
        if _table_initialized:
            return
        metadata.create_all(get_engine(), tables=[imported_records], checkfirst=True)
        _table_initialized = True
        logger.info("imported_records table ready")


def _reset_table_flag() -> None:
    global _table_initialized
    with _table_init_lock:
        _table_initialized = False


def is_transient_error(error: BaseException) -> bool:
    """True for failures that may succeed when the same write is retried."""
    if isinstance(error, (IntegrityError, DataError)):
        return False
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return isinstance(error, (OperationalError, InterfaceError, PoolTimeoutError, TimeoutError, ConnectionError))


def store_reason(error: BaseException) -> str:
    """First line of the driver's message, suitable for a row rejection reason."""
    origin = getattr(error, "orig", None) or error
    message = str(origin).strip().splitlines()
    return message[0] if message else error.__class__.__name__


def fetch_existing_keys(module: str, keys: Iterable[str]) -> Dict[str, Tuple[str, Optional[int]]]:
    """
    Batched existence check.

    Returns a mapping of every key already stored for the module to the
    (import_job_id, source_row_number) that admitted it.
    """
    ensure_imported_records_table()
    unique_keys = list(dict.fromkeys(k for k in keys if k))
    if not unique_keys:
        return {}

    found: Dict[str, Tuple[str, Optional[int]]] = {}
    try:
        with get_engine().connect() as conn:
            for start in range(0, len(unique_keys), EXISTENCE_BATCH_SIZE):
                batch = unique_keys[start:start + EXISTENCE_BATCH_SIZE]
                stmt = select(
                    imported_records.c.dedup_key,
                    imported_records.c.import_job_id,
                    imported_records.c.source_row_number,
                ).where(
                    imported_records.c.module == module,
                    imported_records.c.dedup_key.in_(batch),
                )
                for row in conn.execute(stmt):
                    found[row.dedup_key] = (row.import_job_id, row.source_row_number)
    except (DBAPIError, PoolTimeoutError, TimeoutError, ConnectionError) as exc:
        raise PersistenceError(
            f"Existence check failed: {store_reason(exc)}", transient=is_transient_error(exc)
        ) from exc
    return found


def _build_values(module: str, job_id: str, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    now = utcnow()
    return [
        {
            "id": str(uuid.uuid4()),
            "module": module,
            "dedup_key": row["dedup_key"],
            "import_job_id": job_id,
            "source_row_number": row.get("source_row_number"),
            "payload": to_json_safe(row.get("payload") or {}),
            "imported_at": now,
        }
        for row in rows
    ]


def insert_records(module: str, job_id: str, rows: Sequence[Dict[str, Any]]) -> int:
    """
    Insert rows as one atomic batch. Each row needs `dedup_key`,
    `source_row_number` and `payload`.

    Raises:
        PersistenceError: the whole batch was rolled back; `transient` tells
            whether retrying the same batch can succeed.
    """
    if not rows:
        return 0
    ensure_imported_records_table()
    values = _build_values(module, job_id, rows)
    try:
        with get_engine().begin() as conn:
            conn.execute(insert(imported_records), values)
    except (DBAPIError, PoolTimeoutError, TimeoutError, ConnectionError) as exc:
        logger.warning("Batch insert into %s failed for job %s: %s", module, job_id, exc)
        raise PersistenceError(
            f"Batch insert of {len(values)} row(s) failed: {store_reason(exc)}",
            transient=is_transient_error(exc),
        ) from exc
    return len(values)


def insert_record(module: str, job_id: str, row: Dict[str, Any]) -> None:
    """Insert a single row. Raises PersistenceError like insert_records."""
    insert_records(module, job_id, [row])


def count_records(module: str, import_job_id: Optional[str] = None) -> int:
    ensure_imported_records_table()
    stmt = select(func.count()).select_from(imported_records).where(imported_records.c.module == module)
    if import_job_id is not None:
        stmt = stmt.where(imported_records.c.import_job_id == import_job_id)
    with get_engine().connect() as conn:
        return conn.execute(stmt).scalar_one()


def list_dedup_keys(module: str) -> List[str]:
    ensure_imported_records_table()
    stmt = select(imported_records.c.dedup_key).where(imported_records.c.module == module)
    with get_engine().connect() as conn:
        return [row.dedup_key for row in conn.execute(stmt)]
