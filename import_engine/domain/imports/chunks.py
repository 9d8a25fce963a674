"""
Chunk processing: validation, dedup and the atomic batch write of one chunk.

This is the only code path that writes to the target dataset. It never
touches the job row; the supervisor turns a ChunkResult into a checkpoint.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from import_engine.core.config import settings
from import_engine.db import records
from import_engine.domain.imports.dedup import DedupIndex, build_dedup_key
from import_engine.domain.imports.errors import JobFatalError, PersistenceError, RowValidationError
from import_engine.domain.imports.modules import ModuleSchema, build_record, validate_record
from import_engine.domain.imports.parser import ImportRow
from import_engine.utils.retry import RetryExhaustedError, call_with_backoff

logger = logging.getLogger(__name__)

ACCEPTED = "accepted"
DUPLICATE = "duplicate"
REJECTED = "rejected"

IN_FILE_DUPLICATE = "Duplicate of an earlier row in this file"


@dataclass
class ChunkResult:
    accepted: List[ImportRow] = field(default_factory=list)
    duplicates: List[ImportRow] = field(default_factory=list)
    rejected: List[ImportRow] = field(default_factory=list)
    next_offset: Optional[int] = None

    @property
    def processed_rows(self) -> int:
        return len(self.accepted) + len(self.duplicates) + len(self.rejected)

    def error_entries(self) -> List[Dict[str, Any]]:
        return [{"row": row.row_number, "reason": row.reason} for row in self.rejected]

    def as_delta(self) -> Dict[str, Any]:
        """Counter delta for JobStore.checkpoint."""
        return {
            "processed_rows": self.processed_rows,
            "success_count": len(self.accepted),
            "duplicate_count": len(self.duplicates),
            "error_count": len(self.rejected),
            "errors": self.error_entries(),
        }


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, PersistenceError) and error.transient


class ChunkProcessor:
    """
    Process chunks for one job run.

    The same DedupIndex must be shared by every chunk of the run so rows
    repeated across chunk boundaries are still caught.
    """

    def __init__(
        self,
        schema: ModuleSchema,
        column_map: Dict[str, int],
        dedup_index: DedupIndex,
        *,
        job_id: str,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.schema = schema
        self.column_map = column_map
        self.index = dedup_index
        self.job_id = job_id
        self.max_attempts = max_attempts or settings.import_persist_max_attempts
        self.base_delay = settings.import_retry_base_delay_seconds if base_delay is None else base_delay
        self.max_delay = settings.import_retry_max_delay_seconds if max_delay is None else max_delay
        self._sleep = sleep

    def process(self, rows: List[ImportRow]) -> ChunkResult:
        result = ChunkResult(next_offset=rows[-1].next_offset if rows else None)

        # 1. structural validation
        valid: List[ImportRow] = []
        for row in rows:
            try:
                self._validate(row)
            except RowValidationError as exc:
                self._mark(row, REJECTED, exc.reason)
                continue
            valid.append(row)

        # 2. dedup keys
        for row in valid:
            row.dedup_key = build_dedup_key(self.schema, row.record)

        # 3. existence check: stored rows, earlier chunks, earlier rows of this chunk
        self._with_retry(lambda: self.index.prefetch([row.dedup_key for row in valid]), "Dedup prefetch")
        candidates: List[ImportRow] = []
        replays: List[ImportRow] = []
        chunk_keys = set()
        # Later rows of this chunk sharing a candidate's key, in file order
        followers: Dict[str, List[ImportRow]] = {}
        for row in valid:
            key = row.dedup_key
            if key in chunk_keys:
                self._mark(row, DUPLICATE, IN_FILE_DUPLICATE)
                followers.setdefault(key, []).append(row)
                continue
            if self.index.is_replay(key, row.row_number):
                replays.append(row)
            elif self.index.lookup(key):
                self._mark(row, DUPLICATE, self._duplicate_reason(key))
                continue
            else:
                candidates.append(row)
            chunk_keys.add(key)

        # 4. persist as one atomic batch
        inserted = self._persist(candidates)
        inserted += self._admit_stand_ins(candidates, followers)
        for row in replays:
            self._mark(row, ACCEPTED)

        # 5. admit keys to the in-flight set
        for row in valid:
            if row.outcome == ACCEPTED:
                self.index.record(row.dedup_key)

        for row in rows:
            if row.outcome == ACCEPTED:
                result.accepted.append(row)
            elif row.outcome == DUPLICATE:
                result.duplicates.append(row)
            else:
                result.rejected.append(row)

        logger.info(
            "Job %s chunk rows %s-%s: accepted=%d (inserted=%d, replayed=%d) duplicates=%d rejected=%d",
            self.job_id,
            rows[0].row_number if rows else "-",
            rows[-1].row_number if rows else "-",
            len(result.accepted),
            inserted,
            len(replays),
            len(result.duplicates),
            len(result.rejected),
        )
        return result

    def _validate(self, row: ImportRow) -> None:
        raw_values = {}
        for name, index in self.column_map.items():
            raw_values[name] = row.values[index] if index < len(row.values) else None
        row.record = build_record(self.schema, self.column_map, row.values)
        reason = validate_record(self.schema, row.record, raw_values)
        if reason:
            raise RowValidationError(row.row_number, reason)

    def _duplicate_reason(self, key: str) -> str:
        if self.index.is_stored(key):
            return "Record already exists"
        return IN_FILE_DUPLICATE

    @staticmethod
    def _mark(row: ImportRow, outcome: str, reason: Optional[str] = None) -> None:
        row.outcome = outcome
        row.reason = reason

    def _with_retry(self, operation: Callable[[], Any], description: str) -> Any:
        try:
            return call_with_backoff(
                operation,
                max_attempts=self.max_attempts,
                is_transient=_is_transient,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                sleep=self._sleep,
                description=f"{description} for job {self.job_id}",
            )
        except RetryExhaustedError as exc:
            raise JobFatalError(
                f"{description} failed after {exc.attempts} attempts: {exc.last_error}"
            ) from exc

    def _persist(self, rows: List[ImportRow]) -> int:
        if not rows:
            return 0
        payload = [self._payload(row) for row in rows]
        try:
            inserted = self._with_retry(
                lambda: records.insert_records(self.schema.name, self.job_id, payload),
                "Batch insert",
            )
        except PersistenceError as exc:
            logger.warning(
                "Job %s: batch insert of %d row(s) rejected by the store (%s); retrying row by row",
                self.job_id,
                len(rows),
                exc,
            )
            return self._persist_rows_individually(rows)
        for row in rows:
            self._mark(row, ACCEPTED)
        return inserted

    def _persist_rows_individually(self, rows: List[ImportRow]) -> int:
        inserted = 0
        for row in rows:
            payload = self._payload(row)
            try:
                self._with_retry(
                    lambda: records.insert_record(self.schema.name, self.job_id, payload),
                    f"Insert of row {row.row_number}",
                )
            except PersistenceError as exc:
                existing = self._with_retry(
                    lambda: records.fetch_existing_keys(self.schema.name, [row.dedup_key]),
                    "Dedup recheck",
                )
                if row.dedup_key in existing:
                    # Admitted by a concurrently running job after our prefetch
                    job_id, row_number = existing[row.dedup_key]
                    self.index.mark_stored(row.dedup_key, job_id, row_number)
                    self._mark(row, DUPLICATE, "Record already exists")
                else:
                    self._mark(row, REJECTED, records.store_reason(exc.__cause__ or exc))
                continue
            self._mark(row, ACCEPTED)
            inserted += 1
        return inserted

    def _admit_stand_ins(self, candidates: List[ImportRow], followers: Dict[str, List[ImportRow]]) -> int:
        """
        Offer a store-rejected candidate's key to its later duplicates in the
        chunk, one at a time, until one of them is stored.
        """
        inserted = 0
        for row in candidates:
            if row.outcome != REJECTED:
                continue
            waiting = followers.get(row.dedup_key, [])
            while waiting:
                stand_in = waiting.pop(0)
                inserted += self._persist_rows_individually([stand_in])
                if stand_in.outcome != REJECTED:
                    logger.info(
                        "Job %s: row %d stored in place of rejected row %d",
                        self.job_id, stand_in.row_number, row.row_number,
                    )
                    break
        return inserted

    @staticmethod
    def _payload(row: ImportRow) -> Dict[str, Any]:
        return {
            "dedup_key": row.dedup_key,
            "source_row_number": row.row_number,
            "payload": row.record,
        }
