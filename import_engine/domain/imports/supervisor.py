"""
End-to-end orchestration of one import job.

The supervisor claims a job, reads the header once, then loops
parser -> chunk processor -> checkpoint until the file is exhausted or a
pause/cancel signal is seen at a chunk boundary. Whatever happens, the job is
left either terminal or resumable from its last checkpoint, and the claim is
released on the way out.
"""
import csv
import logging
import time
import uuid
import zipfile
from itertools import islice
from typing import Any, Callable, Dict, Optional

from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.exc import SQLAlchemyError

from import_engine.core.config import settings
from import_engine.core.logging_config import job_context
from import_engine.domain.imports import jobs as job_store
from import_engine.domain.imports.chunks import ChunkProcessor
from import_engine.domain.imports.dedup import DedupIndex
from import_engine.domain.imports.errors import (
    ClaimLostError,
    ControlSignalChangedError,
    ImportEngineError,
    JobFatalError,
    SchemaError,
    UnknownModuleError,
)
from import_engine.domain.imports.modules import get_module_schema, resolve_columns
from import_engine.domain.imports.parser import RowParser, detect_format
from import_engine.integrations.storage import StorageError
from import_engine.utils.date import utcnow

logger = logging.getLogger(__name__)

CANCELLED_REASON = "Import cancelled by user"

# Failures reading the source file. Any of these ends the job.
SOURCE_ERRORS = (StorageError, csv.Error, zipfile.BadZipFile, InvalidFileException, OSError)


class ImportSupervisor:
    """Drives one job. Create a new instance per run."""

    def __init__(
        self,
        job_id: str,
        *,
        chunk_size: Optional[int] = None,
        claim_stale_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.job_id = job_id
        self.chunk_size = chunk_size or settings.import_chunk_size
        self.claim_stale_seconds = (
            settings.import_claim_stale_seconds if claim_stale_seconds is None else claim_stale_seconds
        )
        self.claim_token = uuid.uuid4().hex
        self._sleep = sleep
        # Long reads refresh the claim well before it could be seen as stale
        self._heartbeat_interval = self.claim_stale_seconds / 4
        self._last_heartbeat = time.monotonic()
        self._parser: Optional[RowParser] = None

    def run(self) -> Optional[Dict[str, Any]]:
        """
        Process the job as far as it can go now.

        Returns the job as left by this run, or None when the job could not be
        claimed (already held by a live worker, terminal, or missing).
        """
        with job_context(self.job_id):
            return self._run()

    def _run(self) -> Optional[Dict[str, Any]]:
        job = job_store.claim_import_job(self.job_id, self.claim_token, self.claim_stale_seconds)
        if job is None:
            logger.info("Import job %s not claimable (held elsewhere or finished); skipping", self.job_id)
            return None

        try:
            return self._drive(job)
        except ClaimLostError:
            logger.warning("Import job %s: claim lost to another worker; stopping without further writes", self.job_id)
            return job_store.get_import_job(self.job_id)
        except (JobFatalError, SchemaError) as exc:
            logger.error("Import job %s failed: %s", self.job_id, exc)
            return self._fail(str(exc))
        except Exception as exc:
            logger.exception("Import job %s: unexpected error", self.job_id)
            return self._fail(f"Unexpected error: {exc}")
        finally:
            if self._parser is not None:
                self._parser.close()
            self._release()

    def _release(self) -> None:
        try:
            job_store.release_import_job(self.job_id, self.claim_token)
        except SQLAlchemyError:
            # Claim expires through the stale heartbeat instead
            logger.exception("Import job %s: could not release claim", self.job_id)

    def _drive(self, job: Dict[str, Any]) -> Dict[str, Any]:
        while True:
            status = job["status"]
            signal = job["control_signal"]

            if signal == "cancel":
                return self._fail(CANCELLED_REASON)

            if status == job_store.PAUSED:
                if signal != "resume":
                    logger.info("Import job %s is paused; waiting for a resume request", self.job_id)
                    return job
                try:
                    job = self._transition(
                        job_store.PAUSED, job_store.PROCESSING, control_signal=None, expected_signal="resume"
                    )
                except ControlSignalChangedError:
                    # A newer request replaced the resume; act on that one
                    job = job_store.require_import_job(self.job_id)
                    continue
                logger.info("Import job %s resumed at row %d", self.job_id, job["processed_rows"] + 1)
            elif status == job_store.UPLOADED:
                job = self._start(job)

            return self._process(job)

    def _transition(self, from_status: str, to_status: str, **fields: Any) -> Dict[str, Any]:
        return job_store.transition_status(
            self.job_id, from_status, to_status, claim_token=self.claim_token, **fields
        )

    def _keepalive(self) -> None:
        """Refresh the claim during long reads, at most once per heartbeat interval."""
        now = time.monotonic()
        if now - self._last_heartbeat < self._heartbeat_interval:
            return
        self._last_heartbeat = now
        if not job_store.heartbeat(self.job_id, self.claim_token):
            raise ClaimLostError(self.job_id)

    def _parser_for(self, file_path: str, file_format: str) -> RowParser:
        if self._parser is None:
            self._parser = RowParser(file_path, file_format, keepalive=self._keepalive)
        return self._parser

    def _start(self, job: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve the header and move uploaded -> processing. Schema problems fail fast."""
        try:
            schema = get_module_schema(job["module"])
            file_format = detect_format(job["file_name"])
        except (UnknownModuleError, ValueError) as exc:
            raise JobFatalError(str(exc)) from exc

        parser = self._parser_for(job["file_path"], file_format)
        try:
            header = parser.read_header()
        except SOURCE_ERRORS as exc:
            raise JobFatalError(f"Source file unreadable: {exc}") from exc

        column_map = resolve_columns(schema, header.headers)
        self._keepalive()

        total_rows = None
        if settings.import_precount_rows:
            try:
                total_rows = parser.count_rows(header.data_offset, delimiter=header.delimiter)
            except SOURCE_ERRORS as exc:
                # Advisory only; progress falls back to counts without a percentage
                logger.warning("Import job %s: row pre-count failed: %s", self.job_id, exc)

        chunk_metadata = {
            "format": file_format,
            "headers": header.headers,
            "column_map": column_map,
            "delimiter": header.delimiter,
            "encoding": header.encoding,
            "data_offset": header.data_offset,
            "estimated_rows": total_rows,
        }
        logger.info(
            "Import job %s: %s file, columns %s, ~%s row(s)",
            self.job_id,
            file_format,
            column_map,
            total_rows if total_rows is not None else "unknown",
        )
        return self._transition(
            job_store.UPLOADED,
            job_store.PROCESSING,
            total_rows=total_rows,
            chunk_metadata=chunk_metadata,
            last_processed_offset=header.data_offset,
            started_at=utcnow(),
        )

    def _process(self, job: Dict[str, Any]) -> Dict[str, Any]:
        meta = job["chunk_metadata"]
        schema = get_module_schema(job["module"])
        column_map = {name: int(index) for name, index in meta["column_map"].items()}
        parser = self._parser_for(job["file_path"], meta["format"])
        processor = ChunkProcessor(
            schema,
            column_map,
            DedupIndex(schema.name, self.job_id),
            job_id=self.job_id,
            sleep=self._sleep,
        )

        rows = parser.rows(
            job["last_processed_offset"],
            start_row_number=job["processed_rows"] + 1,
            delimiter=meta.get("delimiter"),
        )
        try:
            while True:
                current = job_store.require_import_job(self.job_id)
                if current["claim_token"] != self.claim_token:
                    raise ClaimLostError(self.job_id)
                status = current["status"]

                if current["control_signal"] == "cancel":
                    return self._fail(CANCELLED_REASON)
                if current["control_signal"] == "pause":
                    try:
                        paused = self._transition(
                            status, job_store.PAUSED, control_signal=None, expected_signal="pause"
                        )
                    except ControlSignalChangedError:
                        # Re-read and honor whatever replaced the pause request
                        continue
                    logger.info("Import job %s paused after %d row(s)", self.job_id, paused["processed_rows"])
                    return paused

                try:
                    chunk = list(islice(rows, self.chunk_size))
                except SOURCE_ERRORS as exc:
                    raise JobFatalError(f"Source file unreadable: {exc}") from exc

                if not chunk:
                    return self._complete(current)

                if status == job_store.CHUNK_COMPLETED:
                    self._transition(job_store.CHUNK_COMPLETED, job_store.PROCESSING)

                result = processor.process(chunk)
                delta = result.as_delta()
                delta["last_processed_offset"] = result.next_offset
                job = job_store.checkpoint(
                    self.job_id,
                    self.claim_token,
                    delta,
                    status=job_store.CHUNK_COMPLETED,
                    sleep=self._sleep,
                )
                logger.info(
                    "Import job %s checkpoint %d: processed=%d success=%d duplicates=%d errors=%d",
                    self.job_id,
                    job["current_chunk"],
                    job["processed_rows"],
                    job["success_count"],
                    job["duplicate_count"],
                    job["error_count"],
                )
        finally:
            rows.close()

    def _complete(self, job: Dict[str, Any]) -> Dict[str, Any]:
        estimated = (job["chunk_metadata"] or {}).get("estimated_rows")
        if estimated is not None and estimated != job["processed_rows"]:
            logger.warning(
                "Import job %s: pre-count found %d record(s) but %d row(s) were processed",
                self.job_id,
                estimated,
                job["processed_rows"],
            )
        completed = self._transition(
            job["status"],
            job_store.COMPLETED,
            total_rows=job["processed_rows"],
            completed_at=utcnow(),
            control_signal=None,
        )
        logger.info(
            "Import job %s completed: %d row(s), %d imported, %d duplicate(s), %d rejected",
            self.job_id,
            completed["processed_rows"],
            completed["success_count"],
            completed["duplicate_count"],
            completed["error_count"],
        )
        return completed

    def _fail(self, reason: str) -> Dict[str, Any]:
        """Move the job to failed from whatever non-terminal state it is in."""
        job = job_store.require_import_job(self.job_id)
        if job["status"] in job_store.TERMINAL_STATUSES:
            return job
        try:
            return self._transition(
                job["status"],
                job_store.FAILED,
                failure_reason=reason,
                completed_at=utcnow(),
                control_signal=None,
                error_entry={"row": None, "reason": reason},
            )
        except ImportEngineError:
            logger.exception("Import job %s: could not record failure (%s)", self.job_id, reason)
            raise
