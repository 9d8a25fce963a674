"""
Endpoints for creating, triggering, controlling and tracking import jobs.
"""
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query

from import_engine.api.schemas import (
    DeleteImportJobResponse,
    ImportControlRequest,
    ImportJobCreateRequest,
    ImportJobListResponse,
    ImportJobResponse,
    ImportProgressResponse,
    ProcessImportResponse,
)
from import_engine.domain.imports import jobs as job_store
from import_engine.domain.imports.errors import (
    FileAlreadyImportedError,
    ImportEngineError,
    InvalidTransitionError,
    JobNotDeletableError,
    JobNotFoundError,
    UnknownModuleError,
    UploadRejectedError,
)
from import_engine.domain.imports.progress import ProgressReporter
from import_engine.domain.imports.queue import enqueue_import_task
from import_engine.domain.imports.worker import process_job_inline
from import_engine.integrations import storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["import-jobs"])


def raise_http_error(exc: ImportEngineError) -> NoReturn:
    """Translate a domain error into the matching HTTP error."""
    if isinstance(exc, JobNotFoundError):
        raise HTTPException(status_code=404, detail="Job not found") from exc
    if isinstance(exc, (JobNotDeletableError, InvalidTransitionError)):
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if isinstance(exc, FileAlreadyImportedError):
        detail = {"message": str(exc), "file_hash": exc.file_hash}
        if exc.original_job:
            detail["original_job_id"] = exc.original_job["id"]
        raise HTTPException(status_code=409, detail=detail) from exc
    if isinstance(exc, UploadRejectedError):
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    if isinstance(exc, UnknownModuleError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.post("/import-jobs", response_model=ImportJobResponse, status_code=201)
async def create_import_job_endpoint(request: ImportJobCreateRequest):
    if not storage.file_exists(request.file_path):
        raise HTTPException(status_code=400, detail=f"File not found in storage: {request.file_path}")
    try:
        job = job_store.create_import_job(
            owner_id=request.owner_id,
            file_name=request.file_name,
            file_path=request.file_path,
            file_size_bytes=request.file_size_bytes,
            module=request.module,
            metadata=request.metadata,
        )
    except ImportEngineError as exc:
        raise_http_error(exc)
    return ImportJobResponse(success=True, job=job)


@router.post("/import-jobs/{job_id}/process", response_model=ProcessImportResponse)
def process_import_job_endpoint(job_id: str, inline: bool = False):
    """
    Trigger processing. Idempotent: a job that is finished, or already being
    processed, is left alone.
    """
    job = job_store.get_import_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job["status"] in job_store.TERMINAL_STATUSES:
        return ProcessImportResponse(success=True, job=job, message=f"Job already {job['status']}")

    if inline:
        result = process_job_inline(job_id)
        if result is None:
            return ProcessImportResponse(
                success=True, job=job_store.get_import_job(job_id), message="Job is being processed by another worker"
            )
        return ProcessImportResponse(success=True, job=result, message=f"Job is {result['status']}")

    task = enqueue_import_task(job_id)
    return ProcessImportResponse(success=True, job=job, task_id=task["id"], message="Processing queued")


@router.get("/import-jobs/{job_id}", response_model=ImportJobResponse)
async def get_import_job_endpoint(job_id: str):
    job = job_store.get_import_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return ImportJobResponse(success=True, job=job)


@router.get("/import-jobs/{job_id}/progress", response_model=ImportProgressResponse)
async def get_import_progress_endpoint(job_id: str):
    try:
        progress = ProgressReporter().snapshot(job_id)
    except JobNotFoundError as exc:
        raise_http_error(exc)
    return ImportProgressResponse(success=True, progress=progress.to_dict())


@router.post("/import-jobs/{job_id}/control", response_model=ImportJobResponse)
async def control_import_job_endpoint(job_id: str, request: ImportControlRequest):
    try:
        job = job_store.request_control(job_id, request.action)
    except ImportEngineError as exc:
        raise_http_error(exc)

    # A running supervisor sees the signal at its next chunk boundary; idle jobs need a trigger
    if request.action in ("resume", "cancel") and job["status"] in (job_store.PAUSED, job_store.UPLOADED):
        enqueue_import_task(job_id)
    return ImportJobResponse(success=True, job=job, message=f"{request.action} requested")


@router.get("/import-jobs", response_model=ImportJobListResponse)
async def list_import_jobs_endpoint(
    owner_id: Optional[str] = None,
    module: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    jobs, total = job_store.list_import_jobs(owner_id=owner_id, module=module, limit=limit, offset=offset)
    return ImportJobListResponse(
        success=True,
        jobs=jobs,
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.delete("/import-jobs/{job_id}", response_model=DeleteImportJobResponse)
async def delete_import_job_endpoint(job_id: str, delete_file: bool = False):
    try:
        job = job_store.delete_import_job(job_id)
    except ImportEngineError as exc:
        raise_http_error(exc)

    if delete_file and not storage.delete_file(job["file_path"]):
        logger.warning("Import job %s deleted but its file %s could not be removed", job_id, job["file_path"])
    return DeleteImportJobResponse(success=True, message=f"Import job {job_id} deleted")
