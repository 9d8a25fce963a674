"""
Exception taxonomy for the bulk import engine.

Row-level errors are absorbed inside a chunk; chunk and job level errors
propagate to the supervisor, which always leaves the job in a terminal or
resumable state.
"""
from typing import List, Optional


class ImportEngineError(Exception):
    """Base class for all import engine errors."""


class SchemaError(ImportEngineError):
    """Raised when one or more required columns cannot be mapped from the header."""

    def __init__(self, missing_fields: List[str], headers: Optional[List[str]] = None, message: str = None):
        self.missing_fields = list(missing_fields)
        self.headers = list(headers or [])
        self.message = message or (
            "Required column(s) not found in file header: " + ", ".join(self.missing_fields)
        )
        super().__init__(self.message)


class RowValidationError(ImportEngineError):
    """A single row is structurally invalid. Recorded as rejected, never fatal."""

    def __init__(self, row_number: int, reason: str):
        self.row_number = row_number
        self.reason = reason
        super().__init__(f"Row {row_number}: {reason}")


class PersistenceError(ImportEngineError):
    """A write to the target dataset failed."""

    def __init__(self, message: str, *, transient: bool):
        self.transient = transient
        super().__init__(message)


class JobFatalError(ImportEngineError):
    """Unrecoverable failure: the job must move to failed."""


class InvalidTransitionError(ImportEngineError):
    """Illegal job status change. Indicates a supervisor bug."""

    def __init__(self, job_id: str, from_status: Optional[str], to_status: str, current: Optional[str] = None):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        self.current = current
        detail = f"Invalid transition for job {job_id}: {from_status} -> {to_status}"
        if current is not None and current != from_status:
            detail += f" (current status is {current})"
        super().__init__(detail)


class ClaimLostError(ImportEngineError):
    """The supervisor's claim on a job was taken over by another worker."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Claim on import job {job_id} is no longer held by this worker")


class JobNotFoundError(ImportEngineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job {job_id} not found")


class JobNotDeletableError(ImportEngineError):
    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Import job {job_id} is '{status}'; only finished jobs can be deleted")


class UnknownModuleError(ImportEngineError):
    def __init__(self, module: str):
        self.module = module
        super().__init__(f"Unknown import module: {module}")


class FileAlreadyImportedError(ImportEngineError):
    """The same file content was already imported into the module."""

    def __init__(self, file_hash: str, module: str, original_job: Optional[dict] = None):
        self.file_hash = file_hash
        self.module = module
        self.original_job = original_job
        file_name = (original_job or {}).get("file_name")
        suffix = f" (as '{file_name}')" if file_name else ""
        super().__init__(f"File has already been imported into '{module}'{suffix}.")


class UploadRejectedError(ImportEngineError):
    """The uploaded file failed basic checks (extension, size)."""

    def __init__(self, message: str, *, status_code: int = 400):
        self.status_code = status_code
        super().__init__(message)


class ControlSignalChangedError(ImportEngineError):
    """A control request arrived while the supervisor was acting on the previous one."""

    def __init__(self, job_id: str, expected: Optional[str], current: Optional[str]):
        self.job_id = job_id
        self.expected = expected
        self.current = current
        super().__init__(
            f"Control signal of import job {job_id} changed from {expected!r} to {current!r}"
        )
