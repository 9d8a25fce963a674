from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ImportJobCreateRequest(BaseModel):
    """Create a job for a file that is already in storage."""
    owner_id: str = Field(..., min_length=1)
    file_name: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    file_size_bytes: Optional[int] = Field(default=None, ge=0)
    module: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ErrorLogEntry(BaseModel):
    row: Optional[int] = None
    reason: Optional[str] = None


class ImportJobInfo(BaseModel):
    """Full record of an import job."""
    id: str
    owner_id: str
    file_name: str
    file_path: str
    file_size_bytes: Optional[int] = None
    file_hash: Optional[str] = None
    module: str
    import_type: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    status: str
    total_rows: Optional[int] = None
    processed_rows: int = 0
    success_count: int = 0
    duplicate_count: int = 0
    error_count: int = 0
    last_processed_offset: int = 0
    current_chunk: int = 0
    chunk_metadata: Dict[str, Any] = Field(default_factory=dict)
    error_log: List[ErrorLogEntry] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    control_signal: Optional[str] = None
    heartbeat_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ImportJobResponse(BaseModel):
    """Response wrapper for a single import job."""
    success: bool
    job: ImportJobInfo
    message: Optional[str] = None


class ImportJobListResponse(BaseModel):
    """Response wrapper for a list of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class ImportProgressInfo(BaseModel):
    job_id: str
    status: str
    total_rows: Optional[int] = None
    processed_rows: int
    success_count: int
    duplicate_count: int
    error_count: int
    current_chunk: int
    percent: Optional[float] = None
    errors_logged: int
    errors_not_logged: int
    rows_per_second: Optional[float] = None
    eta_seconds: Optional[float] = None
    is_terminal: bool
    failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ImportProgressResponse(BaseModel):
    success: bool
    progress: ImportProgressInfo


class ImportControlRequest(BaseModel):
    action: Literal["pause", "resume", "cancel"]


class ProcessImportResponse(BaseModel):
    success: bool
    job: ImportJobInfo
    task_id: Optional[str] = None
    message: Optional[str] = None


class DeleteImportJobResponse(BaseModel):
    success: bool
    message: str
