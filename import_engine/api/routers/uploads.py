"""
Multipart upload of a spreadsheet straight into a new import job.
"""
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from import_engine.api.routers.jobs import raise_http_error
from import_engine.api.schemas import ImportJobResponse
from import_engine.domain.imports.errors import ImportEngineError
from import_engine.domain.imports.uploads import accept_upload
from import_engine.integrations.storage import StorageError

router = APIRouter(tags=["import-jobs"])


@router.post("/import-jobs/upload", response_model=ImportJobResponse, status_code=201)
def upload_import_file_endpoint(
    file: UploadFile = File(...),
    owner_id: str = Form(...),
    module: str = Form(...),
    import_type: Optional[str] = Form(None),
    allow_duplicate: bool = Form(False),
):
    metadata = {"importType": import_type} if import_type else {}
    try:
        job = accept_upload(
            file.file,
            file_name=file.filename or "",
            owner_id=owner_id,
            module=module,
            metadata=metadata,
            allow_duplicate=allow_duplicate,
        )
    except ImportEngineError as exc:
        raise_http_error(exc)
    except StorageError as exc:
        raise HTTPException(status_code=502, detail=f"Could not store file: {exc}") from exc
    finally:
        file.file.close()
    return ImportJobResponse(success=True, job=job, message="File uploaded; processing queued")
