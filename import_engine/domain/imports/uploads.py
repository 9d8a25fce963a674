"""
Accepting an uploaded spreadsheet: checks, content hash, storage, job creation
and the processing trigger.
"""
import hashlib
import logging
import os
import re
import uuid
from typing import Any, BinaryIO, Dict, Optional, Tuple

from import_engine.core.config import settings
from import_engine.domain.imports.errors import FileAlreadyImportedError, UploadRejectedError
from import_engine.domain.imports.jobs import create_import_job, find_completed_import_by_hash
from import_engine.domain.imports.modules import get_module_schema
from import_engine.domain.imports.parser import SUPPORTED_FORMATS
from import_engine.domain.imports.queue import enqueue_import_task
from import_engine.integrations import storage

logger = logging.getLogger(__name__)

HASH_BLOCK_BYTES = 1024 * 1024


def max_upload_bytes() -> int:
    return settings.upload_max_file_size_mb * 1024 * 1024


def validate_upload_name(file_name: str) -> str:
    """Return the lower-cased extension, rejecting anything but CSV and XLSX."""
    extension = os.path.splitext(file_name or "")[1].lower()
    if extension not in SUPPORTED_FORMATS:
        raise UploadRejectedError(
            f"Unsupported file type '{extension or file_name}'. Only CSV and XLSX files can be imported."
        )
    return extension


def hash_file(fileobj: BinaryIO) -> Tuple[str, int]:
    """
    Stream a seekable file once to get its SHA-256 and size, enforcing the
    upload limit, then rewind it.
    """
    limit = max_upload_bytes()
    digest = hashlib.sha256()
    size = 0
    fileobj.seek(0)
    while True:
        block = fileobj.read(HASH_BLOCK_BYTES)
        if not block:
            break
        size += len(block)
        if size > limit:
            raise UploadRejectedError(
                f"File exceeds the {settings.upload_max_file_size_mb}MB upload limit.", status_code=413
            )
        digest.update(block)
    fileobj.seek(0)
    return digest.hexdigest(), size


def _safe_file_name(file_name: str) -> str:
    base = os.path.basename(file_name or "upload")
    return re.sub(r"[^A-Za-z0-9._-]+", "_", base) or "upload"


def accept_upload(
    fileobj: BinaryIO,
    *,
    file_name: str,
    owner_id: str,
    module: str,
    metadata: Optional[Dict[str, Any]] = None,
    allow_duplicate: bool = False,
) -> Dict[str, Any]:
    """
    Store an uploaded file and create its import job.

    Raises:
        UploadRejectedError: wrong extension or too large
        UnknownModuleError: unknown target module
        FileAlreadyImportedError: same content already imported into the module
    """
    validate_upload_name(file_name)
    schema = get_module_schema(module)
    file_hash, size = hash_file(fileobj)
    if size == 0:
        raise UploadRejectedError("Uploaded file is empty.")

    if not allow_duplicate:
        previous = find_completed_import_by_hash(file_hash, schema.name)
        if previous is not None:
            raise FileAlreadyImportedError(file_hash, schema.name, previous)

    file_path = f"imports/{schema.name}/{uuid.uuid4().hex}/{_safe_file_name(file_name)}"
    storage.upload_fileobj(fileobj, file_path)
    logger.info("Stored upload %s (%d bytes, sha256=%s) at %s", file_name, size, file_hash, file_path)

    job = create_import_job(
        owner_id=owner_id,
        file_name=file_name,
        file_path=file_path,
        file_size_bytes=size,
        module=schema.name,
        metadata=metadata,
        file_hash=file_hash,
    )
    enqueue_import_task(job["id"])
    return job
