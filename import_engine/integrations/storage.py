"""
S3-compatible storage integration for uploaded import files.

Works with AWS S3, Backblaze B2, MinIO and Wasabi through boto3. A "local"
provider backed by a directory serves development and tests.

Imports never buffer a whole file: uploads go through `upload_fileobj`
(multipart under the hood) and reads are streamed, optionally starting at a
byte offset with an HTTP range request so a resumed job does not re-read the
part of the file it already processed.
"""
import logging
import os
import shutil
import tempfile
from typing import Any, BinaryIO, Dict

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from import_engine.core.config import settings

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


def _is_local() -> bool:
    return settings.storage_provider.lower() == "local"


def _local_path(file_path: str) -> str:
    root = os.path.abspath(settings.storage_local_root)
    full_path = os.path.abspath(os.path.join(root, file_path))
    if os.path.commonpath([root, full_path]) != root:
        raise StorageError(f"Invalid storage path: {file_path}")
    return full_path


def get_storage_client():
    """
    Get S3-compatible storage client.

    Returns:
        boto3 S3 client configured for the storage provider

    Raises:
        ValueError: If storage configuration is incomplete
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise ValueError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    config = Config(
        signature_version='s3v4',
        retries={'max_attempts': settings.storage_max_retries, 'mode': 'standard'}
    )

    client_kwargs = {
        'service_name': 's3',
        'aws_access_key_id': settings.storage_access_key_id,
        'aws_secret_access_key': settings.storage_secret_access_key,
        'config': config,
    }

    # Add endpoint URL for non-AWS providers (B2, MinIO, etc.)
    if settings.storage_endpoint_url:
        client_kwargs['endpoint_url'] = settings.storage_endpoint_url

    if settings.storage_region:
        client_kwargs['region_name'] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error("Failed to create storage client: %s", e)
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}") from e


def upload_fileobj(fileobj: BinaryIO, file_path: str) -> Dict[str, Any]:
    """
    Stream a file object into storage at `file_path`.

    Returns:
        Dictionary with file_path and size (bytes written).

    Raises:
        StorageUploadError: If upload fails
    """
    if _is_local():
        target = _local_path(file_path)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as out:
                shutil.copyfileobj(fileobj, out, settings.storage_read_block_bytes)
        except OSError as e:
            raise StorageUploadError(f"Upload failed: {str(e)}") from e
        return {"file_path": file_path, "size": os.path.getsize(target)}

    try:
        client = get_storage_client()
        client.upload_fileobj(fileobj, settings.storage_bucket_name, file_path)
        head = client.head_object(Bucket=settings.storage_bucket_name, Key=file_path)
        return {"file_path": file_path, "size": head.get('ContentLength', 0)}
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        logger.error("Storage upload failed: %s - %s", error_code, e)
        raise StorageUploadError(f"Upload failed: {str(e)}") from e
    except BotoCoreError as e:
        logger.error("Unexpected error during upload: %s", e)
        raise StorageUploadError(f"Upload failed: {str(e)}") from e


def open_stream(file_path: str, start: int = 0) -> BinaryIO:
    """
    Open a binary, forward-only stream over a stored file, starting at byte `start`.

    The caller owns the stream and must close it.

    Raises:
        StorageDownloadError: If the file cannot be opened
    """
    if _is_local():
        try:
            handle = open(_local_path(file_path), "rb")
        except FileNotFoundError as e:
            raise StorageDownloadError(f"File not found: {file_path}") from e
        except OSError as e:
            raise StorageDownloadError(f"Download failed: {str(e)}") from e
        if start:
            handle.seek(start)
        return handle

    params = {'Bucket': settings.storage_bucket_name, 'Key': file_path}
    if start:
        params['Range'] = f"bytes={start}-"
    try:
        response = get_storage_client().get_object(**params)
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        if error_code == 'NoSuchKey':
            raise StorageDownloadError(f"File not found: {file_path}") from e
        if error_code == 'InvalidRange':
            # Resuming exactly at end of file
            return _EmptyStream()
        logger.error("Storage download failed: %s - %s", error_code, e)
        raise StorageDownloadError(f"Download failed: {str(e)}") from e
    except BotoCoreError as e:
        logger.error("Unexpected error during download: %s", e)
        raise StorageDownloadError(f"Download failed: {str(e)}") from e
    return response['Body']


class _EmptyStream:
    def read(self, size: int = -1) -> bytes:
        return b""

    def close(self) -> None:
        return None


def download_to_temp(file_path: str, suffix: str = "") -> str:
    """
    Copy a stored file to a local temporary file and return its path.

    Spreadsheet containers need random access. The caller removes the file.
    """
    fd, temp_path = tempfile.mkstemp(suffix=suffix, prefix="import-")
    try:
        with os.fdopen(fd, "wb") as out:
            if _is_local():
                stream = open_stream(file_path)
                try:
                    shutil.copyfileobj(stream, out, settings.storage_read_block_bytes)
                finally:
                    stream.close()
            else:
                get_storage_client().download_fileobj(settings.storage_bucket_name, file_path, out)
    except (ClientError, BotoCoreError, OSError) as e:
        os.remove(temp_path)
        raise StorageDownloadError(f"Download failed: {str(e)}") from e
    except StorageError:
        os.remove(temp_path)
        raise
    return temp_path


def delete_file(file_path: str) -> bool:
    """
    Delete a file from storage.

    Returns:
        True if deletion was successful, False otherwise
    """
    if _is_local():
        try:
            os.remove(_local_path(file_path))
            return True
        except OSError as e:
            logger.error("Error deleting file from storage: %s", e)
            return False

    try:
        get_storage_client().delete_object(Bucket=settings.storage_bucket_name, Key=file_path)
        return True
    except (ClientError, BotoCoreError) as e:
        logger.error("Error deleting file from storage: %s", e)
        return False


def file_exists(file_path: str) -> bool:
    """Check if a file exists in storage."""
    if _is_local():
        return os.path.isfile(_local_path(file_path))

    try:
        get_storage_client().head_object(Bucket=settings.storage_bucket_name, Key=file_path)
        return True
    except ClientError as e:
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        if error_code in ('404', 'NoSuchKey'):
            return False
        logger.error("Error checking file existence: %s", e)
        raise StorageError(f"Failed to check file: {str(e)}") from e
