# backend/app/services/minio_client.py
"""
Object storage for bulk uploads: archived source files and error reports.

Storage is an audit convenience, not part of the job contract: the job keeps
its own row snapshot, so callers treat every helper here as best-effort.
"""
import io
import uuid
import logging
from typing import Optional

from minio import Minio

from backend.app.config import settings, BULK_INPUT_PREFIX, BULK_REPORT_PREFIX

logger = logging.getLogger(__name__)

MINIO_BUCKET = settings.MINIO_BUCKET

_client: Optional[Minio] = None


def client() -> Minio:
    global _client
    if _client is None:
        _client = Minio(
            settings.MINIO_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=bool(settings.MINIO_SECURE),
        )
    return _client


def ensure_bucket(bucket_name: Optional[str] = None):
    """
    Create bucket if missing. Safe to call at startup.
    """
    bucket_name = bucket_name or MINIO_BUCKET
    c = client()
    if not c.bucket_exists(bucket_name):
        c.make_bucket(bucket_name)
        logger.info("Created minio bucket: %s", bucket_name)


def put_bytes(object_name: str, data: bytes, content_type: str = "application/octet-stream") -> str:
    c = client()
    ensure_bucket()
    c.put_object(
        MINIO_BUCKET,
        object_name,
        io.BytesIO(data),
        length=len(data),
        content_type=content_type,
    )
    return f"s3://{MINIO_BUCKET}/{object_name}"


# ---------------------------------------------------------
# Bulk helpers (best-effort)
# ---------------------------------------------------------
def archive_upload(user_id: int, filename: str, content: bytes, content_type: Optional[str]) -> Optional[str]:
    """Store the uploaded file; returns its s3:// path or None when storage is down."""
    if not settings.BULK_ARCHIVE_UPLOADS:
        return None
    safe_name = (filename or "upload").replace("/", "_")
    object_name = f"{BULK_INPUT_PREFIX}/{user_id}-{uuid.uuid4().hex[:12]}-{safe_name}"
    try:
        return put_bytes(object_name, content, content_type=content_type or "application/octet-stream")
    except Exception as e:
        logger.warning("archive of %s skipped: %s", safe_name, e)
        return None


def store_error_report(job_id: str, csv_bytes: bytes) -> Optional[str]:
    if not settings.BULK_ARCHIVE_UPLOADS:
        return None
    object_name = f"{BULK_REPORT_PREFIX}/{job_id}-errors.csv"
    try:
        return put_bytes(object_name, csv_bytes, content_type="text/csv")
    except Exception as e:
        logger.warning("error report upload for %s skipped: %s", job_id, e)
        return None
