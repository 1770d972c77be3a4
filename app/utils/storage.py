"""Blob storage helpers for profile photos (Google Cloud Storage)."""

import uuid
from typing import Optional
from urllib.parse import quote

import structlog
from google.api_core.exceptions import NotFound
from google.cloud import storage as gcs_storage

from app.config import get_settings

logger = structlog.get_logger("amora.storage")

DOWNLOAD_URL_TEMPLATE = "https://firebasestorage.googleapis.com/v0/b/{bucket}/o/{path}?alt=media&token={token}"


def get_storage_client():
    return gcs_storage.Client(project=get_settings().GCP_PROJECT_ID)


def get_bucket():
    client = get_storage_client()
    return client.bucket(get_settings().GCS_BUCKET_NAME)


def photo_path(uid: str, photo_id: str) -> str:
    return f"users/{uid}/photos/{photo_id}.jpg"


def download_url(bucket_name: str, path: str, token: str) -> str:
    """Token-bearing URL the mobile clients can load without credentials."""
    return DOWNLOAD_URL_TEMPLATE.format(
        bucket=bucket_name, path=quote(path, safe=""), token=token
    )


def upload_file(
    path: str,
    file_bytes: bytes,
    content_type: str = "image/jpeg",
    token: Optional[str] = None,
) -> str:
    """Upload file to GCS bucket. Returns its public download URL."""
    bucket = get_bucket()
    blob = bucket.blob(path)
    token = token or uuid.uuid4().hex
    blob.metadata = {"firebaseStorageDownloadTokens": token}
    blob.upload_from_string(file_bytes, content_type=content_type)
    logger.info("blob_uploaded", path=path, size=len(file_bytes))
    return download_url(bucket.name, path, token)


def delete_file(path: str) -> bool:
    """Delete a file from GCS bucket. Returns False when it was already gone."""
    bucket = get_bucket()
    blob = bucket.blob(path)
    try:
        blob.delete()
    except NotFound:
        logger.info("blob_already_deleted", path=path)
        return False
    return True
