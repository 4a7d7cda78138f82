"""
Google Cloud Storage blob store.
Holds original PDFs, stamped PDFs and signed artifacts.
"""
import logging
from typing import Optional
from urllib.parse import unquote

from google.cloud import storage

from app.config import get_settings, Settings

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def normalize_storage_path(ref: str) -> str:
    """
    Turn a stored file reference into an object path.

    Rows written by the web app may hold a full public URL
    (https://.../storage/v1/object/public/documents/{user}/{file}?t=...);
    newer rows hold the bare object path.

    Raises ValueError for empty refs, path traversal or absolute paths.
    """
    if not ref:
        raise ValueError("Storage path cannot be empty")

    path = ref
    if "://" in path:
        if "/documents/" not in path:
            raise ValueError(f"Unrecognized storage URL: {ref}")
        path = path.split("/documents/")[-1]
    path = unquote(path.split("?")[0])

    if ".." in path:
        raise ValueError("Path traversal not allowed")
    if path.startswith("/"):
        raise ValueError("Absolute paths not allowed")

    if path != ref:
        logger.debug(f"[PATH NORMALIZED] {ref} -> {path}")
    return path


class BlobNotFoundError(FileNotFoundError):
    pass


class BlobStore:
    """Google Cloud Storage client wrapper."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[storage.Client] = None
        self._bucket: Optional[storage.Bucket] = None

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    @property
    def bucket(self) -> storage.Bucket:
        if self._bucket is None:
            self._bucket = self.client.bucket(self.settings.gcs_bucket)
        return self._bucket

    def download_bytes(self, ref: str) -> bytes:
        """Download an object. Raises BlobNotFoundError when it does not exist."""
        path = normalize_storage_path(ref)
        blob = self.bucket.blob(path)
        if not blob.exists():
            raise BlobNotFoundError(f"File not found in GCS: {path}")
        data = blob.download_as_bytes()
        logger.info(f"Downloaded {path} ({len(data)} bytes)")
        return data

    def upload_bytes(
        self,
        path: str,
        data: bytes,
        content_type: str = PDF_CONTENT_TYPE,
    ) -> str:
        """Upload (or overwrite) an object and return its path."""
        path = normalize_storage_path(path)
        blob = self.bucket.blob(path)
        blob.upload_from_string(data, content_type=content_type)
        logger.info(f"Uploaded {len(data)} bytes to {path}")
        return path

    def exists(self, ref: str) -> bool:
        """Check if a blob exists."""
        return self.bucket.blob(normalize_storage_path(ref)).exists()


# Singleton instance
_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Get the blob store singleton."""
    global _blob_store
    if _blob_store is None:
        _blob_store = BlobStore()
    return _blob_store
