"""
MinIO Storage Service.

S3-compatible storage backend for asset blobs. All assets live in a single
bucket; each manager writes under its own key prefix. The MinIO SDK is
synchronous, so every call is pushed to a worker thread.
"""

import asyncio
import logging
import mimetypes
import threading
from io import BytesIO
from typing import List, Optional

from minio import Minio
from minio.error import S3Error

from digitaltwin.core.errors import NotFoundError
from digitaltwin.core.storage.storage_service import StorageService, normalize_storage_path

logger = logging.getLogger("digitaltwin.minio")

BUCKET_EXISTS_CODES = ("BucketAlreadyOwnedByYou", "BucketAlreadyExists")


class MinIOStorageService(StorageService):
    """
    MinIO storage service implementation.

    The client is created lazily on first use; the bucket is created on the
    first write if it does not exist yet.
    """

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        secure: bool = False,
        public_url: Optional[str] = None,
        client: Optional[Minio] = None,
    ):
        self.endpoint = endpoint
        self.access_key = access_key
        self.secret_key = secret_key
        self.bucket = bucket
        self.secure = secure
        scheme = "https" if secure else "http"
        self.public_url = (public_url or f"{scheme}://{endpoint}").rstrip("/")
        self._client = client
        self._bucket_ready = False
        self._bucket_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "MinIOStorageService":
        return cls(
            endpoint=settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            bucket=settings.minio_bucket,
            secure=settings.minio_secure,
            public_url=settings.minio_public_url,
        )

    @property
    def client(self) -> Minio:
        """Get or create MinIO client (lazy initialization)."""
        if self._client is None:
            self._client = Minio(
                endpoint=self.endpoint,
                access_key=self.access_key,
                secret_key=self.secret_key,
                secure=self.secure,
            )
            logger.info(
                f"MinIO client initialized (endpoint={self.endpoint}, "
                f"secure={self.secure})"
            )
        return self._client

    def _ensure_bucket(self) -> None:
        # Writes run in parallel worker threads; only one may check and create
        if self._bucket_ready:
            return
        with self._bucket_lock:
            if self._bucket_ready:
                return
            if not self.client.bucket_exists(self.bucket):
                try:
                    self.client.make_bucket(self.bucket)
                    logger.info(f"Created bucket: {self.bucket}")
                except S3Error as e:
                    # Another process created it first
                    if e.code not in BUCKET_EXISTS_CODES:
                        raise
                    logger.debug(f"Bucket {self.bucket} already exists ({e.code})")
            self._bucket_ready = True

    def _put(self, key: str, data: bytes) -> None:
        self._ensure_bucket()
        content_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
        self.client.put_object(
            bucket_name=self.bucket,
            object_name=key,
            data=BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        logger.debug(f"Uploaded object {self.bucket}/{key} ({len(data)} bytes)")

    def _get(self, key: str) -> bytes:
        response = None
        try:
            response = self.client.get_object(self.bucket, key)
            return response.read()
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchBucket"):
                raise NotFoundError(f"File not found: {key}")
            raise
        finally:
            if response:
                response.close()
                response.release_conn()

    def _remove(self, key: str) -> None:
        try:
            self.client.remove_object(self.bucket, key)
        except S3Error as e:
            if e.code != "NoSuchKey":
                raise

    def _remove_prefix(self, prefix: str) -> int:
        if not prefix.endswith("/"):
            prefix = prefix + "/"

        keys: List[str] = [
            obj.object_name
            for obj in self.client.list_objects(self.bucket, prefix=prefix, recursive=True)
        ]
        deleted = 0
        failed = 0
        for key in keys:
            try:
                self.client.remove_object(self.bucket, key)
                deleted += 1
            except S3Error as e:
                logger.error(f"Failed to delete {self.bucket}/{key}: {e}")
                failed += 1

        logger.info(f"Deleted prefix {self.bucket}/{prefix}: {deleted} objects deleted, {failed} failed")
        return deleted

    async def save(self, data: bytes, folder: str, filename: str) -> str:
        return await self.save_with_path(data, f"{folder.rstrip('/')}/{filename}")

    async def save_with_path(self, data: bytes, path: str) -> str:
        key = normalize_storage_path(path)
        await asyncio.to_thread(self._put, key, data)
        return key

    async def retrieve(self, path: str) -> bytes:
        key = normalize_storage_path(path)
        return await asyncio.to_thread(self._get, key)

    async def delete(self, path: str) -> None:
        key = normalize_storage_path(path)
        await asyncio.to_thread(self._remove, key)

    async def delete_by_prefix(self, prefix: str) -> int:
        key = normalize_storage_path(prefix)
        return await asyncio.to_thread(self._remove_prefix, key)

    def get_public_url(self, path: str) -> str:
        return f"{self.public_url}/{self.bucket}/{normalize_storage_path(path)}"
