"""
S3 File Store

Every object is stored under:
    s3://<BUCKET>/<prefix>/<object id>.pdf

The object id is generated server-side (FileStore.new_key), never taken
from the uploaded filename, so a client cannot steer the key.

Objects are written with SSE-S3 (AES256). The original filename and the
document size are kept in the registry, not in S3 metadata.
"""

from __future__ import annotations

import logging

import aioboto3
from botocore.exceptions import ClientError

from pdfqa.storage.files import FileStore

logger = logging.getLogger(__name__)


class S3FileStore(FileStore):
    """
    Async S3 operations via aioboto3. One instance per process; each call
    opens a short-lived client from the shared session.
    """

    def __init__(self, *, bucket: str, prefix: str = "documents", region: str = "us-east-1") -> None:
        self._bucket  = bucket
        self._prefix  = prefix.strip("/")
        self._region  = region
        self._session = aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client(
            "s3",
            region_name=self._region,
            # In production: IAM role assumed via ECS task role / IRSA.
            # In local dev: reads AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY.
        )

    def _full_key(self, key: str) -> str:
        safe_key = key.replace("..", "_").lstrip("/")
        return f"{self._prefix}/{safe_key}" if self._prefix else safe_key

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        full_key = self._full_key(key)
        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=full_key,
                Body=data,
                ContentType=content_type,
                ServerSideEncryption="AES256",
            )
        logger.info("S3 upload ok | bucket=%s key=%s size=%d", self._bucket, full_key, len(data))
        return key

    async def get(self, key: str) -> bytes:
        full_key = self._full_key(key)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=self._bucket, Key=full_key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {full_key}") from exc
                raise

    async def delete(self, key: str) -> None:
        full_key = self._full_key(key)
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=full_key)
        logger.warning("S3 delete | bucket=%s key=%s", self._bucket, full_key)
