"""Durable archive storage on any S3-compatible object store.

Uploads go through boto3's managed transfer, which splits the body into
fixed-size parts and aborts the multipart upload if any part fails, so a
failed transfer never leaves a readable object behind.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import IO, Any, Callable, Dict, Optional
from urllib.parse import quote

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from studyzip.archive.errors import StorageProviderError, TransientNetworkError
from studyzip.archive.models import UploadResult
from studyzip.config import settings

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/zip"
KEY_PREFIX = "studies/"
SERVICE_VERSION = "studyzip-boto3"

# Type alias for progress callbacks: fn(bytes_sent, total_bytes)
UploadProgressCallback = Callable[[int, int], None]

# How long a timed-out transfer gets to notice it was abandoned
_ABANDON_GRACE_SECONDS = 30.0


def object_key(file_name: str, now: Optional[datetime] = None) -> str:
    """studies/{year}/{file_name}"""
    now = now or datetime.now(timezone.utc)
    return f"{KEY_PREFIX}{now.year}/{file_name}"


def format_bytes(size: float, decimals: int = 2) -> str:
    """Convert bytes to human-readable string."""
    for unit in ["Bytes", "KB", "MB", "GB", "TB"]:
        if abs(size) < 1024 or unit == "TB":
            break
        size /= 1024
    if unit == "Bytes":
        return f"{int(size)} Bytes"
    return f"{size:.{decimals}f} {unit}"


class _TransferAbandoned(Exception):
    """Raised from the progress callback to stop a transfer nobody awaits."""


def _provider_message(error: Exception) -> str:
    if isinstance(error, ClientError):
        err = error.response.get("Error", {})
        code = err.get("Code", "Unknown")
        return f"{code}: {err.get('Message', str(error))}"
    return str(error)


class ObjectStorageUploader:
    """Uploads, deletes, signs and inventories archive objects."""

    def __init__(
        self,
        client: Any,
        bucket: str,
        storage_class: str = "STANDARD",
        chunk_size_mb: int = 5,
        upload_timeout: float = 600.0,
        public_base_url: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        region: str = "us-east-1",
    ):
        self._s3 = client
        self.bucket = bucket
        self._storage_class = storage_class
        chunk = chunk_size_mb * 1024 * 1024
        self._transfer_config = TransferConfig(
            multipart_threshold=chunk,
            multipart_chunksize=chunk,
        )
        self._upload_timeout = upload_timeout
        self._public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._endpoint_url = endpoint_url.rstrip("/") if endpoint_url else None
        self._region = region

    @classmethod
    def from_settings(cls) -> "ObjectStorageUploader":
        client = boto3.client(
            "s3",
            endpoint_url=settings.storage_endpoint_url,
            region_name=settings.storage_region,
            aws_access_key_id=settings.storage_access_key_id,
            aws_secret_access_key=settings.storage_secret_access_key,
            config=Config(
                signature_version="s3v4",
                connect_timeout=10,
                read_timeout=120,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
        return cls(
            client,
            bucket=settings.storage_bucket,
            storage_class=settings.storage_class,
            chunk_size_mb=settings.storage_chunk_size_mb,
            upload_timeout=settings.upload_timeout_seconds,
            public_base_url=settings.storage_public_base_url,
            endpoint_url=settings.storage_endpoint_url,
            region=settings.storage_region,
        )

    def object_url(self, key: str) -> str:
        quoted = quote(key)
        if self._public_base_url:
            return f"{self._public_base_url}/{quoted}"
        if self._endpoint_url:
            return f"{self._endpoint_url}/{self.bucket}/{quoted}"
        return f"https://{self.bucket}.s3.{self._region}.amazonaws.com/{quoted}"

    async def upload(
        self,
        fileobj: IO[bytes],
        key: str,
        size_bytes: int,
        tags: Dict[str, str],
        content_type: str = ARCHIVE_CONTENT_TYPE,
        progress_cb: Optional[UploadProgressCallback] = None,
    ) -> UploadResult:
        """Stream `fileobj` to `key` with encryption and an explicit storage class."""
        logger.info("Uploading %s to %s/%s", format_bytes(size_bytes), self.bucket, key)
        metadata = {k: str(v) for k, v in tags.items()}
        metadata.setdefault("created-at", datetime.now(timezone.utc).isoformat())
        metadata.setdefault("service-version", SERVICE_VERSION)
        extra_args = {
            "ContentType": content_type,
            "Metadata": metadata,
            "ServerSideEncryption": "AES256",
            "StorageClass": self._storage_class,
        }

        sent = 0
        last_logged = -1
        abandoned = threading.Event()

        def on_bytes(chunk_bytes: int) -> None:
            nonlocal sent, last_logged
            if abandoned.is_set():
                raise _TransferAbandoned(key)
            sent += chunk_bytes
            if progress_cb:
                progress_cb(sent, size_bytes)
            if size_bytes:
                pct = int(sent * 100 / size_bytes)
                if pct // 25 > last_logged:
                    last_logged = pct // 25
                    logger.info(
                        "Upload progress %s: %d%% (%s/%s)",
                        key, pct, format_bytes(sent), format_bytes(size_bytes),
                    )

        def transfer() -> Dict[str, Any]:
            self._s3.upload_fileobj(
                fileobj,
                self.bucket,
                key,
                ExtraArgs=extra_args,
                Callback=on_bytes,
                Config=self._transfer_config,
            )
            return self._s3.head_object(Bucket=self.bucket, Key=key)

        loop = asyncio.get_running_loop()
        transfer_done = loop.run_in_executor(None, transfer)
        try:
            head = await asyncio.wait_for(asyncio.shield(transfer_done), timeout=self._upload_timeout)
        except asyncio.TimeoutError as e:
            await self._abandon(transfer_done, abandoned, key)
            raise TransientNetworkError(
                f"Upload of {key} timed out after {self._upload_timeout:.0f}s"
            ) from e
        except (ClientError, BotoCoreError) as e:
            raise StorageProviderError(f"Object storage upload failed: {_provider_message(e)}") from e

        result = UploadResult(
            url=self.object_url(key),
            key=key,
            bucket=self.bucket,
            etag=(head.get("ETag") or "").strip('"') or None,
            size_bytes=int(head.get("ContentLength") or size_bytes),
        )
        logger.info("Upload completed: %s (%s MB)", result.url, result.size_mb)
        return result

    async def _abandon(
        self, transfer_done: "asyncio.Future[Any]", abandoned: threading.Event, key: str
    ) -> None:
        """Stop a timed-out transfer and wait for its thread to let go of the body.

        The caller closes the file object once upload() returns, so the
        worker thread must be done reading it first.
        """
        abandoned.set()
        logger.warning(
            "Upload of %s exceeded %.0fs; abandoning the transfer", key, self._upload_timeout
        )
        try:
            await asyncio.wait_for(asyncio.shield(transfer_done), timeout=_ABANDON_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "Abandoned upload of %s still running after %.0fs; its body may be closed under it",
                key, _ABANDON_GRACE_SECONDS,
            )
        except _TransferAbandoned:
            logger.info("Abandoned upload of %s stopped", key)
        except Exception as e:
            logger.info("Abandoned upload of %s ended with %s", key, e)
        else:
            logger.warning("Upload of %s finished after it was abandoned; object left in place", key)

    async def delete(self, key: str) -> None:
        """Remove an object. Deleting a key that is already gone succeeds."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, lambda: self._s3.delete_object(Bucket=self.bucket, Key=key)
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageProviderError(f"Could not delete {key}: {_provider_message(e)}") from e

    def presign(self, key: str, file_name: str, expires_in: int = 3600) -> str:
        """Time-bounded download URL that forces a file download."""
        try:
            return self._s3.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ResponseContentDisposition": f'attachment; filename="{file_name}"',
                    "ResponseContentType": ARCHIVE_CONTENT_TYPE,
                },
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageProviderError(f"Could not sign {key}: {_provider_message(e)}") from e

    def ensure_bucket(self) -> bool:
        """Create the archive bucket if missing. Returns True when created."""
        try:
            self._s3.head_bucket(Bucket=self.bucket)
            logger.info("Archive bucket %s exists", self.bucket)
            return False
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            code = e.response.get("Error", {}).get("Code")
            if status != 404 and code not in ("404", "NoSuchBucket"):
                raise StorageProviderError(
                    f"Cannot access bucket {self.bucket}: {_provider_message(e)}"
                ) from e

        params: Dict[str, Any] = {"Bucket": self.bucket}
        if self._region and self._region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        try:
            self._s3.create_bucket(**params)
        except ClientError as e:
            raise StorageProviderError(
                f"Cannot create bucket {self.bucket}: {_provider_message(e)}"
            ) from e
        logger.info("Archive bucket %s created", self.bucket)
        return True

    def storage_stats(self, prefix: str = KEY_PREFIX) -> Dict[str, Any]:
        """Object count and size under `prefix`, grouped by key period."""
        paginator = self._s3.get_paginator("list_objects_v2")
        total_size = 0
        file_count = 0
        periods: Dict[str, Dict[str, int]] = {}
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    size = obj.get("Size", 0)
                    file_count += 1
                    total_size += size
                    period = self._period(obj["Key"], obj.get("LastModified"))
                    bucket_stats = periods.setdefault(period, {"file_count": 0, "total_size": 0})
                    bucket_stats["file_count"] += 1
                    bucket_stats["total_size"] += size
        except (ClientError, BotoCoreError) as e:
            raise StorageProviderError(f"Could not list {self.bucket}: {_provider_message(e)}") from e

        average = round(total_size / file_count) if file_count else 0
        return {
            "bucket": self.bucket,
            "summary": {
                "total_files": file_count,
                "total_size": total_size,
                "total_size_formatted": format_bytes(total_size),
                "average_file_size": average,
                "average_file_size_formatted": format_bytes(average),
            },
            "periods": [
                {
                    "period": period,
                    "file_count": stats["file_count"],
                    "total_size": stats["total_size"],
                    "total_size_formatted": format_bytes(stats["total_size"]),
                }
                for period, stats in sorted(periods.items(), reverse=True)
            ],
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }

    @staticmethod
    def _period(key: str, last_modified: Optional[datetime]) -> str:
        # Keys carry the year; the month comes from the object's timestamp.
        parts = key.split("/")
        year = parts[1] if len(parts) >= 3 else "unknown"
        if last_modified is not None:
            return f"{year}-{last_modified.month:02d}"
        return year
