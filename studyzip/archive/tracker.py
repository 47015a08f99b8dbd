"""Write path from job outcomes into the Dataset Store's archive record."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from studyzip.archive.models import ArchiveStatus, AssembledArchive, UploadResult
from studyzip.db.dataset_store import ArchiveGuard, DatasetStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _still_holds(storage_key: Optional[str]) -> ArchiveGuard:
    """Guard: the record still points at the completed object `storage_key`."""
    return lambda archive: (
        archive.status == ArchiveStatus.COMPLETED and archive.storage_key == storage_key
    )


class StatusTracker:
    """Single writer of ArchiveRecord fields.

    url, file_name, size_mb, size_bytes and storage_key are only ever set
    together by mark_completed and only ever cleared together by mark_expired.
    """

    def __init__(self, store: DatasetStore, retention_days: int = 30):
        self._store = store
        self._retention = timedelta(days=retention_days)

    async def mark_processing(
        self, record_ref: str, job_id: int, when: Optional[ArchiveGuard] = None
    ) -> bool:
        return await self._store.update_archive(
            record_ref,
            {"status": ArchiveStatus.PROCESSING, "job_id": job_id, "metadata": {"error": None}},
            when=when,
        )

    async def mark_completed(
        self,
        record_ref: str,
        job_id: int,
        upload: UploadResult,
        archive: AssembledArchive,
        instance_count: int,
        series_count: int,
        processing_time_ms: int,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utcnow()
        await self._store.update_archive(
            record_ref,
            {
                "status": ArchiveStatus.COMPLETED,
                "job_id": job_id,
                "url": upload.url,
                "file_name": archive.file_name,
                "size_mb": upload.size_mb,
                "size_bytes": upload.size_bytes,
                "storage_key": upload.key,
                "created_at": now,
                "expires_at": now + self._retention,
                "metadata": {
                    "instance_count": instance_count,
                    "series_count": series_count,
                    "processing_time_ms": processing_time_ms,
                    "etag": upload.etag,
                    "error": None,
                    "sweep_failures": 0,
                    "sweep_dead_letter": False,
                },
            },
        )

    async def mark_failed(self, record_ref: str, job_id: int, error: str) -> None:
        # Leaves any previous url/file_name/size_mb in place.
        logger.info("Record %s failed (job_id=%s): %s", record_ref, job_id, error)
        await self._store.update_archive(
            record_ref,
            {"status": ArchiveStatus.FAILED, "job_id": job_id, "metadata": {"error": error}},
        )

    async def record_download(self, record_ref: str, now: Optional[datetime] = None) -> None:
        await self._store.increment_downloads(record_ref, now or utcnow())

    async def mark_expired(self, record_ref: str, storage_key: Optional[str]) -> bool:
        """Expire the archive stored under `storage_key`.

        Returns False, writing nothing, if the record has meanwhile moved on
        (rebuilt, re-queued or already expired).
        """
        return await self._store.update_archive(
            record_ref,
            {
                "status": ArchiveStatus.EXPIRED,
                "url": None,
                "file_name": None,
                "size_mb": None,
                "size_bytes": None,
                "storage_key": None,
            },
            when=_still_holds(storage_key),
        )

    async def record_sweep_failure(
        self,
        record_ref: str,
        storage_key: Optional[str],
        failures: int,
        error: str,
        dead_letter: bool,
    ) -> bool:
        return await self._store.update_archive(
            record_ref,
            {
                "metadata": {
                    "sweep_failures": failures,
                    "sweep_dead_letter": dead_letter,
                    "error": error,
                }
            },
            when=_still_holds(storage_key),
        )
