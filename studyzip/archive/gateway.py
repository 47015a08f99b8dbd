"""Retrieval Gateway: serve an existing archive or start building one.

`create` is the only path that guarantees a single in-flight job per
dataset; its check-then-submit runs under a per-dataset lock.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from studyzip.archive.errors import RecordNotFound
from studyzip.archive.models import ArchiveStatus, DatasetRecord
from studyzip.archive.tracker import StatusTracker
from studyzip.db.dataset_store import DatasetStore
from studyzip.jobs.dispatcher import JobDispatcher
from studyzip.jobs.models import ArchiveJobPayload
from studyzip.storage.object_store import ObjectStorageUploader

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


class RetrievalState(str, Enum):
    READY = "ready"
    PROCESSING = "processing"
    FAILED = "failed"
    EXPIRED = "expired"
    NOT_AVAILABLE = "not_available"


@dataclass
class Retrieval:
    state: RetrievalState
    dataset_id: str
    url: Optional[str] = None
    file_name: Optional[str] = None
    size_mb: Optional[float] = None
    job_id: Optional[int] = None
    error: Optional[str] = None
    expired_at: Optional[datetime] = None
    links: Dict[str, str] = field(default_factory=dict)


@dataclass
class CreateOutcome:
    dataset_id: str
    status: str
    created: bool
    job_id: Optional[int] = None
    url: Optional[str] = None
    size_mb: Optional[float] = None


def archive_links(dataset_id: str, job_id: Optional[int] = None) -> Dict[str, str]:
    links = {
        "create": f"{API_PREFIX}/archive/{dataset_id}",
        "download": f"{API_PREFIX}/archive/{dataset_id}",
        "direct": f"{API_PREFIX}/archive/{dataset_id}/direct",
        "info": f"{API_PREFIX}/archive/{dataset_id}/info",
    }
    if job_id is not None:
        links["status"] = f"{API_PREFIX}/jobs/{job_id}"
    return links


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def __call__(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __contains__(self, key: str) -> bool:
        return key in self._locks


class RetrievalGateway:

    def __init__(
        self,
        store: DatasetStore,
        dispatcher: JobDispatcher,
        tracker: StatusTracker,
        storage: ObjectStorageUploader,
        presign: bool = False,
        presign_expires: int = 3600,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._tracker = tracker
        self._storage = storage
        self._presign = presign
        self._presign_expires = presign_expires
        self._locks = KeyedLock()

    async def _require(self, dataset_id: str) -> DatasetRecord:
        record = await self._store.get(dataset_id)
        if record is None:
            raise RecordNotFound(dataset_id)
        return record

    async def get(self, dataset_id: str, now: Optional[datetime] = None) -> Retrieval:
        now = now or datetime.now(timezone.utc)
        record = await self._require(dataset_id)
        archive = record.archive

        if archive.status == ArchiveStatus.COMPLETED and archive.url:
            if archive.is_expired(now):
                logger.info("Archive for dataset=%s expired at %s", dataset_id, archive.expires_at)
                return Retrieval(
                    RetrievalState.EXPIRED,
                    dataset_id,
                    expired_at=archive.expires_at,
                    links=archive_links(dataset_id),
                )
            url = archive.url
            if self._presign and archive.storage_key:
                url = self._storage.presign(
                    archive.storage_key, archive.file_name or "", self._presign_expires
                )
            await self._count_download(record)
            logger.info(
                "Serving archive %s (%s MB) for dataset=%s",
                archive.file_name, archive.size_mb, dataset_id,
            )
            return Retrieval(
                RetrievalState.READY,
                dataset_id,
                url=url,
                file_name=archive.file_name,
                size_mb=archive.size_mb,
                job_id=archive.job_id,
            )

        if archive.status == ArchiveStatus.PROCESSING:
            return Retrieval(
                RetrievalState.PROCESSING,
                dataset_id,
                job_id=archive.job_id,
                links=archive_links(dataset_id, archive.job_id),
            )

        if archive.status == ArchiveStatus.FAILED:
            return Retrieval(
                RetrievalState.FAILED,
                dataset_id,
                job_id=archive.job_id,
                error=archive.metadata.error or "Unknown error",
                links=archive_links(dataset_id),
            )

        if archive.status == ArchiveStatus.EXPIRED:
            return Retrieval(
                RetrievalState.EXPIRED,
                dataset_id,
                expired_at=archive.expires_at,
                links=archive_links(dataset_id),
            )

        return Retrieval(RetrievalState.NOT_AVAILABLE, dataset_id, links=archive_links(dataset_id))

    async def direct_url(self, dataset_id: str, now: Optional[datetime] = None) -> Retrieval:
        """Like get(), but a ready archive is always served through a signed URL."""
        now = now or datetime.now(timezone.utc)
        record = await self._require(dataset_id)
        archive = record.archive
        if (
            archive.status != ArchiveStatus.COMPLETED
            or not archive.storage_key
            or archive.is_expired(now)
        ):
            return await self.get(dataset_id, now=now)

        url = self._storage.presign(archive.storage_key, archive.file_name or "", self._presign_expires)
        await self._count_download(record)
        return Retrieval(
            RetrievalState.READY,
            dataset_id,
            url=url,
            file_name=archive.file_name,
            size_mb=archive.size_mb,
            job_id=archive.job_id,
        )

    async def create(self, dataset_id: str, now: Optional[datetime] = None) -> CreateOutcome:
        """Queue an archive job unless one is in flight or a live archive exists."""
        now = now or datetime.now(timezone.utc)
        async with self._locks(dataset_id):
            record = await self._require(dataset_id)
            archive = record.archive

            if archive.status == ArchiveStatus.PROCESSING and archive.job_id is not None:
                job = await self._dispatcher.get_status(archive.job_id)
                if job is not None and not job.is_terminal:
                    logger.info(
                        "Archive for dataset=%s already in progress (job_id=%s)",
                        dataset_id, archive.job_id,
                    )
                    return CreateOutcome(dataset_id, "processing", False, job_id=archive.job_id)
                logger.warning(
                    "Dataset=%s marked processing by unknown or finished job_id=%s; resubmitting",
                    dataset_id, archive.job_id,
                )

            if (
                archive.status == ArchiveStatus.COMPLETED
                and archive.url
                and not archive.is_expired(now)
            ):
                return CreateOutcome(
                    dataset_id,
                    "completed",
                    False,
                    job_id=archive.job_id,
                    url=archive.url,
                    size_mb=archive.size_mb,
                )

            job = await self._dispatcher.submit(
                ArchiveJobPayload(
                    dataset_id=record.dataset_id,
                    dataset_record_ref=record.record_ref,
                    instance_count=record.instance_count,
                    series_count=record.series_count,
                    study_instance_uid=record.study_instance_uid,
                )
            )
            # The worker may already have started and written its own state
            marked = await self._tracker.mark_processing(
                record.record_ref, job.id, when=lambda current: current.job_id != job.id
            )
            if not marked:
                logger.info(
                    "Job_id=%s for dataset=%s already reported its state; not overwriting",
                    job.id, dataset_id,
                )
            return CreateOutcome(dataset_id, job.status.value, True, job_id=job.id)

    async def info(self, dataset_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        record = await self._require(dataset_id)
        archive = record.archive
        return {
            "dataset_id": record.dataset_id,
            "has_archive": (
                archive.status == ArchiveStatus.COMPLETED
                and bool(archive.url)
                and not archive.is_expired(now)
            ),
            "status": archive.status.value,
            "file_name": archive.file_name,
            "size_mb": archive.size_mb or 0,
            "created_at": archive.created_at,
            "expires_at": archive.expires_at,
            "download_count": archive.download_count,
            "last_downloaded": archive.last_downloaded,
            "instance_count": record.instance_count,
            "series_count": record.series_count,
            "job_id": archive.job_id,
            "error": archive.metadata.error,
            "links": archive_links(record.dataset_id, archive.job_id),
        }

    async def _count_download(self, record: DatasetRecord) -> None:
        try:
            await self._tracker.record_download(record.record_ref)
        except Exception as e:
            # Counters are advisory; a failed increment never blocks the download
            logger.warning("Failed to update download stats for dataset=%s: %s", record.dataset_id, e)
