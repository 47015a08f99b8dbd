"""Periodic cleanup of expired archives.

A record only becomes `expired` after its object is confirmed deleted, and
only if it still points at that object; a record rebuilt or re-queued
during the delete is left alone. A failed delete leaves the record
`completed` so the next pass retries it;
after `max_attempts` failures the record is dead-lettered and reported at
ERROR level instead of being retried forever.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from studyzip.archive.errors import ArchiveError
from studyzip.archive.tracker import StatusTracker
from studyzip.db.dataset_store import DatasetStore
from studyzip.storage.object_store import ObjectStorageUploader

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    total: int = 0
    cleaned: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ExpirationSweeper:

    def __init__(
        self,
        store: DatasetStore,
        storage: ObjectStorageUploader,
        tracker: StatusTracker,
        interval_seconds: int = 3600,
        max_attempts: int = 5,
    ):
        self._store = store
        self._storage = storage
        self._tracker = tracker
        self._interval = interval_seconds
        self._max_attempts = max_attempts
        self._task: Optional[asyncio.Task] = None
        self._running = False
        # One pass at a time, whether scheduled or triggered over HTTP
        self._pass_lock = asyncio.Lock()

    async def sweep_once(self, now: Optional[datetime] = None) -> SweepReport:
        """One pass over every expired, completed archive."""
        async with self._pass_lock:
            return await self._sweep(now or datetime.now(timezone.utc))

    async def _sweep(self, now: datetime) -> SweepReport:
        candidates = await self._store.find_expired(now)
        report = SweepReport(total=len(candidates))
        logger.info("Sweep started: %d expired archive(s)", report.total)

        for record in candidates:
            archive = record.archive
            try:
                if archive.storage_key:
                    await self._storage.delete(archive.storage_key)
                else:
                    logger.warning(
                        "Expired archive for dataset=%s has no storage key; clearing record",
                        record.dataset_id,
                    )
                if await self._tracker.mark_expired(record.record_ref, archive.storage_key):
                    report.cleaned += 1
                    logger.info("Cleaned expired archive for dataset=%s", record.dataset_id)
                else:
                    report.skipped += 1
                    logger.info(
                        "Archive for dataset=%s changed during the sweep; record left as is",
                        record.dataset_id,
                    )
            except ArchiveError as e:
                report.failed += 1
                failures = archive.metadata.sweep_failures + 1
                dead_letter = failures >= self._max_attempts
                if dead_letter:
                    report.dead_lettered += 1
                    logger.error(
                        "Giving up on expired archive for dataset=%s key=%s after %d attempts: %s",
                        record.dataset_id, archive.storage_key, failures, e,
                    )
                else:
                    logger.warning(
                        "Failed to clean archive for dataset=%s (attempt %d/%d): %s",
                        record.dataset_id, failures, self._max_attempts, e,
                    )
                try:
                    await self._tracker.record_sweep_failure(
                        record.record_ref, archive.storage_key, failures, str(e), dead_letter
                    )
                except Exception:
                    logger.exception(
                        "Could not record sweep failure for dataset=%s", record.dataset_id
                    )
            except Exception:
                # Store write failed after the delete; the next pass deletes again and retries
                report.failed += 1
                logger.exception("Failed to expire record for dataset=%s", record.dataset_id)

        logger.info(
            "Sweep completed: %d cleaned, %d failed, %d dead-lettered, %d skipped",
            report.cleaned, report.failed, report.dead_lettered, report.skipped,
        )
        return report

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Expiration sweeper started (every %ds)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception:
                # A broken pass (e.g. store unreachable) must not end the schedule
                logger.exception("Sweep pass failed")
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
