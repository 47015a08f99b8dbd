"""
Expiration Sweeper Tests

- expired archives are deleted from storage, then marked expired
- a failed delete leaves the record completed for the next pass
- repeated failures end in the dead letter state
- a record rebuilt while its old object is deleted is left alone
- manual and scheduled passes never overlap
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError

from conftest import completed_archive, make_record
from studyzip.archive.errors import StorageProviderError
from studyzip.archive.gateway import RetrievalGateway
from studyzip.archive.models import ArchiveStatus
from studyzip.archive.sweeper import ExpirationSweeper
from studyzip.archive.tracker import StatusTracker
from studyzip.db.dataset_store import InMemoryDatasetStore
from studyzip.jobs.in_process_queue import InProcessQueue

EXPIRED = timedelta(days=-1)


def access_denied():
    return ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "Denied"}, "ResponseMetadata": {"HTTPStatusCode": 403}},
        "DeleteObject",
    )


@pytest.fixture
def expired_store(now):
    return InMemoryDatasetStore([
        make_record("a", "r-a", **completed_archive(now, EXPIRED, storage_key="studies/2024/a.zip")),
        make_record("b", "r-b", **completed_archive(now, EXPIRED, storage_key="studies/2024/b.zip")),
        make_record("live", "r-live", **completed_archive(now)),
    ])


def sweeper_for(store, uploader, max_attempts=3):
    return ExpirationSweeper(store, uploader, StatusTracker(store), max_attempts=max_attempts)


class TestSweepOnce:

    async def test_expired_archives_are_cleaned(self, expired_store, uploader, mock_s3_client, now):
        report = await sweeper_for(expired_store, uploader).sweep_once(now)

        assert report.as_dict() == {
            "total": 2, "cleaned": 2, "failed": 0, "dead_lettered": 0, "skipped": 0,
        }
        deleted = sorted(c.kwargs["Key"] for c in mock_s3_client.delete_object.call_args_list)
        assert deleted == ["studies/2024/a.zip", "studies/2024/b.zip"]
        for ref in ("r-a", "r-b"):
            archive = expired_store.by_ref(ref).archive
            assert archive.status == ArchiveStatus.EXPIRED
            assert archive.url is None
            assert archive.storage_key is None

    async def test_live_archive_untouched(self, expired_store, uploader, now):
        await sweeper_for(expired_store, uploader).sweep_once(now)
        live = expired_store.by_ref("r-live").archive
        assert live.status == ArchiveStatus.COMPLETED
        assert live.url is not None

    async def test_failed_delete_keeps_record_completed(self, now, uploader, mock_s3_client):
        store = InMemoryDatasetStore([make_record(**completed_archive(now, EXPIRED))])
        mock_s3_client.delete_object.side_effect = access_denied()

        report = await sweeper_for(store, uploader).sweep_once(now)

        assert report.failed == 1 and report.cleaned == 0
        archive = store.by_ref("rec-1").archive
        assert archive.status == ArchiveStatus.COMPLETED
        assert archive.url == "https://s3.test/test-bucket/studies/2024/old.zip"
        assert archive.metadata.sweep_failures == 1
        assert archive.metadata.sweep_dead_letter is False
        assert "AccessDenied" in archive.metadata.error

    async def test_one_failure_does_not_block_others(self, expired_store, uploader, mock_s3_client, now):
        def delete_object(Bucket, Key):
            if Key.endswith("a.zip"):
                raise access_denied()
            return {}

        mock_s3_client.delete_object.side_effect = delete_object
        report = await sweeper_for(expired_store, uploader).sweep_once(now)

        assert report.cleaned == 1 and report.failed == 1
        assert expired_store.by_ref("r-a").archive.status == ArchiveStatus.COMPLETED
        assert expired_store.by_ref("r-b").archive.status == ArchiveStatus.EXPIRED

    async def test_dead_letter_after_max_attempts(self, now, uploader, mock_s3_client, caplog):
        store = InMemoryDatasetStore([make_record(**completed_archive(now, EXPIRED))])
        mock_s3_client.delete_object.side_effect = access_denied()
        sweeper = sweeper_for(store, uploader, max_attempts=3)

        reports = [await sweeper.sweep_once(now) for _ in range(3)]

        assert [r.dead_lettered for r in reports] == [0, 0, 1]
        archive = store.by_ref("rec-1").archive
        assert archive.metadata.sweep_failures == 3
        assert archive.metadata.sweep_dead_letter is True
        assert any(r.levelname == "ERROR" and "Giving up" in r.message for r in caplog.records)

        # dead-lettered records are no longer candidates
        report = await sweeper.sweep_once(now)
        assert report.total == 0
        assert mock_s3_client.delete_object.call_count == 3

    async def test_missing_storage_key_is_still_expired(self, now, uploader, mock_s3_client):
        store = InMemoryDatasetStore([
            make_record(**completed_archive(now, EXPIRED, storage_key=None))
        ])
        report = await sweeper_for(store, uploader).sweep_once(now)

        assert report.cleaned == 1
        mock_s3_client.delete_object.assert_not_called()
        assert store.by_ref("rec-1").archive.status == ArchiveStatus.EXPIRED

    async def test_store_failure_is_counted(self, now, uploader):
        store = InMemoryDatasetStore([make_record(**completed_archive(now, EXPIRED))])
        store.update_archive = AsyncMock(side_effect=RuntimeError("database unavailable"))

        report = await sweeper_for(store, uploader).sweep_once(now)
        assert report.failed == 1
        assert report.cleaned == 0


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrentChanges:

    async def test_rebuild_during_delete_is_not_expired(self, now, uploader):
        store = InMemoryDatasetStore([make_record(**completed_archive(now, EXPIRED))])
        tracker = StatusTracker(store)
        delete_started = asyncio.Event()
        release_delete = asyncio.Event()

        async def held_delete(key):
            delete_started.set()
            await release_delete.wait()

        uploader.delete = held_delete

        async def never_finishes(job):
            await asyncio.sleep(3600)

        queue = InProcessQueue(worker_fn=never_finishes, concurrency=1)
        gateway = RetrievalGateway(store, queue, tracker, uploader)
        sweeper = ExpirationSweeper(store, uploader, tracker)

        sweep = asyncio.create_task(sweeper.sweep_once(now))
        await delete_started.wait()
        first = await gateway.create("study-1", now=now)
        release_delete.set()
        report = await sweep

        assert first.created is True
        assert report.skipped == 1
        assert report.cleaned == 0
        archive = store.by_ref("rec-1").archive
        assert archive.status == ArchiveStatus.PROCESSING
        assert archive.job_id == first.job_id

        second = await gateway.create("study-1", now=now)
        assert second.created is False
        assert second.job_id == first.job_id
        assert len(await queue.list_jobs()) == 1

    async def test_overlapping_passes_run_one_at_a_time(self, now, uploader):
        store = InMemoryDatasetStore([make_record(**completed_archive(now, EXPIRED))])
        running = []
        overlap = []

        async def failing_delete(key):
            running.append(key)
            overlap.append(len(running))
            await asyncio.sleep(0.02)
            running.remove(key)
            raise StorageProviderError("Could not delete: SlowDown")

        uploader.delete = failing_delete
        sweeper = sweeper_for(store, uploader, max_attempts=5)

        await asyncio.gather(sweeper.sweep_once(now), sweeper.sweep_once(now))

        assert overlap == [1, 1]
        assert store.by_ref("rec-1").archive.metadata.sweep_failures == 2


class TestSchedule:

    async def test_loop_runs_and_stops(self, expired_store, uploader):
        sweeper = ExpirationSweeper(expired_store, uploader, StatusTracker(expired_store), interval_seconds=60)
        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()
        assert expired_store.by_ref("r-a").archive.status == ArchiveStatus.EXPIRED

    async def test_loop_survives_a_broken_pass(self, uploader):
        store = InMemoryDatasetStore()
        calls = []

        async def find_expired(now):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("down")
            return []

        store.find_expired = find_expired
        sweeper = ExpirationSweeper(store, uploader, StatusTracker(store), interval_seconds=0)
        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()
        assert len(calls) >= 2
