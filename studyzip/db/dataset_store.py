"""Dataset Store access: the study records that carry archive state.

The store is owned by the wider application; this service only reads the
study identity fields and writes the embedded archive record.

Writes take an optional `when` predicate evaluated against the current
archive; the write is skipped (and False returned) when it does not hold.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from studyzip.archive.errors import ArchiveError
from studyzip.archive.models import ArchiveRecord, ArchiveStatus, DatasetRecord
from studyzip.config import settings

logger = logging.getLogger(__name__)

ArchiveGuard = Callable[[ArchiveRecord], bool]

_MAX_WRITE_ATTEMPTS = 5


def apply_archive_changes(archive: ArchiveRecord, changes: Dict[str, Any]) -> ArchiveRecord:
    """Return `archive` with `changes` applied and its revision bumped.

    Top-level keys replace (None clears a field); a "metadata" dict is merged
    into the existing metadata rather than replacing it.
    """
    data = archive.model_dump()
    changes = dict(changes)
    metadata = changes.pop("metadata", None)
    data.update(changes)
    if metadata:
        data["metadata"].update(metadata)
    data["revision"] = archive.revision + 1
    return ArchiveRecord.model_validate(data)


class DatasetStore(ABC):

    @abstractmethod
    async def get(self, dataset_id: str) -> Optional[DatasetRecord]:
        """Look a study up by its source dataset id."""
        ...

    @abstractmethod
    async def update_archive(
        self,
        record_ref: str,
        changes: Dict[str, Any],
        when: Optional[ArchiveGuard] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def increment_downloads(self, record_ref: str, at: datetime) -> None:
        ...

    @abstractmethod
    async def find_expired(self, now: datetime) -> List[DatasetRecord]:
        """Completed, not dead-lettered archives whose expiry is before `now`."""
        ...


def _is_sweepable(record: DatasetRecord, now: datetime) -> bool:
    archive = record.archive
    return (
        archive.status == ArchiveStatus.COMPLETED
        and archive.expires_at is not None
        and archive.expires_at < now
        and not archive.metadata.sweep_dead_letter
    )


class InMemoryDatasetStore(DatasetStore):
    """Dict-backed store for local development and tests."""

    def __init__(self, records: Optional[List[DatasetRecord]] = None):
        self._records: Dict[str, DatasetRecord] = {}
        for record in records or []:
            self.add(record)

    def add(self, record: DatasetRecord) -> None:
        self._records[record.record_ref] = record

    def by_ref(self, record_ref: str) -> Optional[DatasetRecord]:
        return self._records.get(record_ref)

    async def get(self, dataset_id: str) -> Optional[DatasetRecord]:
        for record in self._records.values():
            if record.dataset_id == dataset_id:
                return record.model_copy(deep=True)
        return None

    async def update_archive(
        self,
        record_ref: str,
        changes: Dict[str, Any],
        when: Optional[ArchiveGuard] = None,
    ) -> bool:
        record = self._records.get(record_ref)
        if record is None:
            logger.warning("Archive update for unknown record %s ignored", record_ref)
            return False
        if when is not None and not when(record.archive):
            return False
        record.archive = apply_archive_changes(record.archive, changes)
        return True

    async def increment_downloads(self, record_ref: str, at: datetime) -> None:
        record = self._records.get(record_ref)
        if record is not None:
            record.archive = apply_archive_changes(
                record.archive,
                {"download_count": record.archive.download_count + 1, "last_downloaded": at},
            )

    async def find_expired(self, now: datetime) -> List[DatasetRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if _is_sweepable(record, now)
        ]


class SupabaseDatasetStore(DatasetStore):
    """Study records in a Supabase table with the archive in a jsonb column.

    Expected columns: id, dataset_id, study_instance_uid, instance_count,
    series_count, archive (jsonb).

    Every write is a read-modify-write of the whole archive object, made
    conditional on the revision that was read. A write that loses the race
    re-reads the row and tries again, so concurrent writers never restore
    fields another writer has just changed.
    """

    _COLUMNS = "id, dataset_id, study_instance_uid, instance_count, series_count, archive"

    def __init__(self, client: Any, table: str = "dicom_studies"):
        self._client = client
        self._table = table

    @classmethod
    def from_settings(cls) -> "SupabaseDatasetStore":
        from studyzip.db.supabase_client import get_supabase

        return cls(get_supabase(), table=settings.supabase_studies_table)

    async def _run(self, fn, *args):
        # supabase-py is synchronous; keep its HTTP round trips off the loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    @staticmethod
    def _to_record(row: Dict[str, Any]) -> DatasetRecord:
        return DatasetRecord(
            record_ref=str(row["id"]),
            dataset_id=row["dataset_id"],
            study_instance_uid=row.get("study_instance_uid"),
            instance_count=row.get("instance_count") or 0,
            series_count=row.get("series_count") or 0,
            archive=ArchiveRecord.model_validate(row.get("archive") or {}),
        )

    def _select_one(self, column: str, value: str) -> Optional[Dict[str, Any]]:
        response = (
            self._client.table(self._table)
            .select(self._COLUMNS)
            .eq(column, value)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def _write_archive(
        self, record_ref: str, archive: ArchiveRecord, read_revision: Optional[Any]
    ) -> bool:
        """Write `archive` only if the stored revision is still `read_revision`."""
        query = (
            self._client.table(self._table)
            .update({"archive": archive.model_dump(mode="json")})
            .eq("id", record_ref)
        )
        if read_revision is None:
            query = query.is_("archive->>revision", "null")
        else:
            query = query.eq("archive->>revision", str(read_revision))
        response = query.execute()
        return bool(response.data)

    async def _modify(
        self,
        record_ref: str,
        make_changes: Callable[[ArchiveRecord], Dict[str, Any]],
        when: Optional[ArchiveGuard] = None,
    ) -> bool:
        for attempt in range(1, _MAX_WRITE_ATTEMPTS + 1):
            row = await self._run(self._select_one, "id", record_ref)
            if row is None:
                logger.warning("Archive update for unknown record %s ignored", record_ref)
                return False
            raw = row.get("archive") or {}
            current = ArchiveRecord.model_validate(raw)
            if when is not None and not when(current):
                return False
            updated = apply_archive_changes(current, make_changes(current))
            if await self._run(self._write_archive, record_ref, updated, raw.get("revision")):
                return True
            logger.info(
                "Archive of record %s changed while writing; retrying (attempt %d/%d)",
                record_ref, attempt, _MAX_WRITE_ATTEMPTS,
            )
        raise ArchiveError(
            f"Could not update archive of record {record_ref}: "
            f"still conflicting after {_MAX_WRITE_ATTEMPTS} attempts"
        )

    async def get(self, dataset_id: str) -> Optional[DatasetRecord]:
        row = await self._run(self._select_one, "dataset_id", dataset_id)
        return self._to_record(row) if row else None

    async def update_archive(
        self,
        record_ref: str,
        changes: Dict[str, Any],
        when: Optional[ArchiveGuard] = None,
    ) -> bool:
        return await self._modify(record_ref, lambda current: changes, when)

    async def increment_downloads(self, record_ref: str, at: datetime) -> None:
        await self._modify(
            record_ref,
            lambda current: {"download_count": current.download_count + 1, "last_downloaded": at},
        )

    async def find_expired(self, now: datetime) -> List[DatasetRecord]:
        def query():
            return (
                self._client.table(self._table)
                .select(self._COLUMNS)
                .eq("archive->>status", ArchiveStatus.COMPLETED.value)
                .lt("archive->>expires_at", now.isoformat())
                .execute()
            )

        response = await self._run(query)
        records = [self._to_record(row) for row in response.data or []]
        return [r for r in records if _is_sweepable(r, now)]
