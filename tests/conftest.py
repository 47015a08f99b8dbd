"""
Shared fixtures for the study archive test suite

Provides in-memory collaborators for:
- the Dataset Source (scripted study metadata, instances and exports)
- the Dataset Store (InMemoryDatasetStore seeded with one study)
- object storage (MagicMock boto3 client behind ObjectStorageUploader)
"""

import asyncio
import io
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from PIL import Image

from studyzip.archive.errors import ArchiveError, TransientNetworkError
from studyzip.archive.models import ArchiveRecord, ArchiveStatus, DatasetRecord
from studyzip.archive.tracker import StatusTracker
from studyzip.db.dataset_store import InMemoryDatasetStore
from studyzip.storage.object_store import ObjectStorageUploader


def make_png(color=(200, 40, 40), size=(8, 8), mode="RGB") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format="PNG")
    return buf.getvalue()


STUDY = {
    "ID": "study-1",
    "PatientMainDicomTags": {"PatientName": "DOE^JANE", "PatientID": "P-001"},
    "MainDicomTags": {"StudyDate": "20240102", "StudyInstanceUID": "1.2.3.4"},
    "Series": ["s1", "s2"],
}


class FakeSource:
    """Scripted stand-in for DatasetSource."""

    def __init__(
        self,
        study: Optional[Dict] = None,
        instances: Optional[Dict[str, object]] = None,
        export_bytes: bytes = b"PK\x03\x04 exported archive",
        export_error: Optional[Exception] = None,
        export_delay: float = 0.0,
    ):
        self.study = study or STUDY
        # instance id -> bytes, or an exception to raise for that instance
        self.instances = instances if instances is not None else {}
        self.export_bytes = export_bytes
        self.export_error = export_error
        self.export_delay = export_delay
        self.export_calls: List[str] = []

    async def get_study(self, dataset_id: str) -> Dict:
        return self.study

    async def list_instances(self, dataset_id: str) -> List[str]:
        return list(self.instances)

    async def get_instance_image(self, instance_id: str) -> bytes:
        value = self.instances[instance_id]
        if isinstance(value, Exception):
            raise value
        return value

    async def export_archive(self, dataset_id: str, dst) -> int:
        self.export_calls.append(dataset_id)
        if self.export_delay:
            await asyncio.sleep(self.export_delay)
        if self.export_error is not None:
            raise self.export_error
        dst.write(self.export_bytes)
        return len(self.export_bytes)

    async def close(self) -> None:
        pass


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def timeout_source():
    return FakeSource(export_error=TransientNetworkError("Timed out exporting study study-1"))


@pytest.fixture
def five_instance_source():
    return FakeSource(instances={f"inst-{i}": make_png() for i in range(5)})


@pytest.fixture
def partial_source():
    """Four instances, two of which cannot be converted or fetched."""
    return FakeSource(
        instances={
            "good-1": make_png(),
            "corrupt": b"not an image",
            "good-2": make_png(mode="RGBA", color=(1, 2, 3, 4)),
            "missing": ArchiveError("Source returned 404 while fetching instance missing"),
        }
    )


@pytest.fixture
def now():
    return datetime.now(timezone.utc)


def make_record(
    dataset_id: str = "study-1",
    record_ref: str = "rec-1",
    **archive_fields,
) -> DatasetRecord:
    return DatasetRecord(
        record_ref=record_ref,
        dataset_id=dataset_id,
        study_instance_uid="1.2.3.4",
        instance_count=5,
        series_count=2,
        archive=ArchiveRecord(**archive_fields),
    )


def completed_archive(now: datetime, expires_in: timedelta = timedelta(days=30), **extra) -> Dict:
    fields = dict(
        status=ArchiveStatus.COMPLETED,
        url="https://s3.test/test-bucket/studies/2024/old.zip",
        file_name="old.zip",
        size_mb=1.5,
        storage_key="studies/2024/old.zip",
        created_at=now - timedelta(days=1),
        expires_at=now + expires_in,
        job_id=7,
    )
    fields.update(extra)
    return fields


@pytest.fixture
def store():
    return InMemoryDatasetStore([make_record()])


@pytest.fixture
def tracker(store):
    return StatusTracker(store, retention_days=30)


@pytest.fixture
def mock_s3_client():
    """boto3 S3 client mock that 'stores' whatever upload_fileobj reads."""
    client = MagicMock()
    uploaded: Dict[str, int] = {}

    def upload_fileobj(fileobj, bucket, key, ExtraArgs=None, Callback=None, Config=None):
        data = fileobj.read()
        uploaded[key] = len(data)
        if Callback:
            Callback(len(data))

    def head_object(Bucket, Key):
        return {"ETag": '"etag-123"', "ContentLength": uploaded.get(Key, 0)}

    client.upload_fileobj.side_effect = upload_fileobj
    client.head_object.side_effect = head_object
    client.delete_object.return_value = {}
    client.generate_presigned_url.return_value = "https://signed.test/archive?sig=1"
    client.uploaded = uploaded
    return client


@pytest.fixture
def uploader(mock_s3_client):
    return ObjectStorageUploader(
        mock_s3_client,
        bucket="test-bucket",
        endpoint_url="https://s3.test",
        upload_timeout=5.0,
    )
