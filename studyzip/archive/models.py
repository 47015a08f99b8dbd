"""Archive record types shared by the tracker, sweeper and gateway."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import IO, Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ArchiveStatus(str, Enum):
    NOT_STARTED = "not_started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class ArchiveMetadata(BaseModel):
    instance_count: int = 0
    series_count: int = 0
    processing_time_ms: Optional[int] = None
    etag: Optional[str] = None
    error: Optional[str] = None
    sweep_failures: int = 0
    sweep_dead_letter: bool = False


class ArchiveRecord(BaseModel):
    """Archive state embedded in a study record of the Dataset Store."""
    status: ArchiveStatus = ArchiveStatus.NOT_STARTED
    url: Optional[str] = None
    file_name: Optional[str] = None
    size_mb: Optional[float] = None
    size_bytes: Optional[int] = None
    storage_key: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    download_count: int = 0
    last_downloaded: Optional[datetime] = None
    job_id: Optional[int] = None
    metadata: ArchiveMetadata = Field(default_factory=ArchiveMetadata)
    # Bumped on every write; guards concurrent read-modify-write cycles.
    revision: int = 0

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class DatasetRecord(BaseModel):
    """The part of a study record this service reads."""
    record_ref: str
    dataset_id: str
    study_instance_uid: Optional[str] = None
    instance_count: int = 0
    series_count: int = 0
    archive: ArchiveRecord = Field(default_factory=ArchiveRecord)


@dataclass
class AssembledArchive:
    """One built archive, spooled locally and ready for upload."""
    file_name: str
    fileobj: IO[bytes]
    size_bytes: int
    entry_count: Optional[int] = None
    total_original_files: int = 0
    successful_conversions: int = 0
    failed_files: List[str] = field(default_factory=list)
    source_metadata: Dict[str, Any] = field(default_factory=dict)

    def close(self) -> None:
        self.fileobj.close()


@dataclass
class UploadResult:
    url: str
    key: str
    bucket: str
    etag: Optional[str]
    size_bytes: int

    @property
    def size_mb(self) -> float:
        """Size in MB to two decimals; a non-empty object never reports 0."""
        if self.size_bytes <= 0:
            return 0.0
        return max(0.01, round(self.size_bytes / 1024 / 1024, 2))
