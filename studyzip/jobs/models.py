"""Job record data model for async archive creation."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed forward edges. Terminal states have none.
_TRANSITIONS = {
    JobStatus.WAITING: {JobStatus.ACTIVE},
    JobStatus.ACTIVE: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class ArchiveJobPayload(BaseModel):
    """What a worker needs to build one study archive."""
    dataset_id: str
    dataset_record_ref: str
    instance_count: int = 0
    series_count: int = 0
    study_instance_uid: Optional[str] = None


class Job(BaseModel):
    """Tracks the lifecycle of one archive-creation job."""
    id: int
    payload: ArchiveJobPayload
    status: JobStatus = JobStatus.WAITING
    progress: int = 0
    progress_message: str = ""
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def transition(self, status: JobStatus) -> None:
        """Move to `status`, refusing anything but waiting->active->terminal."""
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(
                f"Job {self.id}: illegal transition {self.status.value} -> {status.value}"
            )
        self.status = status
        if status == JobStatus.ACTIVE:
            self.started_at = utcnow()
        elif self.is_terminal:
            self.completed_at = utcnow()

    def set_progress(self, percent: int, message: str = "") -> None:
        self.progress = max(0, min(100, int(percent)))
        if message:
            self.progress_message = message
