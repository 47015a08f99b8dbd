"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from studyzip.jobs.models import ArchiveJobPayload, Job


class JobDispatcher(ABC):
    """Abstract interface for job dispatching (in-process or remote)."""

    @abstractmethod
    async def submit(self, payload: ArchiveJobPayload) -> Job:
        """Queue a job for the payload. Returns the new job, status waiting."""
        ...

    @abstractmethod
    async def get_status(self, job_id: int) -> Optional[Job]:
        """Get current status of a job."""
        ...

    @abstractmethod
    async def list_jobs(self) -> List[Job]:
        ...

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
