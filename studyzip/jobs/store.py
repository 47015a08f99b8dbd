"""Job registry backends.

The queue only talks to a JobStore, so a persistent or shared registry can
replace the in-memory one without touching dispatch logic.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from studyzip.jobs.models import Job


class JobStore(ABC):

    @abstractmethod
    def get(self, job_id: int) -> Optional[Job]:
        ...

    @abstractmethod
    def set(self, job: Job) -> None:
        ...

    @abstractmethod
    def list(self) -> List[Job]:
        """All known jobs in submission order."""
        ...


class InMemoryJobStore(JobStore):
    """Process-local registry. Jobs are kept after they finish."""

    def __init__(self):
        self._jobs: Dict[int, Job] = {}

    def get(self, job_id: int) -> Optional[Job]:
        return self._jobs.get(job_id)

    def set(self, job: Job) -> None:
        self._jobs[job.id] = job

    def list(self) -> List[Job]:
        return sorted(self._jobs.values(), key=lambda j: j.id)
