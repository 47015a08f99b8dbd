"""In-process archive job queue using asyncio.

Jobs are dispatched in submission order onto at most `concurrency` worker
tasks at a time. Capacity is signalled through a semaphore, so a freed slot
wakes the dispatcher immediately instead of on the next poll.
No external dependencies (Redis, Celery) needed.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from studyzip.jobs.dispatcher import JobDispatcher
from studyzip.jobs.models import ArchiveJobPayload, Job, JobStatus
from studyzip.jobs.store import InMemoryJobStore, JobStore

logger = logging.getLogger(__name__)

WorkerFn = Callable[[Job], Awaitable[Optional[Dict[str, Any]]]]


class InProcessQueue(JobDispatcher):
    """Local async job queue with a static concurrency ceiling."""

    def __init__(
        self,
        worker_fn: WorkerFn,
        concurrency: int = 3,
        store: Optional[JobStore] = None,
    ):
        """
        worker_fn: async callable(job: Job) -> result dict
            Does the work for one job. Its return value becomes job.result;
            any exception it raises marks the job failed.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._worker_fn = worker_fn
        self._concurrency = concurrency
        self._store = store or InMemoryJobStore()
        self._queue: asyncio.Queue[int] = asyncio.Queue()
        self._slots = asyncio.Semaphore(concurrency)
        self._active: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._next_id = 1
        self._peak_active = 0
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def submit(self, payload: ArchiveJobPayload) -> Job:
        job = Job(id=self._next_id, payload=payload)
        self._next_id += 1
        self._store.set(job)
        self._queue.put_nowait(job.id)
        logger.info(
            "Queued job_id=%s for dataset=%s (%d waiting)",
            job.id, payload.dataset_id, self._queue.qsize(),
        )
        return job

    async def get_status(self, job_id: int) -> Optional[Job]:
        return self._store.get(job_id)

    async def list_jobs(self) -> List[Job]:
        return self._store.list()

    async def stats(self) -> Dict[str, Any]:
        jobs = self._store.list()
        counts = {status.value: 0 for status in JobStatus}
        for job in jobs:
            counts[job.status.value] += 1
        return {
            "total": len(jobs),
            **counts,
            "concurrency": self._concurrency,
            "active_slots": len(self._active),
            "peak_active": self._peak_active,
            "is_running": self._running,
        }

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._dispatch_loop())
        logger.info("Archive job queue started (concurrency=%d)", self._concurrency)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Archive job queue stopped")

    async def wait_until_idle(self) -> None:
        """Block until every queued job has been dispatched and has finished."""
        while True:
            await self._queue.join()
            if not self._tasks:
                return
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _dispatch_loop(self) -> None:
        """Hand waiting jobs to worker tasks, oldest first, as slots free up."""
        while self._running:
            try:
                job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                job = self._store.get(job_id)
                if job is None or job.status != JobStatus.WAITING:
                    continue

                await self._slots.acquire()
                job.transition(JobStatus.ACTIVE)
                self._active.add(job.id)
                self._peak_active = max(self._peak_active, len(self._active))
                self._store.set(job)

                task = asyncio.create_task(self._run_job(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: Job) -> None:
        logger.info("Processing job_id=%s for dataset=%s", job.id, job.payload.dataset_id)
        try:
            result = await self._worker_fn(job)
            job.result = result or {}
            job.set_progress(100)
            job.transition(JobStatus.COMPLETED)
            logger.info("Job job_id=%s completed", job.id)
        except asyncio.CancelledError:
            job.error = "Cancelled during shutdown"
            job.transition(JobStatus.FAILED)
            raise
        except Exception as e:
            job.error = str(e) or type(e).__name__
            job.transition(JobStatus.FAILED)
            logger.error("Job job_id=%s failed: %s", job.id, job.error)
        finally:
            self._active.discard(job.id)
            self._store.set(job)
            self._slots.release()
