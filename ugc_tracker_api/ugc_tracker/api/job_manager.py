from __future__ import annotations

import asyncio
import logging
import time
import traceback
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

log = logging.getLogger(__name__)

ACTIVE_STATUSES = {"queued", "running"}


@dataclass
class Job:
    job_id: str
    job_type: str
    status: str  # queued | running | succeeded | failed
    created_at: float
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class JobAlreadyRunning(Exception):
    def __init__(self, job: Job) -> None:
        super().__init__(f"{job.job_type} already running: {job.job_id}")
        self.job = job


class JobManager:
    """In-memory background jobs for the API process.

    Notes:
    - Job state lives in this process only; run Uvicorn with a single worker.
    - At most one job per job_type is active. A second sync would purge the
      rows the first one is still loading, so `create` and `run` refuse it.
    - Finished jobs beyond `max_history` are forgotten, oldest first.
    """

    def __init__(self, max_history: int = 200) -> None:
        self.max_history = max_history
        self._jobs: Dict[str, Job] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    def _active(self, job_type: str) -> Optional[Job]:
        for job in self._jobs.values():
            if job.job_type == job_type and job.status in ACTIVE_STATUSES:
                return job
        return None

    def _prune(self) -> None:
        finished = sorted(
            (j for j in self._jobs.values() if j.status not in ACTIVE_STATUSES),
            key=lambda j: j.created_at,
        )
        for job in finished[: max(0, len(self._jobs) - self.max_history)]:
            del self._jobs[job.job_id]

    async def _register(self, job_type: str) -> Job:
        async with self._lock:
            active = self._active(job_type)
            if active is not None:
                raise JobAlreadyRunning(active)
            job = Job(job_id=uuid.uuid4().hex, job_type=job_type, status="queued", created_at=time.time())
            self._jobs[job.job_id] = job
            self._prune()
        return job

    async def _execute(self, job: Job, coro_factory: Callable[[], Awaitable[Any]], *, reraise: bool) -> None:
        job.status = "running"
        job.started_at = time.time()
        log.info("Job %s (%s) started", job.job_id, job.job_type)
        try:
            job.result = await coro_factory()
            job.status = "succeeded"
        except Exception:
            job.error = traceback.format_exc()
            job.status = "failed"
            log.exception("Job %s (%s) failed", job.job_id, job.job_type)
            if reraise:
                raise
        finally:
            job.finished_at = time.time()

    async def create(self, job_type: str, coro_factory: Callable[[], Awaitable[Any]]) -> Job:
        """Register a job and run it in the background."""
        job = await self._register(job_type)

        # The loop only keeps weak references to tasks.
        task = asyncio.create_task(self._execute(job, coro_factory, reraise=False))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def run(self, job_type: str, coro_factory: Callable[[], Awaitable[Any]]) -> Job:
        """Register a job and await it in the caller's task.

        Shares the one-active-job-per-type check with `create`. A failure is
        recorded on the job and re-raised.
        """
        job = await self._register(job_type)
        await self._execute(job, coro_factory, reraise=True)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            return self._jobs.get(job_id)

    async def list(self, limit: int = 50) -> List[Job]:
        async with self._lock:
            jobs = list(self._jobs.values())

        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[: max(1, min(int(limit), 200))]
