"""Supervised background jobs.

Long-running work triggered by a request (a generation started by moving a
task to ``building``) runs as a named asyncio task owned by the
JobSupervisor. Each job has a record with its status, result and error, so
failures are observable through the API and can be retried instead of only
appearing in the logs.
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from errors import NotFoundError
from models.schemas import JobStatus

logger = structlog.get_logger()

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class JobRecord:
    """State of one background job.

    Attributes:
        id: Job identifier (e.g., "job_1a2b3c4d5e6f")
        name: Human-readable job name
        status: pending, running, succeeded or failed
        result: Serialized return value once succeeded
        error: Error message once failed
        started_at: Unix timestamp when the job started running
        finished_at: Unix timestamp when it finished
        attempts: Number of times the job has been run
    """

    id: str
    name: str
    status: JobStatus = JobStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None
    attempts: int = 0


def _serialize_result(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return model_dump(mode="json")
    return {"value": value}


class JobSupervisor:
    """Runs and tracks background jobs.

    Thread Safety:
        The task registry is guarded by an asyncio.Lock.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._factories: dict[str, JobFactory] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    async def _run(self, record: JobRecord, factory: JobFactory) -> None:
        record.status = JobStatus.RUNNING
        record.started_at = time.time()
        record.finished_at = None
        record.error = None
        record.attempts += 1
        log = logger.bind(job_id=record.id, job_name=record.name, attempt=record.attempts)
        log.info("job_started")

        try:
            value = await factory()
        except asyncio.CancelledError:
            record.status = JobStatus.FAILED
            record.error = "Job cancelled"
            record.finished_at = time.time()
            log.info("job_cancelled")
            return
        except Exception as e:
            record.status = JobStatus.FAILED
            record.error = str(e) or type(e).__name__
            record.finished_at = time.time()
            log.error("job_failed", error_type=type(e).__name__, error=record.error)
            return

        record.status = JobStatus.SUCCEEDED
        record.result = _serialize_result(value)
        record.finished_at = time.time()
        log.info("job_succeeded", duration_s=round(record.finished_at - record.started_at, 2))

    async def _schedule(self, record: JobRecord, factory: JobFactory) -> None:
        async with self._lock:
            task = asyncio.create_task(self._run(record, factory), name=f"job_{record.id}")
            self._tasks[record.id] = task

            def _remove_task(t: asyncio.Task[None], job_id: str = record.id) -> None:
                if self._tasks.get(job_id) is t:
                    self._tasks.pop(job_id, None)

            task.add_done_callback(_remove_task)

    async def submit(self, name: str, factory: JobFactory) -> str:
        """Start a job and return its id immediately.

        Args:
            name: Job name used in logs and listings.
            factory: Zero-argument callable returning the coroutine to run;
                called again on retry.
        """
        record = JobRecord(id=f"job_{uuid.uuid4().hex[:12]}", name=name)
        self._jobs[record.id] = record
        self._factories[record.id] = factory
        await self._schedule(record, factory)
        logger.info("job_submitted", job_id=record.id, job_name=name)
        return record.id

    def get(self, job_id: str) -> JobRecord | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[JobRecord]:
        return sorted(self._jobs.values(), key=lambda r: r.started_at or 0.0)

    @property
    def running_count(self) -> int:
        return sum(1 for r in self._jobs.values() if r.status == JobStatus.RUNNING)

    async def retry(self, job_id: str) -> JobRecord:
        """Run a failed job again under the same id.

        Raises:
            NotFoundError: If the job is unknown.
            ValueError: If the job has not failed.
        """
        record = self._jobs.get(job_id)
        if record is None:
            raise NotFoundError(f"Job {job_id} not found")
        if record.status != JobStatus.FAILED:
            raise ValueError(f"Job {job_id} is {record.status}; only failed jobs can be retried")

        record.status = JobStatus.PENDING
        record.result = None
        await self._schedule(record, self._factories[job_id])
        logger.info("job_retried", job_id=job_id, job_name=record.name)
        return record

    async def wait(self, job_id: str) -> JobRecord:
        """Wait for a job's current run to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        record = self._jobs.get(job_id)
        if record is None:
            raise NotFoundError(f"Job {job_id} not found")
        return record

    async def shutdown(self) -> None:
        """Cancel every running job and wait for them to unwind."""
        async with self._lock:
            tasks = list(self._tasks.items())
            self._tasks.clear()

        for job_id, task in tasks:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("job_shutdown_failed", job_id=job_id, error=str(e))

        logger.info("job_supervisor_shutdown", cancelled=len(tasks))
