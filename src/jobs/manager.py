"""Bulk-check job registry and per-job SSE event buffers."""

import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator

from src.api.models import JobRequest, UrlCheckResult

logger = logging.getLogger(__name__)

# Finished jobs stay visible to /status for this long
JOB_RETENTION_SECONDS = float(os.environ.get("JOB_RETENTION_SECONDS", "3600"))
# Upper bound on stored jobs; oldest finished jobs are evicted first
MAX_STORED_JOBS = int(os.environ.get("MAX_STORED_JOBS", "200"))
# Undelivered events kept per job when no SSE client is draining the queue
EVENT_BUFFER_SIZE = int(os.environ.get("JOB_EVENT_BUFFER_SIZE", "100"))
KEEPALIVE_SECONDS = 20

ACTIVE_STATUSES = ("pending", "running")
FINISHED_STATUSES = ("completed", "cancelled", "failed")
TERMINAL_EVENTS = ("job_done", "job_cancelled", "job_error")


def _sse(event_type: str, data: dict) -> dict:
    return {"event": event_type, "data": json.dumps(data)}


@dataclass
class Job:
    """A bulk-check run and the progress events produced for it."""

    id: str
    request: JobRequest
    status: str = "pending"
    urls_total: int = 0
    urls_completed: int = 0
    current_url: str | None = None
    results: list[UrlCheckResult] = field(default_factory=list)
    finished_at: float | None = None
    _cancelled: bool = False
    _events: asyncio.Queue = field(
        default_factory=lambda: asyncio.Queue(maxsize=EVENT_BUFFER_SIZE), repr=False
    )
    _task: Any = field(default=None, repr=False)  # asyncio.Task

    def __post_init__(self) -> None:
        if self.is_finished and self.finished_at is None:
            self.finished_at = time.monotonic()

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def finish(self, status: str) -> None:
        """Move the job to a final status and stamp the finish time."""
        self.status = status
        self.finished_at = time.monotonic()

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the job had already finished."""
        if self.is_finished:
            return False
        self._cancelled = True
        self.finish("cancelled")
        return True

    async def emit_event(self, event_type: str, data: dict) -> None:
        """Queue an SSE event, dropping the oldest one if the buffer is full."""
        if self._events.full():
            dropped = self._events.get_nowait()
            logger.debug(f"Job {self.id}: event buffer full, dropped {dropped['event']}")
        self._events.put_nowait(_sse(event_type, data))

    def _runner_failure(self) -> str | None:
        """Error text if the runner task ended without finishing the job."""
        task = self._task
        if task is None or not task.done() or self.is_finished:
            return None
        exc = None if task.cancelled() else task.exception()
        return str(exc) if exc else "Runner task ended unexpectedly"

    async def event_stream(self) -> AsyncGenerator[dict, None]:
        """Yield queued events until a terminal one, with keepalives while idle."""
        try:
            while True:
                try:
                    event = await asyncio.wait_for(
                        self._events.get(), timeout=KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    if self.is_finished:
                        # Terminal event went to an earlier client
                        yield _sse("job_done", {"status": self.status})
                        return
                    error = self._runner_failure()
                    if error is not None:
                        logger.error(f"Job {self.id}: runner died: {error}")
                        yield _sse("job_done", {"status": "failed", "error": error})
                        return
                    yield _sse("keepalive", {})
                    continue

                yield event
                if event["event"] in TERMINAL_EVENTS:
                    return
        except GeneratorExit:
            logger.info(f"Job {self.id}: SSE client disconnected")
            raise


class JobManager:
    """In-memory registry of bulk-check jobs."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    async def create_job(self, request: JobRequest) -> Job:
        """Register a job and start its runner in the background."""
        from src.jobs.runner import run_job

        job = Job(id=str(uuid.uuid4()), request=request, urls_total=len(request.urls))
        self._jobs[job.id] = job
        self._prune()
        job._task = asyncio.create_task(run_job(job))
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def active_job_count(self) -> int:
        """Number of pending or running jobs."""
        return sum(1 for job in self._jobs.values() if job.status in ACTIVE_STATUSES)

    async def cancel_job(self, job_id: str) -> Job | None:
        """Cancel a job. A job that already finished keeps its final status."""
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if not job.cancel():
            logger.info(f"Job {job_id} already {job.status}, not cancelling")
            return job
        await job.emit_event(
            "job_cancelled",
            {"urls_completed": job.urls_completed, "urls_total": job.urls_total},
        )
        logger.info(f"Cancelled job {job_id} after {job.urls_completed} URLs")
        return job

    def _prune(self) -> None:
        """Drop finished jobs past retention, then the oldest beyond MAX_STORED_JOBS."""
        now = time.monotonic()
        finished = sorted(
            (job for job in self._jobs.values() if job.is_finished),
            key=lambda job: job.finished_at,
        )
        excess = len(self._jobs) - MAX_STORED_JOBS
        evicted = 0
        for job in finished:
            if excess <= 0 and now - job.finished_at < JOB_RETENTION_SECONDS:
                break
            del self._jobs[job.id]
            excess -= 1
            evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} finished job(s)")

    async def shutdown(self) -> None:
        """Cancel every unfinished runner task and wait for them to exit."""
        tasks = []
        for job in self._jobs.values():
            task = job._task
            if task is not None and not task.done():
                job.cancel()
                task.cancel()
                tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Shutdown cancelled {len(tasks)} job(s)")
