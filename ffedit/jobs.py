"""Bounded-concurrency admission queue for transform jobs.

At most ``max_concurrent`` jobs run at once; the rest wait in strict FIFO
order. All state lives on the event loop that calls :meth:`JobQueue.submit`,
so one loop turn is the only lock: nothing here may be touched from another
thread.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional
from uuid import uuid4

import structlog

logger = logging.getLogger("ffedit.jobs")
struct_logger = structlog.get_logger("ffedit")

JobWork = Callable[[], Awaitable[Any]]


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


@dataclass(eq=False)
class Job:
    id: str
    sequence: int
    label: str
    work: JobWork
    future: "asyncio.Future[Any]"
    state: JobState = JobState.QUEUED
    created: float = field(default_factory=time.time)
    started: Optional[float] = None
    finished: Optional[float] = None
    error: Optional[str] = None
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state in (JobState.DONE, JobState.FAILED)

    def summary(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "state": self.state.value,
            "created": self.created,
            "started": self.started,
            "finished": self.finished,
        }
        if self.started is not None:
            data["wait_ms"] = round((self.started - self.created) * 1000, 1)
        if self.finished is not None and self.started is not None:
            data["duration_ms"] = round((self.finished - self.started) * 1000, 1)
        if self.error:
            data["error"] = self.error
        return data


class JobQueue:
    def __init__(self, max_concurrent: int = 1, *, history_limit: int = 50) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._running = 0
        self._waiting: Deque[Job] = deque()
        self._active: Dict[str, Job] = {}
        self._history: Deque[Job] = deque(maxlen=max(1, history_limit))
        self._sequence = itertools.count(1)
        self._completed = 0
        self._failed = 0

    @property
    def running_count(self) -> int:
        return self._running

    @property
    def queued_count(self) -> int:
        return len(self._waiting)

    def submit(self, work: JobWork, *, label: str = "") -> Job:
        """Admit ``work``; it starts now if a slot is free, otherwise it waits."""
        loop = asyncio.get_running_loop()
        job = Job(
            id=uuid4().hex,
            sequence=next(self._sequence),
            label=label,
            work=work,
            future=loop.create_future(),
        )
        self._active[job.id] = job
        if self._running < self.max_concurrent:
            self._start(job)
        else:
            self._waiting.append(job)
            logger.info("Job queued (queue size: %d)", len(self._waiting))
            struct_logger.info("job_queued", job_id=job.id, label=label, position=len(self._waiting))
        return job

    async def run(self, work: JobWork, *, label: str = "") -> Any:
        """Submit ``work`` and wait for its result (or its exception)."""
        job = self.submit(work, label=label)
        return await job.future

    def get(self, job_id: str) -> Optional[Job]:
        job = self._active.get(job_id)
        if job is not None:
            return job
        return next((item for item in self._history if item.id == job_id), None)

    def _start(self, job: Job) -> None:
        self._running += 1
        job.state = JobState.RUNNING
        job.started = time.time()
        logger.info("Job started (active: %d)", self._running)
        struct_logger.info("job_started", job_id=job.id, label=job.label, running=self._running)
        job.task = asyncio.create_task(self._execute(job))

    async def _execute(self, job: Job) -> None:
        try:
            result = await job.work()
        except asyncio.CancelledError:
            self._finish(job, JobState.FAILED, "cancelled")
            if not job.future.done():
                job.future.cancel()
            raise
        except Exception as exc:
            self._finish(job, JobState.FAILED, str(exc) or exc.__class__.__name__)
            struct_logger.error("job_failed", job_id=job.id, label=job.label, error=job.error)
            if not job.future.done():
                job.future.set_exception(exc)
        else:
            self._finish(job, JobState.DONE)
            struct_logger.info("job_completed", job_id=job.id, label=job.label)
            if not job.future.done():
                job.future.set_result(result)
        finally:
            self._release()

    def _finish(self, job: Job, state: JobState, error: Optional[str] = None) -> None:
        job.state = state
        job.finished = time.time()
        job.error = error
        job.task = None
        if state is JobState.DONE:
            self._completed += 1
        else:
            self._failed += 1
        self._active.pop(job.id, None)
        self._history.append(job)

    def _release(self) -> None:
        self._running -= 1
        logger.info("Job finished (active: %d, queued: %d)", self._running, len(self._waiting))
        while self._waiting and self._running < self.max_concurrent:
            self._start(self._waiting.popleft())

    def snapshot(self) -> Dict[str, Any]:
        return {
            "max_concurrent": self.max_concurrent,
            "running": self._running,
            "queued": len(self._waiting),
            "completed": self._completed,
            "failed": self._failed,
            "recent": [job.summary() for job in list(self._history)[-10:]],
        }

    def active_jobs(self) -> List[Job]:
        return sorted(self._active.values(), key=lambda job: job.sequence)
