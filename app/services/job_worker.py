from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Mapping, Optional

from app.services.config import WorkerConfig
from app.services.project_store import Job, ProjectStore


logger = logging.getLogger(__name__)

JobHandler = Callable[[str], Awaitable[None]]


class JobWorker:
    """Runs durable jobs from the store.

    Each loop iteration claims one job (queued, or claimed by a process whose
    lease has expired), runs the handler registered for its kind and then
    marks it `done` or `failed`. At most `concurrency` handlers run at once.
    Stopping cancels handlers still in flight; their leases expire and the
    jobs are claimed again later.
    """

    def __init__(self, store: ProjectStore, handlers: Mapping[str, JobHandler], config: WorkerConfig) -> None:
        self._store = store
        self._handlers = dict(handlers)
        self._config = config
        self._semaphore = asyncio.Semaphore(config.concurrency)
        self._stopping = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    async def run(self) -> None:
        logger.info("job.worker.start concurrency=%d", self._config.concurrency)
        while not self._stopping.is_set():
            try:
                claimed = await self.run_once()
            except Exception:
                logger.exception("Failed to claim a job")
                claimed = False
            if not claimed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self._config.poll_interval_seconds)
                except asyncio.TimeoutError:
                    pass
        logger.info("job.worker.stop in_flight=%d", len(self._tasks))

    async def run_once(self) -> bool:
        """Claim at most one job and start it. Returns whether a job was claimed."""

        await self._semaphore.acquire()
        if self._stopping.is_set():
            self._semaphore.release()
            return False
        try:
            job = await self._store.claim_job(self._config.lease_seconds)
        except Exception:
            self._semaphore.release()
            raise
        if job is None:
            self._semaphore.release()
            return False
        if self._stopping.is_set():
            # Left claimed; another process picks it up once the lease expires.
            logger.info("job.claim.abandoned id=%s kind=%s", job.id, job.kind)
            self._semaphore.release()
            return False

        task = asyncio.create_task(self._execute(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def stop(self) -> None:
        self._stopping.set()
        while self._tasks:
            tasks = list(self._tasks)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for every started job to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _execute(self, job: Job) -> None:
        try:
            await self.process(job)
        except Exception:
            logger.exception("Failed to acknowledge job %s", job.id)
        finally:
            self._semaphore.release()

    async def process(self, job: Job) -> None:
        handler: Optional[JobHandler] = self._handlers.get(job.kind)
        if handler is None:
            logger.error("job.unknown_kind id=%s kind=%s", job.id, job.kind)
            await self._store.fail_job(job.id, f"No handler registered for job kind '{job.kind}'")
            return

        logger.info("job.start id=%s kind=%s target=%s attempt=%d", job.id, job.kind, job.target_id, job.attempts)
        try:
            await handler(job.target_id)
        except Exception as exc:
            logger.exception("Job %s (%s) failed for %s", job.id, job.kind, job.target_id)
            await self._store.fail_job(job.id, str(exc))
            return
        await self._store.complete_job(job.id)
        logger.info("job.done id=%s kind=%s target=%s", job.id, job.kind, job.target_id)
