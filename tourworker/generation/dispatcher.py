"""
Background execution of generation jobs.

  LocalDispatcher — asyncio tasks in this process (no Redis configured)
  RedisDispatcher — job ids go through the reliable Redis queue; a consumer
                    thread pulls them and runs the job on the app's event loop

Either way the caller returns as soon as the job id is handed over.
"""

import time
import asyncio
import logging
import threading
from functools import partial
from typing import Awaitable, Callable, Optional

from .. import metrics
from .. import queue as job_queue

logger = logging.getLogger(__name__)

JobRunner = Callable[..., Awaitable[None]]


class JobDispatcher:
    def __init__(self):
        self._runner: Optional[JobRunner] = None

    def bind(self, runner: JobRunner) -> None:
        """Set the coroutine function that runs one job: runner(job_id, resume=...)."""
        self._runner = runner

    async def _run(self, job_id: str, resume: bool = False) -> None:
        if self._runner is None:
            raise RuntimeError("Dispatcher has no job runner bound")
        metrics.add_gauge("active_jobs", 1)
        try:
            await self._runner(job_id, resume=resume)
        finally:
            metrics.add_gauge("active_jobs", -1)

    def submit(self, job_id: str, resume: bool = False) -> None:
        raise NotImplementedError

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-process job runs to finish."""

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Begin consuming work, if the dispatcher has a consumer."""

    def stop(self) -> None:
        pass


class LocalDispatcher(JobDispatcher):
    """Fire-and-forget asyncio tasks; tracked so they aren't garbage collected."""

    def __init__(self):
        super().__init__()
        self._tasks: set[asyncio.Task] = set()

    def submit(self, job_id: str, resume: bool = False) -> None:
        task = asyncio.get_running_loop().create_task(
            self._guarded(job_id, resume), name=f"generation-{job_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, job_id: str, resume: bool) -> None:
        try:
            await self._run(job_id, resume=resume)
        except Exception as e:
            metrics.record_error("dispatcher", e.__class__.__name__, str(e), job_id)
            logger.error(f"Generation job {job_id} crashed: {e}", exc_info=True)

    async def drain(self, timeout: Optional[float] = None) -> None:
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning(f"{len(not_done)} generation job(s) still running after {timeout}s")
                return


class RedisDispatcher(JobDispatcher):
    """
    Job ids are enqueued in Redis. A daemon thread blocks on the queue and
    schedules each job onto the event loop; the job id is acked when the
    run finishes and nacked (requeued with resume) if it crashes.
    """

    def __init__(self, redis_client, poll_timeout: int = 5):
        super().__init__()
        self._redis = redis_client
        self._poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._futures: set = set()

    def submit(self, job_id: str, resume: bool = False) -> None:
        job_queue.enqueue_job(self._redis, job_id, resume=resume)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        self._thread = threading.Thread(target=self._consume, args=(loop,), daemon=True, name="generation-queue")
        self._thread.start()
        logger.info("Generation queue consumer started (reliable mode)")

    def stop(self) -> None:
        self._stop.set()

    def _consume(self, loop: asyncio.AbstractEventLoop) -> None:
        while not self._stop.is_set():
            try:
                job_id = job_queue.dequeue_job(self._redis, timeout=self._poll_timeout)
                if job_id is None:
                    continue
                meta = job_queue.get_job_meta(self._redis, job_id) or {}
                resume = meta.get("resume") == "1"
                future = asyncio.run_coroutine_threadsafe(self._run(job_id, resume=resume), loop)
                self._futures.add(future)
                future.add_done_callback(partial(self._settle, job_id))
            except Exception as e:
                logger.error(f"Generation queue consumer error: {e}", exc_info=True)
                time.sleep(2)

    def _settle(self, job_id: str, future) -> None:
        self._futures.discard(future)
        try:
            if future.cancelled():
                job_queue.nack_job(self._redis, job_id, "run cancelled")
                return
            error = future.exception()
            if error is None:
                job_queue.ack_job(self._redis, job_id)
            else:
                metrics.record_error("dispatcher", error.__class__.__name__, str(error), job_id)
                logger.error(f"Generation job {job_id} crashed: {error}")
                job_queue.nack_job(self._redis, job_id, str(error))
        except Exception as e:
            logger.error(f"Could not settle queue entry for job {job_id}: {e}", exc_info=True)

    async def drain(self, timeout: Optional[float] = None) -> None:
        pending = [asyncio.wrap_future(f) for f in list(self._futures)]
        if pending:
            await asyncio.wait(pending, timeout=timeout)
