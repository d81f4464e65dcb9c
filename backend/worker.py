"""In-process job queue worker.

Jobs enqueued by the API are processed one at a time by a single background
task, so at most one run executes per worker.

Usage:
    >>> worker = RunWorker(controller)
    >>> worker.start()
    >>> await worker.enqueue(job)
    >>> await worker.stop()
"""

import asyncio

import structlog

from models.schemas import TreeAgentJob
from tree_agent.run_controller import RunController

logger = structlog.get_logger(__name__)


class RunWorker:
    """Sequential consumer of ``TreeAgentJob`` items.

    Attributes:
        controller: Executes each job. Outcomes are recorded on the run
            itself, so the worker keeps none.
    """

    def __init__(self, controller: RunController) -> None:
        self.controller = controller
        self._queue: asyncio.Queue[TreeAgentJob] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    def start(self) -> asyncio.Task[None]:
        """Start the consumer loop (idempotent)."""
        if self._task is not None and not self._task.done():
            return self._task
        task = asyncio.create_task(self._loop(), name="tree_agent_worker")
        self._task = task
        logger.info("worker_started")
        return task

    async def stop(self) -> None:
        """Cancel the consumer loop.

        A job still in flight is cancelled; the controller stops its run
        before the cancellation propagates. Jobs still queued stay queued in
        the store and are picked up again by ``recover_interrupted_runs``.
        """
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("worker_stopped", pending_jobs=self._queue.qsize())

    async def enqueue(self, job: TreeAgentJob) -> None:
        await self._queue.put(job)
        logger.info("job_enqueued", run_id=job.run_id, queue_size=self._queue.qsize())

    async def join(self) -> None:
        """Wait until every enqueued job has been processed."""
        await self._queue.join()

    async def _loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                outcome = await self.controller.process_job(job)
                logger.info(
                    "job_processed",
                    run_id=job.run_id,
                    success=outcome.success,
                    message=outcome.message,
                )
            except Exception as e:
                logger.error(
                    "job_processing_error",
                    run_id=job.run_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._queue.task_done()
