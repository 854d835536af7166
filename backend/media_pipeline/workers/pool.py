import asyncio
import logging
from typing import List, Optional

from media_pipeline.services.dispatcher import Dispatcher
from media_pipeline.services.job_queue import JobQueue


class WorkerPool:
    """
    In-process delivery transport: job ids go onto an asyncio queue and a
    fixed number of workers hand them to the dispatcher. Optionally sweeps on
    an interval: stuck processing jobs are failed and stalled queued jobs are
    delivered again.
    """

    def __init__(self, concurrency: int = 2):
        self.concurrency = max(1, concurrency)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def deliver(self, job_id: str) -> None:
        if not self.running:
            raise RuntimeError("Worker pool is not running")
        await self._queue.put(job_id)

    def start(
        self,
        dispatcher: Dispatcher,
        job_queue: Optional[JobQueue] = None,
        reap_interval: Optional[float] = None,
    ) -> None:
        for n in range(self.concurrency):
            self._tasks.append(asyncio.create_task(self._worker(n, dispatcher)))
        if job_queue is not None and reap_interval:
            self._tasks.append(asyncio.create_task(self._reaper(job_queue, reap_interval)))
        logging.info("Worker pool started with %d workers", self.concurrency)

    async def recover(self, job_queue: JobQueue) -> int:
        """Re-deliver jobs left queued by a previous process."""
        count = 0
        async for job_id in job_queue.pending_job_ids():
            await self.deliver(job_id)
            count += 1
        if count:
            logging.info("Re-delivered %d queued jobs", count)
        return count

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def _worker(self, n: int, dispatcher: Dispatcher) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                outcome = await dispatcher.dispatch(job_id)
                if outcome.should_retry:
                    logging.warning("Worker %d could not start job %s: %s", n, job_id, outcome.message)
                else:
                    logging.debug("Worker %d handled job %s: %s", n, job_id, outcome.message)
            except Exception:
                logging.exception("Worker %d crashed on job %s", n, job_id)
            finally:
                self._queue.task_done()

    async def _reaper(self, job_queue: JobQueue, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job_queue.reap_stale_jobs()
                await job_queue.redeliver_stalled_jobs()
            except Exception:
                logging.exception("Stale job reaper failed")
