import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from media_pipeline.core.errors import DispatchUnavailable
from media_pipeline.services.job_queue import JobQueue
from media_pipeline.services.orchestrator import JobOrchestrator, public_message


@dataclass
class DispatchResult:
    success: bool
    status_code: int
    message: str

    @property
    def should_retry(self) -> bool:
        return self.status_code >= 500

    def to_body(self) -> dict:
        if self.success:
            return {"success": True, "message": self.message}
        return {"success": False, "error": self.message}


PROCESSED = DispatchResult(True, 200, "Job processed successfully")


class Dispatcher:
    """
    Entry point for the delivery transport. Safe to call any number of times
    for the same job id: only a queued job is ever handed to the orchestrator.

    A 5xx result means the job was left queued (or its state is unknown) and
    the transport should deliver it again.
    """

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: JobOrchestrator,
        job_timeout_seconds: Optional[float] = None,
    ):
        self.queue = queue
        self.orchestrator = orchestrator
        self.job_timeout_seconds = job_timeout_seconds

    async def dispatch(self, job_id: str) -> DispatchResult:
        try:
            job = await self.queue.get_job_status(job_id)
        except Exception:
            logging.exception("Could not load job %s", job_id)
            return DispatchResult(False, DispatchUnavailable.status_code, "Job store unavailable")

        if job is None:
            return DispatchResult(False, 404, "Job not found")

        if job.status != "queued":
            logging.info("Duplicate delivery for job %s (%s); ignoring", job_id, job.status)
            return DispatchResult(True, 200, f"Job already {job.status}")

        if not self.orchestrator.supports(job.type):
            return DispatchResult(False, 400, f"Unknown job type: {job.type}")

        try:
            await asyncio.wait_for(
                self.orchestrator.process(job_id),
                timeout=self.job_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logging.error("Job %s exceeded %ss deadline", job_id, self.job_timeout_seconds)
            return await self._settle(job_id, "Job timed out")
        except Exception as exc:
            logging.exception("Unhandled error while processing job %s", job_id)
            return await self._settle(job_id, public_message(exc))

        return PROCESSED

    async def _settle(self, job_id: str, message: str) -> DispatchResult:
        """Fail the job; report a retryable error if it did not end terminal."""
        if await self.queue.fail_job(job_id, message):
            return PROCESSED

        try:
            job = await self.queue.get_job_status(job_id)
        except Exception:
            logging.exception("Could not reload job %s", job_id)
            job = None

        if job is not None and job.is_terminal:
            return PROCESSED

        logging.error(
            "Job %s left %s after a processing error; delivery must be retried",
            job_id,
            job.status if job is not None else "in an unknown state",
        )
        return DispatchResult(False, DispatchUnavailable.status_code, DispatchUnavailable.default_message)
