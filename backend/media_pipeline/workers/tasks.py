import asyncio
import logging
from typing import Any, Dict, List

from media_pipeline.core.config import load_settings
from media_pipeline.core.errors import DispatchUnavailable
from media_pipeline.services.container import build_services
from media_pipeline.services.dispatcher import DispatchResult
from media_pipeline.workers.celery_app import celery_app

RETRY_DELAY_SECONDS = 30
MAX_RETRIES = 10


async def deliver_via_celery(job_id: str) -> None:
    # publishing is blocking I/O on the broker connection
    await asyncio.to_thread(process_job.delay, job_id)


async def _dispatch(job_id: str) -> DispatchResult:
    services = build_services(load_settings(), deliver_via_celery)
    try:
        return await services.dispatcher.dispatch(job_id)
    finally:
        await services.close()


async def _sweep() -> List[str]:
    services = build_services(load_settings(), deliver_via_celery)
    try:
        reaped = await services.queue.reap_stale_jobs()
        redelivered = await services.queue.redeliver_stalled_jobs()
    finally:
        await services.close()
    if redelivered:
        logging.warning("Redelivered %d stalled jobs: %s", len(redelivered), ", ".join(redelivered))
    return reaped


@celery_app.task(
    bind=True,
    name="media_pipeline.process_job",
    max_retries=MAX_RETRIES,
    default_retry_delay=RETRY_DELAY_SECONDS,
)
def process_job(self, job_id: str) -> Dict[str, Any]:
    """
    Delivery callback for one job id. May run more than once per job;
    the dispatcher turns repeats into no-ops. Retried while the job could
    not be started.
    """
    outcome = asyncio.run(_dispatch(job_id))
    if outcome.should_retry:
        logging.warning("Job %s not started (%s); retrying delivery", job_id, outcome.message)
        raise self.retry(exc=DispatchUnavailable(outcome.message))
    logging.info("Processed delivery for job %s: %s", job_id, outcome.message)
    return outcome.to_body()


@celery_app.task(name="media_pipeline.reap_stale_jobs")
def reap_stale_jobs() -> List[str]:
    reaped = asyncio.run(_sweep())
    if reaped:
        logging.warning("Failed %d stale jobs: %s", len(reaped), ", ".join(reaped))
    return reaped
