from dataclasses import dataclass
from typing import Optional

from media_pipeline.core.config import Settings
from media_pipeline.services.compressor import MediaCompressor
from media_pipeline.services.dispatcher import Dispatcher
from media_pipeline.services.job_queue import Deliver, JobQueue
from media_pipeline.services.job_store import JobStore, get_job_store
from media_pipeline.services.object_store import ObjectStore, get_object_store
from media_pipeline.services.orchestrator import JobOrchestrator


@dataclass
class Services:
    settings: Settings
    store: JobStore
    queue: JobQueue
    object_store: ObjectStore
    compressor: MediaCompressor
    orchestrator: JobOrchestrator
    dispatcher: Dispatcher

    async def close(self) -> None:
        await self.store.close()


def build_services(
    settings: Settings,
    deliver: Deliver,
    store: Optional[JobStore] = None,
    object_store: Optional[ObjectStore] = None,
    compressor: Optional[MediaCompressor] = None,
) -> Services:
    """Wire the collaborators together. Any of them can be swapped for a fake."""
    store = store or get_job_store(settings)
    object_store = object_store or get_object_store(settings)
    compressor = compressor or MediaCompressor()

    queue = JobQueue(store, deliver, settings)
    orchestrator = JobOrchestrator(queue, compressor, object_store)
    dispatcher = Dispatcher(queue, orchestrator, job_timeout_seconds=settings.job_timeout_seconds)

    return Services(
        settings=settings,
        store=store,
        queue=queue,
        object_store=object_store,
        compressor=compressor,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
    )
