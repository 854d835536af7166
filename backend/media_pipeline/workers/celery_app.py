from celery import Celery

from media_pipeline.core.config import load_settings

settings = load_settings()

celery_app = Celery(
    "media_pipeline",
    broker=settings.redis_url or "memory://",
    include=["media_pipeline.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_ignore_result=True,
    timezone="UTC",
    enable_utc=True,
    task_default_queue="media_compression",
    # redeliver if a worker dies mid-job; the dispatcher makes that safe
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "reap-stale-jobs": {
            "task": "media_pipeline.reap_stale_jobs",
            "schedule": 60.0,
        },
    },
)
