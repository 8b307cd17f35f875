"""
Celery Application Configuration

Configures Celery with:
- Separate queues for inference dispatch and CPU-bound imaging (split/stitch)
- Late acknowledgement so a lost worker re-delivers the task
- Beat schedule for the stale-job sweep
"""

from celery import Celery
from kombu import Queue

from src.core.config import settings

# Create Celery app
celery_app = Celery(
    "upscale_pipeline",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[
        "src.pipeline.tasks",
    ]
)

celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task tracking
    task_track_started=True,
    task_time_limit=300,  # 5 minute hard limit per task
    task_soft_time_limit=270,

    # Result expiration
    result_expires=86400,  # 24 hours

    # Imaging tasks hold whole tile sets in memory
    worker_prefetch_multiplier=1,

    # Queue definitions
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("inference", routing_key="inference.#"),
        Queue("imaging", routing_key="imaging.#"),
    ),
    task_default_queue="default",

    # Task routing
    task_routes={
        "src.pipeline.tasks.dispatch_tile_prediction": {"queue": "inference"},
        "src.pipeline.tasks.reconcile_job": {"queue": "inference"},
        "src.pipeline.tasks.split_job_tiles": {"queue": "imaging"},
        "src.pipeline.tasks.stitch_job": {"queue": "imaging"},
        "src.pipeline.tasks.sweep_stale_jobs": {"queue": "default"},
    },

    # Retry settings with exponential backoff
    task_default_retry_delay=settings.TILE_RETRY_BASE_DELAY_SECONDS,

    # Late acknowledgment for reliability
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Safety net against missed webhooks and abandoned jobs
    "sweep-stale-jobs": {
        "task": "src.pipeline.tasks.sweep_stale_jobs",
        "schedule": settings.SWEEP_INTERVAL_SECONDS,
    },
}
