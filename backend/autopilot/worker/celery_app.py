"""
Celery application for the worker pools.

Broker/backend: Redis (REDIS_URL env).
Queues: generation, publishing, tracking (one worker pool each, started with
matching --concurrency) plus `control` for the delayed-task promoter.
"""
from celery import Celery
from kombu import Queue

from autopilot.settings import get_settings

settings = get_settings()

CONTROL_QUEUE = "control"

celery_app = Celery(
    "content_autopilot",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=settings.task_time_limit_sec,
    task_soft_time_limit=max(settings.task_time_limit_sec - 60, 30),
    task_default_queue=CONTROL_QUEUE,
    task_queues=(
        Queue("generation"),
        Queue("publishing"),
        Queue("tracking"),
        Queue(CONTROL_QUEUE),
    ),
    task_routes={
        "generation.*": {"queue": "generation"},
        "publishing.*": {"queue": "publishing"},
        "tracking.*": {"queue": "tracking"},
        "queue.*": {"queue": CONTROL_QUEUE},
    },
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=settings.job_ttl_sec,
    timezone="UTC",
    enable_utc=True,
    # visibility_timeout MUST be > task_time_limit to prevent redelivery
    # of long-running tasks. Priorities 0..9, 0 first.
    broker_transport_options={
        "visibility_timeout": settings.task_time_limit_sec * 2,
        "queue_order_strategy": "priority",
        "priority_steps": list(range(10)),
        "sep": ":",
    },
    beat_schedule={
        "promote-delayed-tasks": {
            "task": "queue.promote_due",
            "schedule": settings.delayed_poll_interval_sec,
            "options": {"expires": max(settings.delayed_poll_interval_sec * 5, 5)},
        },
    },
)

# Auto-discover tasks in autopilot.worker.tasks
celery_app.autodiscover_tasks(["autopilot.worker"])
