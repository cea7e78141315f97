from celery import Celery
from celery.schedules import crontab

from core.config import settings

NOTIFICATION_QUEUE = "notifications"
MAINTENANCE_QUEUE = "maintenance"

celery_app = Celery(
    "bookstore_checkout",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["tasks.notification_tasks", "tasks.order_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue=NOTIFICATION_QUEUE,
    task_routes={
        "tasks.notification_tasks.*": {"queue": NOTIFICATION_QUEUE},
        "tasks.order_tasks.*": {"queue": MAINTENANCE_QUEUE},
    },
    beat_schedule={
        "cancel-stale-orders": {
            "task": "tasks.order_tasks.cancel_stale_orders",
            "schedule": crontab(minute="*/5"),
        },
    },
    task_time_limit=5 * 60,
    task_soft_time_limit=4 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    # Notifications are best-effort; a lost job is acceptable
    task_acks_late=False,
    task_always_eager=False,
    task_ignore_result=True,
)
