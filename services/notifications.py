import logging
from typing import Any, Dict

from tasks.notification_tasks import (
    send_digital_delivery_task,
    send_order_confirmation_task,
    send_shipping_notification_task,
)

logger = logging.getLogger(__name__)

JOB_TASKS = {
    "order_confirmation": send_order_confirmation_task,
    "digital_delivery": send_digital_delivery_task,
    "order_shipped": send_shipping_notification_task,
}


def enqueue(job_type: str, payload: Dict[str, Any]) -> bool:
    """
    Hand a notification to the Celery worker.

    Fire-and-forget: returns False instead of raising when the job type is
    unknown or the broker cannot be reached.
    """
    task = JOB_TASKS.get(job_type)
    if not task:
        logger.error("Unknown notification job type: %s", job_type)
        return False
    try:
        task.delay(**payload)
    except Exception:
        logger.exception("Could not enqueue %s notification %s", job_type, payload)
        return False
    logger.debug("Queued %s notification %s", job_type, payload)
    return True
