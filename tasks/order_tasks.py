"""Periodic order housekeeping, scheduled by Celery beat."""
from core.celery import celery_app
from core.db import db_session
from services import order_status


@celery_app.task(name="tasks.order_tasks.cancel_stale_orders")
def cancel_stale_orders_task():
    """Cancel abandoned online checkouts so their stock and vouchers are released."""
    with db_session() as db:
        cancelled = order_status.cancel_stale_orders(db)
    return {"status": "ok", "cancelled": cancelled}
