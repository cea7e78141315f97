"""
Customer notifications sent from the Celery worker.

Tasks take ids, not ORM objects, and reload what they need. Failures are
retried with exponential backoff and then dropped.
"""
import logging
from decimal import Decimal

from core.celery import celery_app
from core.config import settings
from core.db import db_session
from models.order import Order
from services import email as email_service

logger = logging.getLogger(__name__)


def _money(value) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


def _load_order(db, order_id: int) -> Order | None:
    order = db.query(Order).filter(Order.id == order_id).one_or_none()
    if not order:
        logger.warning("Notification skipped: order %s not found", order_id)
    return order


def order_confirmation_context(order: Order) -> dict:
    return {
        "name": order.user.name,
        "order_code": order.order_code,
        "items": [
            {"title": item.book.title, "quantity": item.quantity, "line_total": _money(item.line_total)}
            for item in order.active_items
        ],
        "original_amount": _money(order.original_amount),
        "discount_amount": _money(order.discount_amount),
        "voucher_code": order.voucher.code if order.voucher else None,
        "shipping_fee": _money(order.shipping_fee),
        "total_price": _money(order.total_price),
        "payment_method": order.payment_method,
        "estimated_time": order.shipping_provider.estimated_time if order.shipping_provider else None,
        "order_url": f"{settings.FRONTEND_URL}/orders/{order.id}",
    }


def digital_delivery_context(order: Order) -> dict:
    return {
        "name": order.user.name,
        "order_code": order.order_code,
        "books": [
            {"title": item.book.title, "format": item.book.format}
            for item in order.active_items
            if item.book.is_digital
        ],
        "download_limit": settings.DOWNLOAD_LIMIT,
        "library_url": f"{settings.FRONTEND_URL}/library",
    }


def _retry(task, exc):
    countdown = min(2 ** task.request.retries, 60)
    logger.warning("%s failed (%s), retry %s in %ss", task.name, exc, task.request.retries + 1, countdown)
    raise task.retry(exc=exc, countdown=countdown)


@celery_app.task(bind=True, max_retries=settings.NOTIFICATION_MAX_RETRIES)
def send_order_confirmation_task(self, order_id: int):
    """Email the order summary to the customer."""
    try:
        with db_session() as db:
            order = _load_order(db, order_id)
            if not order:
                return {"status": "skipped", "order_id": order_id}
            context = order_confirmation_context(order)
            to_email = order.user.email

        sent = email_service.send_templated_email(
            to_email,
            f"Order confirmation {context['order_code']}",
            "emails/order_confirmation.txt",
            context,
        )
        return {"status": "sent" if sent else "skipped", "order_id": order_id}
    except Exception as exc:
        if self.request.retries >= self.max_retries:
            logger.error("Giving up on order confirmation for order %s: %s", order_id, exc)
            return {"status": "failed", "order_id": order_id, "error": str(exc)}
        _retry(self, exc)


@celery_app.task(bind=True, max_retries=settings.NOTIFICATION_MAX_RETRIES)
def send_digital_delivery_task(self, order_id: int):
    """Tell the customer their digital books are ready in the library."""
    try:
        with db_session() as db:
            order = _load_order(db, order_id)
            if not order:
                return {"status": "skipped", "order_id": order_id}
            context = digital_delivery_context(order)
            to_email = order.user.email

        if not context["books"]:
            return {"status": "skipped", "order_id": order_id}

        sent = email_service.send_templated_email(
            to_email,
            f"Your books from order {context['order_code']} are ready",
            "emails/digital_delivery.txt",
            context,
        )
        return {"status": "sent" if sent else "skipped", "order_id": order_id}
    except Exception as exc:
        if self.request.retries >= self.max_retries:
            logger.error("Giving up on digital delivery email for order %s: %s", order_id, exc)
            return {"status": "failed", "order_id": order_id, "error": str(exc)}
        _retry(self, exc)


def shipping_notification_context(order: Order) -> dict:
    address = order.shipping_address
    provider = order.shipping_provider
    return {
        "name": order.user.name,
        "order_code": order.order_code,
        "items": [
            {"title": item.book.title, "quantity": item.quantity}
            for item in order.active_items
            if not item.book.is_digital
        ],
        "provider_name": provider.name if provider else None,
        "estimated_time": provider.estimated_time if provider else None,
        "recipient": address.name if address else None,
        "phone": address.phone if address else None,
        "address": ", ".join(
            part for part in (address.address, address.ward, address.district, address.city) if part
        ) if address else None,
        "shipped_at": order.shipped_at.strftime("%Y-%m-%d %H:%M") if order.shipped_at else None,
        "order_url": f"{settings.FRONTEND_URL}/orders/{order.id}",
    }


@celery_app.task(bind=True, max_retries=settings.NOTIFICATION_MAX_RETRIES)
def send_shipping_notification_task(self, order_id: int):
    """Tell the customer their parcel is on the way."""
    try:
        with db_session() as db:
            order = _load_order(db, order_id)
            if not order:
                return {"status": "skipped", "order_id": order_id}
            context = shipping_notification_context(order)
            to_email = order.user.email

        sent = email_service.send_templated_email(
            to_email,
            f"Order {context['order_code']} has shipped",
            "emails/order_shipped.txt",
            context,
        )
        return {"status": "sent" if sent else "skipped", "order_id": order_id}
    except Exception as exc:
        if self.request.retries >= self.max_retries:
            logger.error("Giving up on shipping notification for order %s: %s", order_id, exc)
            return {"status": "failed", "order_id": order_id, "error": str(exc)}
        _retry(self, exc)
