"""
Order status state machine.

Only the transitions in ``ALLOWED_TRANSITIONS`` are legal; asking for the
status an order already has is a no-op. Compensations for cancellation
(entitlement revocation, stock restore, voucher refund) run after the
status change is committed, each on its own so one failing does not undo
the cancellation or the others.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.errors import InvalidStatus, InvalidTransition, NotFound
from models.order import ORDER_STATUSES, Order
from models.payment import Payment
from services import entitlements, notifications, vouchers

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"confirmed", "cancelled", "digital_delivered"}),
    "confirmed": frozenset({"shipped", "cancelled", "digital_delivered"}),
    "shipped": frozenset({"delivered"}),
    "delivered": frozenset(),
    "digital_delivered": frozenset(),
    "cancelled": frozenset(),
}

_TIMESTAMP_FIELDS = {
    "confirmed": "confirmed_at",
    "shipped": "shipped_at",
    "delivered": "delivered_at",
    "digital_delivered": "delivered_at",
    "cancelled": "cancelled_at",
}


def can_transition(current: str, new_status: str) -> bool:
    return new_status in ALLOWED_TRANSITIONS.get(current, frozenset())


def _get_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).one_or_none()
    if not order:
        raise NotFound("Order")
    return order


def set_order_status(db: Session, order_id: int, new_status: str) -> Order:
    if new_status not in ORDER_STATUSES:
        raise InvalidStatus(f"Invalid order status: {new_status}")
    return transition(db, _get_order(db, order_id), new_status)


def transition(db: Session, order: Order, new_status: str) -> Order:
    if new_status not in ORDER_STATUSES:
        raise InvalidStatus(f"Invalid order status: {new_status}")

    current = order.status
    if current == new_status:
        return order

    if not can_transition(current, new_status):
        raise InvalidTransition(
            f"Cannot change order status from {current} to {new_status}",
            current_status=current,
            requested_status=new_status,
        )
    if new_status == "digital_delivered" and not order.is_all_digital:
        raise InvalidTransition(
            "Only orders made entirely of digital books can be marked digital_delivered",
            current_status=current,
            requested_status=new_status,
        )

    now = datetime.utcnow()
    order.status = new_status
    setattr(order, _TIMESTAMP_FIELDS[new_status], now)
    if new_status == "delivered":
        _complete_cod_payment(db, order, now)
    elif new_status == "cancelled":
        _close_payments(db, order)

    db.commit()
    db.refresh(order)
    logger.info("Order %s: %s -> %s", order.order_code, current, new_status)

    if new_status == "cancelled":
        _run_compensations(db, order)
    elif new_status == "shipped":
        notifications.enqueue("order_shipped", {"order_id": order.id})
    return order


def _complete_cod_payment(db: Session, order: Order, now: datetime) -> None:
    """Cash is collected on delivery, so the pending COD payment settles here."""
    if order.payment_method != "cod" or order.payment_status != "pending":
        return
    order.payment_status = "completed"
    order.paid_at = now
    payment = (
        db.query(Payment)
        .filter(Payment.order_id == order.id, Payment.method == "cod", Payment.status == "pending")
        .order_by(Payment.id.desc())
        .first()
    )
    if payment:
        payment.status = "completed"


def _close_payments(db: Session, order: Order) -> None:
    """
    Settle payment state for a cancelled order.

    The pending COD payment will never be collected, so it fails. A paid
    order flips to ``refunded``; the money itself goes back outside this
    service. Pending online payments stay open so a late provider success
    can still be flagged for manual refund.
    """
    if order.payment_status == "completed":
        order.payment_status = "refunded"
        for payment in db.query(Payment).filter(Payment.order_id == order.id, Payment.status == "completed"):
            payment.status = "refunded"
        logger.warning("Order %s cancelled after payment, refund of %s due", order.order_code, order.total_price)
        return

    if order.payment_method == "cod":
        db.query(Payment).filter(
            Payment.order_id == order.id, Payment.method == "cod", Payment.status == "pending"
        ).update({"status": "failed"}, synchronize_session="fetch")
        order.payment_status = "failed"


def best_effort(db: Session, order: Order, label: str, action: Callable[[], object]) -> bool:
    try:
        action()
        db.commit()
        return True
    except Exception:
        db.rollback()
        logger.exception("Order %s: %s failed", order.order_code, label)
        return False


def _run_compensations(db: Session, order: Order) -> None:
    best_effort(db, order, "entitlement revocation", lambda: entitlements.revoke(db, order.id))
    best_effort(
        db,
        order,
        "voucher refund",
        lambda: vouchers.refund_order_usage(db, order.id, reason="Order cancelled"),
    )


def cancel_stale_orders(db: Session, now: Optional[datetime] = None) -> list[str]:
    """
    Cancel online-payment orders still unpaid after the checkout timeout.

    Abandoned VNPay/Momo checkouts would otherwise hold stock and voucher
    slots forever. COD orders wait for the shop to confirm them and are left
    alone. Returns the codes of the orders cancelled.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=settings.PENDING_ORDER_TIMEOUT_MINUTES)
    stale = (
        db.query(Order)
        .filter(
            Order.status == "pending",
            Order.payment_method != "cod",
            Order.payment_status != "completed",
            Order.created_at < cutoff,
            Order.is_deleted.is_(False),
        )
        .order_by(Order.created_at)
        .limit(settings.STALE_ORDER_BATCH_SIZE)
        .all()
    )

    cancelled = []
    for order in stale:
        # A callback may have paid it since the query ran
        db.refresh(order)
        if order.status != "pending" or order.payment_status == "completed":
            continue
        transition(db, order, "cancelled")
        cancelled.append(order.order_code)

    if cancelled:
        logger.info("Cancelled %s stale pending orders: %s", len(cancelled), ", ".join(cancelled))
    return cancelled
