"""
Order aggregate builder.

``create_order`` validates everything before writing anything, persists the
order together with its items and voucher consumption in a single commit,
then runs the follow-up steps (fulfilment, COD payment record, cart cleanup,
notifications). A failing follow-up step is logged against the order code
and never unwinds the order.
"""
import logging
import random
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from core.errors import AppError, Forbidden, InsufficientStock, InvalidRequest, InvalidStatus, NotFound
from models.book import Book
from models.order import ORDER_STATUSES, PAYMENT_METHODS, Order
from models.order_item import OrderItem
from models.user import User
from services import addresses, cart, catalog, entitlements, notifications, order_status, payments, shipping, vouchers

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or 0))


def _merge_lines(items: Iterable[Mapping[str, Any]]) -> dict[int, int]:
    """Collapse repeated book ids into one line, keeping first-seen order."""
    lines: dict[int, int] = {}
    for item in items or ():
        book_id = item.get("book_id")
        quantity = item.get("quantity")
        if book_id is None or quantity is None:
            raise InvalidRequest("Each item needs a book_id and a quantity")
        if int(quantity) < 1:
            raise InvalidRequest("Quantity must be at least 1", book_id=book_id)
        lines[int(book_id)] = lines.get(int(book_id), 0) + int(quantity)
    if not lines:
        raise InvalidRequest("Order must contain at least one item")
    return lines


def _order_code_taken(db: Session, code: str) -> bool:
    return db.query(Order.id).filter(Order.order_code == code).first() is not None


def generate_order_code(db: Session, now: Optional[datetime] = None, max_attempts: Optional[int] = None) -> str:
    now = now or datetime.utcnow()
    max_attempts = max_attempts or settings.ORDER_CODE_MAX_ATTEMPTS
    prefix = f"ORD-{now:%Y%m%d}"

    for _ in range(max_attempts):
        code = f"{prefix}-{random.randint(0, 9999):04d}"
        if not _order_code_taken(db, code):
            return code

    # Crowded day: widen the suffix with the millisecond clock
    for _ in range(max_attempts):
        code = f"{prefix}-{random.randint(0, 9999):04d}{int(time.time() * 1000) % 10000:04d}"
        if not _order_code_taken(db, code):
            logger.warning("Order code space crowded for %s, using fallback %s", prefix, code)
            return code

    raise AppError("Could not allocate an order code", prefix=prefix)


def compute_total(original_amount: Decimal, discount_amount: Decimal, shipping_fee: Decimal) -> Decimal:
    return max(ZERO, original_amount - discount_amount) + shipping_fee


def create_order(
    db: Session,
    user_id: int,
    items: Iterable[Mapping[str, Any]],
    shipping_address_id: int,
    shipping_provider_id: int,
    payment_method: str = "cod",
    voucher_code: Optional[str] = None,
    note: Optional[str] = None,
) -> Order:
    lines = _merge_lines(items)

    books: dict[int, Book] = {}
    for book_id, quantity in lines.items():
        book = catalog.find_book(db, book_id)
        if not book:
            raise NotFound("Book", detail=f"Book with ID {book_id} not found")
        if not book.is_digital and book.stock < quantity:
            raise InsufficientStock(
                f"Insufficient stock for book: {book.title}",
                book_id=book.id,
                available=book.stock,
                requested=quantity,
            )
        books[book_id] = book

    addresses.get_address_for_user(db, shipping_address_id, user_id)
    provider = shipping.get_active_provider(db, shipping_provider_id)
    if payment_method not in PAYMENT_METHODS:
        raise InvalidRequest(f"Unsupported payment method: {payment_method}")

    original_amount = sum((_to_decimal(books[book_id].price) * quantity for book_id, quantity in lines.items()), ZERO)

    evaluation = None
    if voucher_code and voucher_code.strip():
        evaluation = vouchers.evaluate(
            db,
            voucher_code,
            original_amount,
            user_id,
            category_ids={book.category_id for book in books.values() if book.category_id is not None},
            book_ids=set(books),
        )

    discount_amount = evaluation.discount_amount if evaluation else ZERO
    shipping_fee = ZERO if evaluation and evaluation.free_shipping else _to_decimal(provider.base_fee)
    total_price = compute_total(original_amount, discount_amount, shipping_fee)

    order = Order(
        order_code=generate_order_code(db),
        user_id=user_id,
        original_amount=original_amount,
        discount_amount=discount_amount,
        shipping_fee=shipping_fee,
        total_price=total_price,
        voucher_id=evaluation.voucher.id if evaluation else None,
        payment_method=payment_method,
        payment_status="pending",
        status="pending",
        shipping_address_id=shipping_address_id,
        shipping_provider_id=provider.id,
        note=note,
    )
    try:
        db.add(order)
        db.flush()
        db.add_all(
            OrderItem(
                order_id=order.id,
                book_id=book_id,
                quantity=quantity,
                price_at_purchase=_to_decimal(books[book_id].price),
            )
            for book_id, quantity in lines.items()
        )
        if evaluation:
            vouchers.consume(db, evaluation.voucher, user_id, order.id, original_amount, discount_amount)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(order)
    logger.info("Created order %s for user %s, total %s", order.order_code, user_id, order.total_price)

    _after_create(db, order, list(lines))
    db.refresh(order)
    return order


def _after_create(db: Session, order: Order, book_ids: list[int]) -> None:
    order_status.best_effort(
        db, order, "fulfilment", lambda: entitlements.grant(db, order.user_id, order.id, order.active_items)
    )
    if order.payment_method == "cod":
        order_status.best_effort(db, order, "COD payment record", lambda: payments.create_cod_payment(db, order))
    order_status.best_effort(db, order, "cart cleanup", lambda: cart.remove_items(db, order.user_id, book_ids))

    notifications.enqueue("order_confirmation", {"order_id": order.id})
    if any(item.book.is_digital for item in order.active_items):
        notifications.enqueue("digital_delivery", {"order_id": order.id})


def get_order(db: Session, order_id: int, user: User) -> Order:
    order = db.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).one_or_none()
    if not order:
        raise NotFound("Order")
    if not user.is_admin and order.user_id != user.id:
        raise Forbidden(detail="You can only view your own orders")
    return order


def _paginate(query, page: int, limit: int) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    total = query.order_by(None).with_entities(func.count(Order.id)).scalar()
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "items": orders,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


def _check_status_filter(status: Optional[str]) -> None:
    if status and status not in ORDER_STATUSES:
        raise InvalidStatus(f"Invalid order status: {status}")


def list_user_orders(db: Session, user_id: int, status: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
    _check_status_filter(status)
    query = db.query(Order).filter(Order.user_id == user_id, Order.is_deleted.is_(False))
    if status:
        query = query.filter(Order.status == status)
    return _paginate(query, page, limit)


def list_orders(
    db: Session, status: Optional[str] = None, user_id: Optional[int] = None, page: int = 1, limit: int = 10
) -> dict:
    _check_status_filter(status)
    query = db.query(Order).filter(Order.is_deleted.is_(False))
    if status:
        query = query.filter(Order.status == status)
    if user_id:
        query = query.filter(Order.user_id == user_id)
    return _paginate(query, page, limit)


def cancel_order(db: Session, order_id: int, user_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).one_or_none()
    if not order:
        raise NotFound("Order")
    if order.user_id != user_id:
        raise Forbidden(detail="You can only cancel your own orders")
    return order_status.transition(db, order, "cancelled")


def apply_payment_result(db: Session, result) -> Order:
    """Reflect a verified provider callback on the order it belongs to."""
    order = db.query(Order).filter(Order.id == result.order_id).one_or_none()
    if not order:
        raise NotFound("Order")

    if not result.success:
        if order.payment_status != "completed":
            order.payment_status = "failed"
            db.commit()
            logger.info("Order %s payment failed: %s", order.order_code, result.message)
        return order

    if order.status == "cancelled":
        logger.error(
            "Payment %s succeeded for cancelled order %s, needs manual refund",
            result.transaction_code,
            order.order_code,
        )
        return order

    if order.payment_status != "completed":
        order.payment_status = "completed"
        order.paid_at = datetime.utcnow()
        order.transaction_id = result.transaction_id
        db.commit()
        logger.info("Order %s paid, transaction %s", order.order_code, result.transaction_id)

    if order.status == "pending":
        order_status.transition(db, order, "confirmed")
    if order.status == "confirmed" and order.is_all_digital:
        order_status.transition(db, order, "digital_delivered")
    return order
