"""
Voucher engine.

``evaluate`` is read-only and raises the first failing rule's error.
Consumption (usage row + ``used_count`` increment) happens only through
``consume`` when an order is committed; refunds go through
``refund_order_usage`` on cancellation.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional, Type

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from core.errors import (
    AppError,
    InvalidRequest,
    NotFound,
    VoucherAlreadyUsed,
    VoucherInvalid,
    VoucherNotApplicable,
)
from models.voucher import Voucher
from models.voucher_usage import VoucherUsage

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class OrderContext:
    order_amount: Decimal
    user_id: int
    category_ids: set[int]
    book_ids: set[int]
    now: datetime


@dataclass
class VoucherEvaluation:
    voucher: Voucher
    discount_amount: Decimal

    @property
    def free_shipping(self) -> bool:
        return self.voucher.type == "free_shipping"


@dataclass(frozen=True)
class VoucherRule:
    name: str
    error: Type[AppError]
    message: str
    check: Callable[[Session, Voucher, OrderContext], bool]


def _within_window(db: Session, voucher: Voucher, ctx: OrderContext) -> bool:
    return voucher.is_valid_at(ctx.now)


def _meets_minimum(db: Session, voucher: Voucher, ctx: OrderContext) -> bool:
    return ctx.order_amount >= _to_decimal(voucher.min_order_amount)


def _user_allowed(db: Session, voucher: Voucher, ctx: OrderContext) -> bool:
    allowed = {user.id for user in voucher.users}
    return not allowed or ctx.user_id in allowed


def _category_allowed(db: Session, voucher: Voucher, ctx: OrderContext) -> bool:
    allowed = {category.id for category in voucher.categories}
    return not allowed or bool(allowed & ctx.category_ids)


def _book_allowed(db: Session, voucher: Voucher, ctx: OrderContext) -> bool:
    allowed = {book.id for book in voucher.books}
    return not allowed or bool(allowed & ctx.book_ids)


def _not_used_by_user(db: Session, voucher: Voucher, ctx: OrderContext) -> bool:
    if voucher.usage_limit is None:
        return True
    return not has_user_used_voucher(db, voucher.id, ctx.user_id)


VOUCHER_RULES: tuple[VoucherRule, ...] = (
    VoucherRule("validity", VoucherInvalid, "Voucher is inactive, expired or fully used", _within_window),
    VoucherRule("min_order_amount", VoucherNotApplicable, "Order amount is below the voucher minimum", _meets_minimum),
    VoucherRule("applicable_users", VoucherNotApplicable, "Voucher is not available for this user", _user_allowed),
    VoucherRule("applicable_categories", VoucherNotApplicable, "Voucher does not apply to these categories", _category_allowed),
    VoucherRule("applicable_books", VoucherNotApplicable, "Voucher does not apply to these books", _book_allowed),
    VoucherRule("per_user_usage", VoucherAlreadyUsed, "You have already used this voucher", _not_used_by_user),
)


def find_by_code(db: Session, code: str) -> Voucher | None:
    return (
        db.query(Voucher)
        .filter(Voucher.code == code.strip().upper(), Voucher.is_deleted.is_(False))
        .one_or_none()
    )


def has_user_used_voucher(db: Session, voucher_id: int, user_id: int) -> bool:
    return (
        db.query(VoucherUsage.id)
        .filter(
            VoucherUsage.voucher_id == voucher_id,
            VoucherUsage.user_id == user_id,
            VoucherUsage.is_refunded.is_(False),
        )
        .first()
        is not None
    )


def calculate_discount(voucher: Voucher, order_amount: Decimal) -> Decimal:
    order_amount = _to_decimal(order_amount)
    value = _to_decimal(voucher.value)

    if voucher.type == "percentage":
        discount = order_amount * value / Decimal(100)
    elif voucher.type == "fixed_amount":
        discount = value
    else:
        # free_shipping: the shipping fee is waived by the order builder
        discount = Decimal("0")

    if voucher.max_discount_amount is not None:
        discount = min(discount, _to_decimal(voucher.max_discount_amount))

    discount = max(Decimal("0"), min(discount, order_amount))
    return discount.quantize(CENT)


def evaluate(
    db: Session,
    code: str,
    order_amount,
    user_id: int,
    category_ids: Optional[Iterable[int]] = None,
    book_ids: Optional[Iterable[int]] = None,
    now: Optional[datetime] = None,
) -> VoucherEvaluation:
    voucher = find_by_code(db, code)
    if not voucher:
        raise NotFound("Voucher")

    ctx = OrderContext(
        order_amount=_to_decimal(order_amount),
        user_id=user_id,
        category_ids=set(category_ids or ()),
        book_ids=set(book_ids or ()),
        now=now or datetime.utcnow(),
    )
    for rule in VOUCHER_RULES:
        if not rule.check(db, voucher, ctx):
            logger.debug("Voucher %s rejected by rule %s for user %s", voucher.code, rule.name, user_id)
            raise rule.error(rule.message, rule=rule.name)

    return VoucherEvaluation(voucher=voucher, discount_amount=calculate_discount(voucher, ctx.order_amount))


def check_voucher(
    db: Session,
    code: str,
    order_amount,
    user_id: int,
    category_ids: Optional[Iterable[int]] = None,
    book_ids: Optional[Iterable[int]] = None,
) -> dict:
    """Preview a voucher without consuming it. Only malformed input raises."""
    if not code or not code.strip():
        raise InvalidRequest("Voucher code is required")
    amount = _to_decimal(order_amount)
    if amount < 0:
        raise InvalidRequest("Order amount cannot be negative")

    try:
        result = evaluate(db, code, amount, user_id, category_ids, book_ids)
    except (NotFound, VoucherInvalid, VoucherNotApplicable, VoucherAlreadyUsed) as exc:
        return {
            "code": code.strip().upper(),
            "applicable": False,
            "discount_amount": Decimal("0"),
            "free_shipping": False,
            "reason": exc.detail,
        }

    return {
        "code": result.voucher.code,
        "applicable": True,
        "discount_amount": result.discount_amount,
        "free_shipping": result.free_shipping,
        "reason": None,
    }


def consume(
    db: Session,
    voucher: Voucher,
    user_id: int,
    order_id: int,
    order_amount,
    discount_amount,
) -> VoucherUsage:
    """Record a usage and bump ``used_count`` without going past ``usage_limit``.

    Does not commit; the order builder commits it together with the order.
    """
    result = db.execute(
        update(Voucher)
        .where(
            Voucher.id == voucher.id,
            or_(Voucher.usage_limit.is_(None), Voucher.used_count < Voucher.usage_limit),
        )
        .values(used_count=Voucher.used_count + 1)
    )
    if result.rowcount == 0:
        raise VoucherInvalid("Voucher usage limit reached", rule="usage_limit")

    usage = VoucherUsage(
        voucher_id=voucher.id,
        user_id=user_id,
        order_id=order_id,
        voucher_code=voucher.code,
        discount_amount=_to_decimal(discount_amount),
        order_amount=_to_decimal(order_amount),
    )
    db.add(usage)
    db.flush()
    return usage


def refund_order_usage(db: Session, order_id: int, reason: str) -> VoucherUsage | None:
    """Refund the live usage tied to an order, if any. Does not commit."""
    usage = (
        db.query(VoucherUsage)
        .filter(VoucherUsage.order_id == order_id, VoucherUsage.is_refunded.is_(False))
        .one_or_none()
    )
    if not usage:
        return None

    usage.is_refunded = True
    usage.refunded_at = datetime.utcnow()
    usage.refund_reason = reason
    db.execute(
        update(Voucher)
        .where(Voucher.id == usage.voucher_id, Voucher.used_count > 0)
        .values(used_count=Voucher.used_count - 1)
    )
    db.flush()
    logger.info("Refunded voucher %s for order %s", usage.voucher_code, order_id)
    return usage
