"""
Shared plumbing for redirect-based payment providers.

A gateway turns an order into a signed provider request (``initiate``) and
turns a provider callback back into a ``CallbackResult`` (``verify_callback``).
Gateways only touch ``Payment`` rows; applying the result to the order is
the caller's job.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.errors import InvalidSignature, NotFound
from models.order import Order
from models.payment import Payment

logger = logging.getLogger(__name__)


@dataclass
class InitiatedPayment:
    payment_url: str
    transaction_code: str
    payment_id: int
    amount: Decimal
    order_id: int


@dataclass
class CallbackResult:
    success: bool
    order_id: int
    transaction_code: str
    transaction_id: Optional[str]
    amount: Decimal
    message: str
    payment_id: int
    already_processed: bool = False


@dataclass
class ParsedCallback:
    """Provider fields pulled out of a verified callback."""

    transaction_code: str
    success: bool
    transaction_id: Optional[str]
    amount: Decimal
    message: str


def canonicalize(fields: Mapping[str, Any], encode: Callable[[str], str] = str) -> str:
    """Join fields as ``key=value`` pairs sorted by key, encoding each value."""
    return "&".join(f"{key}={encode(str(fields[key]))}" for key in sorted(fields))


def sign(secret: str, payload: str, digestmod=hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), digestmod).hexdigest()


def signatures_match(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.lower(), str(received).lower())


def generate_transaction_code(db: Session, now: Optional[datetime] = None) -> str:
    """``PAY-YYYYMMDD-NNN``, numbered by how many payments were created that UTC day."""
    now = now or datetime.utcnow()
    day_start = datetime.combine(now.date(), time.min)
    day_end = day_start + timedelta(days=1)
    count = (
        db.query(func.count(Payment.id))
        .filter(Payment.created_at >= day_start, Payment.created_at < day_end)
        .scalar()
    )

    sequence = (count or 0) + 1
    while True:
        code = f"PAY-{now:%Y%m%d}-{sequence:03d}"
        taken = db.query(Payment.id).filter(Payment.transaction_code == code).first()
        if not taken:
            return code
        sequence += 1


def create_payment(
    db: Session,
    order: Order,
    method: str,
    amount: Decimal,
    description: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> Payment:
    payment = Payment(
        order_id=order.id,
        transaction_code=generate_transaction_code(db),
        method=method,
        amount=amount,
        status="pending",
        description=description,
        client_ip=client_ip,
    )
    db.add(payment)
    db.flush()
    return payment


class PaymentGateway(ABC):
    name: str = ""

    @abstractmethod
    def build_payment_url(self, payment: Payment, order: Order) -> str:
        """Return the URL the shopper is sent to. May call out to the provider."""

    @abstractmethod
    def expected_signature(self, params: Mapping[str, Any]) -> str:
        ...

    @abstractmethod
    def received_signature(self, params: Mapping[str, Any]) -> Optional[str]:
        ...

    @abstractmethod
    def parse_callback(self, params: Mapping[str, Any]) -> ParsedCallback:
        ...

    @abstractmethod
    def ipn_ack(self, result: Optional[CallbackResult]) -> Dict[str, str]:
        """Acknowledgement body for an IPN; ``None`` means it could not be processed."""

    def initiate(
        self,
        db: Session,
        order: Order,
        amount: Decimal,
        description: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> InitiatedPayment:
        description = description or f"Payment for order {order.order_code}"
        payment = create_payment(db, order, self.name, amount, description, client_ip or "127.0.0.1")
        try:
            payment.payment_url = self.build_payment_url(payment, order)
        except Exception:
            db.rollback()
            raise
        db.commit()
        db.refresh(payment)

        logger.info("Initiated %s payment %s for order %s", self.name, payment.transaction_code, order.order_code)
        return InitiatedPayment(
            payment_url=payment.payment_url,
            transaction_code=payment.transaction_code,
            payment_id=payment.id,
            amount=Decimal(str(payment.amount)),
            order_id=order.id,
        )

    def verify_signature(self, params: Mapping[str, Any]) -> None:
        if not signatures_match(self.expected_signature(params), self.received_signature(params)):
            logger.warning("Rejected %s callback with invalid signature", self.name)
            raise InvalidSignature(f"Invalid {self.name} signature")

    def verify_callback(self, db: Session, params: Mapping[str, Any]) -> CallbackResult:
        self.verify_signature(params)
        parsed = self.parse_callback(params)

        payment = (
            db.query(Payment)
            .filter(Payment.transaction_code == parsed.transaction_code, Payment.method == self.name)
            .one_or_none()
        )
        if not payment:
            raise NotFound("Payment")

        if payment.is_terminal:
            # Redirect and IPN both report the same transaction; the first one wins
            logger.info("Payment %s already %s, ignoring repeated callback", payment.transaction_code, payment.status)
            return CallbackResult(
                success=payment.status == "completed",
                order_id=payment.order_id,
                transaction_code=payment.transaction_code,
                transaction_id=payment.transaction_id,
                amount=Decimal(str(payment.amount)),
                message=parsed.message,
                payment_id=payment.id,
                already_processed=True,
            )

        success = parsed.success
        message = parsed.message
        if success and parsed.amount != Decimal(str(payment.amount)):
            logger.warning(
                "Payment %s amount mismatch: expected %s, provider reported %s",
                payment.transaction_code,
                payment.amount,
                parsed.amount,
            )
            success = False
            message = "Amount mismatch"

        payment.status = "completed" if success else "failed"
        payment.transaction_id = parsed.transaction_id
        payment.gateway_response = dict(params)
        db.commit()

        logger.info("Payment %s marked %s", payment.transaction_code, payment.status)
        return CallbackResult(
            success=success,
            order_id=payment.order_id,
            transaction_code=payment.transaction_code,
            transaction_id=parsed.transaction_id,
            amount=parsed.amount,
            message=message,
            payment_id=payment.id,
        )
