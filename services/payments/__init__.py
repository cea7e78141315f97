import logging
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from core.errors import Forbidden, InvalidRequest, NotFound
from models.order import Order
from models.payment import Payment
from models.user import User
from services import orders
from services.payments.base import CallbackResult, InitiatedPayment, PaymentGateway, create_payment
from services.payments.momo import MomoGateway
from services.payments.vnpay import VNPayGateway

logger = logging.getLogger(__name__)

RETRYABLE_PAYMENT_STATUSES = ("pending", "failed")

GATEWAYS = {
    "vnpay": VNPayGateway,
    "momo": MomoGateway,
}

PAYMENT_METHOD_INFO = [
    {"id": "cod", "name": "Cash on delivery (COD)", "description": "Pay in cash when the order arrives", "enabled": True},
    {"id": "vnpay", "name": "VNPay", "description": "Pay through the VNPay gateway", "enabled": True},
    {"id": "momo", "name": "MoMo wallet", "description": "Pay with the MoMo e-wallet", "enabled": True},
    {"id": "bank_transfer", "name": "Bank transfer", "description": "Transfer to the store's bank account", "enabled": False},
    {"id": "zalopay", "name": "ZaloPay", "description": "Pay with the ZaloPay e-wallet", "enabled": False},
]


def get_gateway(provider: str) -> PaymentGateway:
    gateway_cls = GATEWAYS.get((provider or "").lower())
    if not gateway_cls:
        raise InvalidRequest(f"Unsupported payment provider: {provider}")
    return gateway_cls()


def initiate_payment(
    db: Session,
    order_id: int,
    provider: str,
    user: User,
    amount: Optional[Decimal] = None,
    description: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> InitiatedPayment:
    gateway = get_gateway(provider)

    order = db.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).one_or_none()
    if not order:
        raise NotFound("Order")
    if order.user_id != user.id:
        raise Forbidden(detail="You can only pay for your own orders")
    # A failed attempt leaves the order open for another one
    if order.status != "pending" or order.payment_status not in RETRYABLE_PAYMENT_STATUSES:
        raise InvalidRequest("Order is not awaiting payment", status=order.status, payment_status=order.payment_status)

    total = Decimal(str(order.total_price))
    if amount is not None and Decimal(str(amount)) != total:
        raise InvalidRequest("Payment amount does not match the order total", expected=str(total))

    return gateway.initiate(db, order, total, description, client_ip)


def handle_provider_callback(db: Session, provider: str, params: Mapping[str, Any]) -> CallbackResult:
    """Verify a browser callback or IPN and apply the outcome to the order."""
    gateway = get_gateway(provider)
    result = gateway.verify_callback(db, params)
    orders.apply_payment_result(db, result)
    return result


def create_cod_payment(db: Session, order: Order) -> Payment:
    """Pending cash-on-delivery payment; settled when the order is delivered. Does not commit."""
    return create_payment(
        db,
        order,
        "cod",
        Decimal(str(order.total_price)),
        description="Cash on delivery (COD)",
    )
