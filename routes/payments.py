import logging
from typing import List
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.config import settings
from core.db import get_db
from core.errors import AppError
from models.user import User
from schemas.payment import PaymentInitRequest, PaymentInitResponse, PaymentMethodOut
from services import payments

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


@router.get("/methods", response_model=List[PaymentMethodOut])
def payment_methods():
    return payments.PAYMENT_METHOD_INFO


@router.post("/{provider}/init", response_model=PaymentInitResponse)
def init_payment(
    provider: str,
    data: PaymentInitRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    initiated = payments.initiate_payment(
        db,
        order_id=data.order_id,
        provider=provider,
        user=current_user,
        amount=data.amount,
        description=data.description,
        client_ip=_client_ip(request),
    )
    return {
        "payment_url": initiated.payment_url,
        "transaction_code": initiated.transaction_code,
        "payment_id": initiated.payment_id,
        "order_id": initiated.order_id,
        "amount": float(initiated.amount),
    }


@router.get("/{provider}/callback")
def payment_callback(provider: str, request: Request, db: Session = Depends(get_db)):
    """Browser return from the provider: always ends in a redirect to the frontend."""
    try:
        result = payments.handle_provider_callback(db, provider, dict(request.query_params))
    except AppError as exc:
        logger.warning("%s callback rejected: %s", provider, exc.detail)
        return RedirectResponse(
            f"{settings.FRONTEND_URL}/payment/failed?message={quote('Payment verification failed')}",
            status_code=302,
        )

    if result.success:
        return RedirectResponse(f"{settings.FRONTEND_URL}/payment/success?orderId={result.order_id}", status_code=302)
    return RedirectResponse(
        f"{settings.FRONTEND_URL}/payment/failed?message={quote(result.message)}",
        status_code=302,
    )


async def _ipn_params(request: Request) -> dict:
    """Merge the query string with a JSON or form body; providers use either."""
    params = dict(request.query_params)
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            params.update(await request.json())
        else:
            params.update(dict(await request.form()))
    return params


@router.api_route("/{provider}/ipn", methods=["GET", "POST"])
def payment_ipn(provider: str, params: dict = Depends(_ipn_params), db: Session = Depends(get_db)):
    """Server-to-server notification: answer in the provider's acknowledgement format."""
    gateway = payments.get_gateway(provider)

    try:
        result = payments.handle_provider_callback(db, provider, params)
    except AppError as exc:
        logger.warning("%s IPN rejected: %s", provider, exc.detail)
        return JSONResponse(status_code=400, content=gateway.ipn_ack(None))

    return JSONResponse(status_code=200, content=gateway.ipn_ack(result))
