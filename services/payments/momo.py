import hashlib
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import requests

from core.config import settings
from core.errors import InvalidRequest, UpstreamFailure
from models.order import Order
from models.payment import Payment
from services.payments.base import CallbackResult, ParsedCallback, PaymentGateway, canonicalize, sign

logger = logging.getLogger(__name__)

CALLBACK_SIGNED_FIELDS = (
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)


class MomoGateway(PaymentGateway):
    """Momo: JSON POST to the create endpoint, HMAC-SHA256 over the raw sorted ``key=value`` string."""

    name = "momo"

    def __init__(self, partner_code=None, access_key=None, secret_key=None, endpoint=None):
        self.partner_code = partner_code or settings.MOMO_PARTNER_CODE
        self.access_key = access_key or settings.MOMO_ACCESS_KEY
        self.secret_key = secret_key or settings.MOMO_SECRET_KEY
        self.endpoint = endpoint or settings.MOMO_ENDPOINT

    def signature_for(self, fields: Mapping[str, Any]) -> str:
        return sign(self.secret_key, canonicalize({"accessKey": self.access_key, **fields}), hashlib.sha256)

    def build_payment_url(self, payment: Payment, order: Order) -> str:
        signed = {
            "amount": int(Decimal(str(payment.amount))),
            "extraData": "",
            "ipnUrl": settings.MOMO_IPN_URL,
            "orderId": payment.transaction_code,
            "orderInfo": payment.description,
            "partnerCode": self.partner_code,
            "redirectUrl": settings.MOMO_RETURN_URL,
            "requestId": f"{payment.transaction_code}-{int(time.time() * 1000)}",
            "requestType": settings.MOMO_REQUEST_TYPE,
        }
        body = {
            **signed,
            "partnerName": "Book Store",
            "storeId": "BookStore",
            "lang": "vi",
            "signature": self.signature_for(signed),
        }

        try:
            response = requests.post(self.endpoint, json=body, timeout=settings.PAYMENT_HTTP_TIMEOUT)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Momo create payment failed for %s: %s", payment.transaction_code, exc)
            raise UpstreamFailure(f"Momo payment creation failed: {exc}")

        if str(data.get("resultCode")) != "0" or not data.get("payUrl"):
            raise UpstreamFailure(
                f"Momo payment creation failed: {data.get('message', 'unknown error')}",
                provider_code=data.get("resultCode"),
            )
        return data["payUrl"]

    def expected_signature(self, params: Mapping[str, Any]) -> str:
        return self.signature_for({key: params.get(key, "") for key in CALLBACK_SIGNED_FIELDS})

    def received_signature(self, params: Mapping[str, Any]) -> Optional[str]:
        return params.get("signature")

    def parse_callback(self, params: Mapping[str, Any]) -> ParsedCallback:
        transaction_code = params.get("orderId")
        if not transaction_code:
            raise InvalidRequest("Missing orderId")
        try:
            amount = Decimal(str(params.get("amount", "0")))
        except InvalidOperation:
            raise InvalidRequest("Invalid amount")

        trans_id = params.get("transId")
        return ParsedCallback(
            transaction_code=transaction_code,
            success=str(params.get("resultCode")) == "0",
            transaction_id=str(trans_id) if trans_id is not None else None,
            amount=amount,
            message=params.get("message") or "",
        )

    def ipn_ack(self, result: Optional[CallbackResult]) -> Dict[str, str]:
        if result is not None and result.success:
            return {"resultCode": "0", "message": "Success"}
        return {"resultCode": "1", "message": "Failed"}
