import hashlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote_plus

from core.config import settings
from core.errors import InvalidRequest
from models.order import Order
from models.payment import Payment
from services.payments.base import CallbackResult, ParsedCallback, PaymentGateway, canonicalize, sign

VNPAY_TZ = timezone(timedelta(hours=7))
SIGNATURE_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

RESPONSE_MESSAGES = {
    "00": "Transaction successful",
    "07": "Money deducted, transaction flagged as suspicious",
    "09": "Card or account is not registered for internet banking",
    "10": "Card or account verification failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card or account is locked",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "Issuing bank is under maintenance",
    "79": "Wrong payment password entered too many times",
}


def _vnpay_time(moment: datetime) -> str:
    return moment.astimezone(VNPAY_TZ).strftime("%Y%m%d%H%M%S")


def response_message(code: Optional[str]) -> str:
    return RESPONSE_MESSAGES.get(code or "", "Unknown error")


class VNPayGateway(PaymentGateway):
    """VNPay: signed GET redirect, HMAC-SHA512 over the sorted url-encoded query."""

    name = "vnpay"

    def __init__(self, tmn_code=None, secret_key=None, url=None, return_url=None):
        self.tmn_code = tmn_code or settings.VNPAY_TMN_CODE
        self.secret_key = secret_key or settings.VNPAY_SECRET_KEY
        self.url = url or settings.VNPAY_URL
        self.return_url = return_url or settings.VNPAY_RETURN_URL

    def query_string(self, fields: Mapping[str, Any]) -> str:
        return canonicalize(fields, quote_plus)

    def build_payment_url(self, payment: Payment, order: Order) -> str:
        now = datetime.now(timezone.utc)
        fields = {
            "vnp_Version": "2.1.0",
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": int(Decimal(str(payment.amount)) * 100),
            "vnp_CurrCode": "VND",
            "vnp_TxnRef": payment.transaction_code,
            "vnp_OrderInfo": payment.description,
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": self.return_url,
            "vnp_IpAddr": payment.client_ip or "127.0.0.1",
            "vnp_CreateDate": _vnpay_time(now),
            "vnp_ExpireDate": _vnpay_time(now + timedelta(minutes=settings.VNPAY_EXPIRE_MINUTES)),
        }
        query = self.query_string(fields)
        secure_hash = sign(self.secret_key, query, hashlib.sha512)
        return f"{self.url}?{query}&vnp_SecureHash={secure_hash}"

    def expected_signature(self, params: Mapping[str, Any]) -> str:
        fields = {key: value for key, value in params.items() if key not in SIGNATURE_FIELDS}
        return sign(self.secret_key, self.query_string(fields), hashlib.sha512)

    def received_signature(self, params: Mapping[str, Any]) -> Optional[str]:
        return params.get("vnp_SecureHash")

    def parse_callback(self, params: Mapping[str, Any]) -> ParsedCallback:
        transaction_code = params.get("vnp_TxnRef")
        if not transaction_code:
            raise InvalidRequest("Missing vnp_TxnRef")
        try:
            amount = Decimal(str(params.get("vnp_Amount", "0"))) / 100
        except InvalidOperation:
            raise InvalidRequest("Invalid vnp_Amount")

        code = params.get("vnp_ResponseCode")
        return ParsedCallback(
            transaction_code=transaction_code,
            success=code == "00",
            transaction_id=params.get("vnp_TransactionNo"),
            amount=amount,
            message=response_message(code),
        )

    def ipn_ack(self, result: Optional[CallbackResult]) -> Dict[str, str]:
        if result is None:
            return {"RspCode": "99", "Message": "Failed"}
        return {"RspCode": "00", "Message": "Success"}
