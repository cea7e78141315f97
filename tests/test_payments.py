"""
Payment gateway tests: signing, callback verification, idempotence and the
order-side effects of a verified callback.
"""
import hashlib
import hmac
import re
from decimal import Decimal
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qsl, urlsplit

import pytest
import requests

from core.config import settings
from core.errors import Forbidden, InvalidRequest, InvalidSignature, NotFound, UpstreamFailure
from models.order import Order
from models.payment import Payment
from services import payments
from services.payments.base import canonicalize, generate_transaction_code, sign
from services.payments.momo import CALLBACK_SIGNED_FIELDS, MomoGateway
from services.payments.vnpay import VNPayGateway


def vnpay_callback_params(transaction_code, amount, response_code="00", **overrides):
    params = {
        "vnp_Amount": str(int(Decimal(amount) * 100)),
        "vnp_BankCode": "NCB",
        "vnp_OrderInfo": "Payment for order",
        "vnp_PayDate": "20240101120000",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": "TESTTMN1",
        "vnp_TransactionNo": "14000001",
        "vnp_TransactionStatus": response_code,
        "vnp_TxnRef": transaction_code,
    }
    params.update(overrides)
    params["vnp_SecureHash"] = VNPayGateway().expected_signature(params)
    return params


def momo_callback_params(transaction_code, amount, result_code=0, **overrides):
    params = {
        "partnerCode": "MOMOTEST",
        "orderId": transaction_code,
        "requestId": f"{transaction_code}-1",
        "amount": int(Decimal(amount)),
        "orderInfo": "Payment for order",
        "orderType": "momo_wallet",
        "transId": 3012345678,
        "resultCode": result_code,
        "message": "Successful." if result_code == 0 else "Transaction denied.",
        "payType": "qr",
        "responseTime": 1704081600000,
        "extraData": "",
    }
    params.update(overrides)
    raw = canonicalize({"accessKey": settings.MOMO_ACCESS_KEY, **{key: params[key] for key in CALLBACK_SIGNED_FIELDS}})
    params["signature"] = hmac.new(settings.MOMO_SECRET_KEY.encode(), raw.encode(), hashlib.sha256).hexdigest()
    return params


@pytest.fixture
def vnpay_order(checkout, paperback):
    return checkout([{"book_id": paperback.id, "quantity": 1}], payment_method="vnpay")


@pytest.fixture
def vnpay_payment(db, vnpay_order, test_user):
    return payments.initiate_payment(db, vnpay_order.id, "vnpay", test_user, client_ip="10.0.0.1")


def _momo_response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


class TestSigningHelpers:
    def test_canonicalize_sorts_keys(self):
        assert canonicalize({"b": 2, "a": "x y", "c": ""}) == "a=x y&b=2&c="

    def test_canonicalize_applies_encoder(self):
        from urllib.parse import quote_plus

        assert canonicalize({"info": "a b&c"}, quote_plus) == "info=a+b%26c"

    def test_sign_matches_hmac(self):
        expected = hmac.new(b"k", b"payload", hashlib.sha512).hexdigest()
        assert sign("k", "payload", hashlib.sha512) == expected

    def test_transaction_codes_are_sequential(self, db, vnpay_order):
        from services.payments.base import create_payment

        first = create_payment(db, vnpay_order, "vnpay", Decimal("1"))
        second = create_payment(db, vnpay_order, "vnpay", Decimal("1"))
        db.commit()

        assert re.match(r"^PAY-\d{8}-\d{3}$", first.transaction_code)
        assert int(second.transaction_code[-3:]) == int(first.transaction_code[-3:]) + 1
        assert generate_transaction_code(db) not in {first.transaction_code, second.transaction_code}


class TestVNPayInitiate:
    def test_builds_signed_url(self, db, vnpay_order, vnpay_payment):
        parts = urlsplit(vnpay_payment.payment_url)
        query = dict(parse_qsl(parts.query))

        assert vnpay_payment.payment_url.startswith("https://sandbox.vnpayment.vn/")
        assert query["vnp_TxnRef"] == vnpay_payment.transaction_code
        assert query["vnp_Amount"] == str(int(vnpay_order.total_price * 100))
        assert query["vnp_TmnCode"] == "TESTTMN1"
        assert query["vnp_IpAddr"] == "10.0.0.1"
        assert re.match(r"^\d{14}$", query["vnp_CreateDate"])
        assert re.match(r"^\d{14}$", query["vnp_ExpireDate"])

        signature = query.pop("vnp_SecureHash")
        assert signature == VNPayGateway().expected_signature(query)

    def test_persists_pending_payment(self, db, vnpay_order, vnpay_payment):
        payment = db.get(Payment, vnpay_payment.payment_id)
        assert payment.status == "pending"
        assert payment.method == "vnpay"
        assert payment.order_id == vnpay_order.id
        assert payment.payment_url == vnpay_payment.payment_url
        assert payment.amount == vnpay_order.total_price

    def test_only_owner_can_pay(self, db, vnpay_order, other_user):
        with pytest.raises(Forbidden):
            payments.initiate_payment(db, vnpay_order.id, "vnpay", other_user)

    def test_amount_must_match_total(self, db, vnpay_order, test_user):
        with pytest.raises(InvalidRequest):
            payments.initiate_payment(db, vnpay_order.id, "vnpay", test_user, amount=Decimal("1"))

    def test_unknown_provider(self, db, vnpay_order, test_user):
        with pytest.raises(InvalidRequest):
            payments.initiate_payment(db, vnpay_order.id, "paypal", test_user)

    def test_cancelled_order_cannot_be_paid(self, db, vnpay_order, test_user):
        from services import orders

        orders.cancel_order(db, vnpay_order.id, test_user.id)
        with pytest.raises(InvalidRequest):
            payments.initiate_payment(db, vnpay_order.id, "vnpay", test_user)

    def test_unknown_order(self, db, test_user):
        with pytest.raises(NotFound):
            payments.initiate_payment(db, 9999, "vnpay", test_user)


class TestVNPayCallback:
    def test_success_confirms_order(self, db, vnpay_order, vnpay_payment):
        params = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price)

        result = payments.handle_provider_callback(db, "vnpay", params)

        assert result.success is True
        assert result.order_id == vnpay_order.id
        assert result.transaction_id == "14000001"
        payment = db.get(Payment, vnpay_payment.payment_id)
        assert payment.status == "completed"
        assert payment.transaction_id == "14000001"
        assert payment.gateway_response["vnp_ResponseCode"] == "00"

        order = db.get(Order, vnpay_order.id)
        db.refresh(order)
        assert order.status == "confirmed"
        assert order.confirmed_at is not None
        assert order.payment_status == "completed"
        assert order.paid_at is not None
        assert order.transaction_id == "14000001"

    def test_tampered_amount_rejected(self, db, vnpay_order, vnpay_payment):
        params = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price)
        params["vnp_Amount"] = "100"

        with pytest.raises(InvalidSignature):
            payments.handle_provider_callback(db, "vnpay", params)

        payment = db.get(Payment, vnpay_payment.payment_id)
        db.refresh(payment)
        assert payment.status == "pending"
        assert db.get(Order, vnpay_order.id).status == "pending"

    def test_missing_signature_rejected(self, db, vnpay_order, vnpay_payment):
        params = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price)
        del params["vnp_SecureHash"]
        with pytest.raises(InvalidSignature):
            VNPayGateway().verify_callback(db, params)

    def test_signature_is_case_insensitive(self, db, vnpay_order, vnpay_payment):
        params = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price)
        params["vnp_SecureHash"] = params["vnp_SecureHash"].upper()
        params["vnp_SecureHashType"] = "HmacSHA512"
        assert VNPayGateway().verify_callback(db, params).success is True

    def test_unknown_transaction_code(self, db):
        params = vnpay_callback_params("PAY-20240101-999", Decimal("1000"))
        with pytest.raises(NotFound):
            VNPayGateway().verify_callback(db, params)

    def test_failure_code_marks_payment_failed(self, db, vnpay_order, vnpay_payment):
        params = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price, response_code="24")

        result = payments.handle_provider_callback(db, "vnpay", params)

        assert result.success is False
        assert result.message == "Customer cancelled the transaction"
        assert db.get(Payment, vnpay_payment.payment_id).status == "failed"
        order = db.get(Order, vnpay_order.id)
        assert order.status == "pending"
        assert order.payment_status == "failed"

    def test_retry_after_failed_attempt(self, db, vnpay_order, vnpay_payment, test_user):
        cancelled = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price, response_code="24")
        payments.handle_provider_callback(db, "vnpay", cancelled)

        retry = payments.initiate_payment(db, vnpay_order.id, "vnpay", test_user)
        assert retry.payment_id != vnpay_payment.payment_id

        params = vnpay_callback_params(retry.transaction_code, vnpay_order.total_price)
        result = payments.handle_provider_callback(db, "vnpay", params)

        assert result.success is True
        assert db.get(Payment, vnpay_payment.payment_id).status == "failed"
        assert db.get(Payment, retry.payment_id).status == "completed"
        order = db.get(Order, vnpay_order.id)
        db.refresh(order)
        assert order.status == "confirmed"
        assert order.payment_status == "completed"

    def test_no_new_attempt_once_paid(self, db, vnpay_order, vnpay_payment, test_user):
        params = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price)
        payments.handle_provider_callback(db, "vnpay", params)

        with pytest.raises(InvalidRequest):
            payments.initiate_payment(db, vnpay_order.id, "vnpay", test_user)

    def test_amount_mismatch_recorded_as_failure(self, db, vnpay_order, vnpay_payment):
        params = vnpay_callback_params(vnpay_payment.transaction_code, Decimal("1000"))

        result = VNPayGateway().verify_callback(db, params)

        assert result.success is False
        assert result.message == "Amount mismatch"
        assert db.get(Payment, vnpay_payment.payment_id).status == "failed"

    def test_duplicate_callback_is_idempotent(self, db, vnpay_order, vnpay_payment):
        params = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price)
        payments.handle_provider_callback(db, "vnpay", params)

        # IPN reports failure after the redirect already succeeded
        late = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price, response_code="99")
        result = payments.handle_provider_callback(db, "vnpay", late)

        assert result.already_processed is True
        assert result.success is True
        assert db.get(Payment, vnpay_payment.payment_id).status == "completed"
        assert db.get(Order, vnpay_order.id).status == "confirmed"

    def test_success_for_cancelled_order_does_not_revive(self, db, vnpay_order, vnpay_payment, test_user, caplog):
        from services import orders

        orders.cancel_order(db, vnpay_order.id, test_user.id)
        params = vnpay_callback_params(vnpay_payment.transaction_code, vnpay_order.total_price)

        payments.handle_provider_callback(db, "vnpay", params)

        order = db.get(Order, vnpay_order.id)
        assert order.status == "cancelled"
        assert "needs manual refund" in caplog.text

    def test_digital_order_is_delivered_on_payment(self, db, checkout, ebook, test_user):
        order = checkout([{"book_id": ebook.id, "quantity": 1}], payment_method="vnpay")
        initiated = payments.initiate_payment(db, order.id, "vnpay", test_user)
        params = vnpay_callback_params(initiated.transaction_code, order.total_price)

        payments.handle_provider_callback(db, "vnpay", params)

        order = db.get(Order, order.id)
        assert order.status == "digital_delivered"
        assert order.confirmed_at is not None
        assert order.delivered_at is not None

    def test_ipn_ack_bodies(self):
        gateway = VNPayGateway()
        assert gateway.ipn_ack(None) == {"RspCode": "99", "Message": "Failed"}


class TestMomo:
    @pytest.fixture
    def momo_order(self, checkout, paperback):
        return checkout([{"book_id": paperback.id, "quantity": 1}], payment_method="momo")

    def test_initiate_posts_signed_body(self, db, momo_order, test_user):
        with patch("services.payments.momo.requests.post") as post:
            post.return_value = _momo_response({"resultCode": 0, "payUrl": "https://momo.test/pay/abc"})
            initiated = payments.initiate_payment(db, momo_order.id, "momo", test_user)

        assert initiated.payment_url == "https://momo.test/pay/abc"
        body = post.call_args.kwargs["json"]
        assert body["orderId"] == initiated.transaction_code
        assert body["amount"] == int(momo_order.total_price)
        assert body["requestType"] == "captureWallet"

        signed = {key: body[key] for key in (
            "amount", "extraData", "ipnUrl", "orderId", "orderInfo", "partnerCode", "redirectUrl", "requestId", "requestType",
        )}
        raw = canonicalize({"accessKey": settings.MOMO_ACCESS_KEY, **signed})
        assert body["signature"] == sign(settings.MOMO_SECRET_KEY, raw, hashlib.sha256)
        assert db.get(Payment, initiated.payment_id).payment_url == "https://momo.test/pay/abc"

    def test_initiate_network_error(self, db, momo_order, test_user):
        with patch("services.payments.momo.requests.post", side_effect=requests.ConnectionError("down")):
            with pytest.raises(UpstreamFailure):
                payments.initiate_payment(db, momo_order.id, "momo", test_user)
        assert db.query(Payment).filter(Payment.order_id == momo_order.id).count() == 0

    def test_initiate_provider_rejects(self, db, momo_order, test_user):
        with patch("services.payments.momo.requests.post") as post:
            post.return_value = _momo_response({"resultCode": 22, "message": "Amount out of range"})
            with pytest.raises(UpstreamFailure) as exc:
                payments.initiate_payment(db, momo_order.id, "momo", test_user)
        assert "Amount out of range" in exc.value.detail

    def _initiate(self, db, order, user):
        with patch("services.payments.momo.requests.post") as post:
            post.return_value = _momo_response({"resultCode": 0, "payUrl": "https://momo.test/pay/abc"})
            return payments.initiate_payment(db, order.id, "momo", user)

    def test_callback_success(self, db, momo_order, test_user):
        initiated = self._initiate(db, momo_order, test_user)
        params = momo_callback_params(initiated.transaction_code, momo_order.total_price)

        result = payments.handle_provider_callback(db, "momo", params)

        assert result.success is True
        assert result.transaction_id == "3012345678"
        assert db.get(Order, momo_order.id).status == "confirmed"

    def test_callback_with_string_fields(self, db, momo_order, test_user):
        """Browser redirects deliver every field as a string."""
        initiated = self._initiate(db, momo_order, test_user)
        params = {key: str(value) for key, value in momo_callback_params(initiated.transaction_code, momo_order.total_price).items()}

        assert MomoGateway().verify_callback(db, params).success is True

    def test_callback_tampered(self, db, momo_order, test_user):
        initiated = self._initiate(db, momo_order, test_user)
        params = momo_callback_params(initiated.transaction_code, momo_order.total_price, result_code=1006)
        params["resultCode"] = 0

        with pytest.raises(InvalidSignature):
            payments.handle_provider_callback(db, "momo", params)
        assert db.get(Payment, initiated.payment_id).status == "pending"

    def test_callback_failure(self, db, momo_order, test_user):
        initiated = self._initiate(db, momo_order, test_user)
        params = momo_callback_params(initiated.transaction_code, momo_order.total_price, result_code=1006)

        result = payments.handle_provider_callback(db, "momo", params)

        assert result.success is False
        assert db.get(Payment, initiated.payment_id).status == "failed"
        assert db.get(Order, momo_order.id).payment_status == "failed"

    def test_ipn_ack_bodies(self):
        gateway = MomoGateway()
        assert gateway.ipn_ack(None) == {"resultCode": "1", "message": "Failed"}
