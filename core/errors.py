"""
Error taxonomy for the checkout core.

Services raise these; ``main.py`` registers a handler that renders them as
``{"detail": ..., "code": ...}`` with the mapped HTTP status.
"""
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class AppError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_detail: str = "Internal error"

    def __init__(self, detail: Optional[str] = None, **extra: Any):
        self.detail = detail or self.default_detail
        self.extra = extra
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.detail, "code": self.code}
        if self.extra:
            body.update(self.extra)
        return body

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class InvalidRequest(AppError):
    status_code = 400
    code = "INVALID_REQUEST"
    default_detail = "Invalid request"


class Forbidden(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_detail = "Access denied"


class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_detail = "Resource not found"

    def __init__(self, resource: str = "Resource", detail: Optional[str] = None, **extra: Any):
        super().__init__(detail or f"{resource} not found", **extra)


class InsufficientStock(AppError):
    status_code = 400
    code = "INSUFFICIENT_STOCK"
    default_detail = "Insufficient stock"


class VoucherError(AppError):
    status_code = 400
    code = "VOUCHER_ERROR"


class VoucherInvalid(VoucherError):
    code = "VOUCHER_INVALID"
    default_detail = "Voucher is not valid"


class VoucherNotApplicable(VoucherError):
    code = "VOUCHER_NOT_APPLICABLE"
    default_detail = "Voucher is not applicable to this order"


class VoucherAlreadyUsed(VoucherError):
    code = "VOUCHER_ALREADY_USED"
    default_detail = "You have already used this voucher"


class InvalidStatus(AppError):
    status_code = 400
    code = "INVALID_STATUS"
    default_detail = "Invalid order status"


class InvalidTransition(AppError):
    status_code = 409
    code = "INVALID_TRANSITION"
    default_detail = "Invalid order status transition"


class InvalidSignature(AppError):
    status_code = 400
    code = "INVALID_SIGNATURE"
    default_detail = "Invalid payment signature"


class UpstreamFailure(AppError):
    status_code = 502
    code = "UPSTREAM_FAILURE"
    default_detail = "Payment provider unavailable"


class DownloadLimitReached(AppError):
    status_code = 403
    code = "DOWNLOAD_LIMIT_REACHED"
    default_detail = "Maximum download limit reached"


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return exc.to_response()
