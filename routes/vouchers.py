from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.db import get_db
from models.user import User
from schemas.voucher import VoucherCheckOut, VoucherCheckRequest
from services import vouchers

router = APIRouter(prefix="/vouchers", tags=["vouchers"])


@router.post("/check", response_model=VoucherCheckOut)
def check_voucher(data: VoucherCheckRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return vouchers.check_voucher(
        db,
        data.code,
        data.order_amount,
        current_user.id,
        category_ids=data.category_ids,
        book_ids=data.book_ids,
    )
