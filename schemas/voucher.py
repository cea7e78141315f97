from decimal import Decimal
from pydantic import BaseModel
from typing import List, Optional


class VoucherCheckRequest(BaseModel):
    code: str
    order_amount: Decimal
    category_ids: List[int] = []
    book_ids: List[int] = []


class VoucherCheckOut(BaseModel):
    code: str
    applicable: bool
    discount_amount: float
    free_shipping: bool
    reason: Optional[str] = None
