from decimal import Decimal
from pydantic import BaseModel
from typing import Optional


class PaymentInitRequest(BaseModel):
    order_id: int
    amount: Optional[Decimal] = None
    description: Optional[str] = None


class PaymentInitResponse(BaseModel):
    payment_url: str
    transaction_code: str
    payment_id: int
    order_id: int
    amount: float


class PaymentMethodOut(BaseModel):
    id: str
    name: str
    description: str
    enabled: bool


class PaymentOut(BaseModel):
    id: int
    order_id: int
    transaction_code: str
    method: str
    amount: float
    status: str
    transaction_id: Optional[str] = None

    class Config:
        from_attributes = True
