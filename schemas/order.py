from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional


class OrderItemIn(BaseModel):
    book_id: int
    quantity: int = Field(1, ge=1)


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address_id: int
    shipping_provider_id: int
    payment_method: str = "cod"
    voucher_code: Optional[str] = None
    note: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: str


class OrderItemOut(BaseModel):
    id: int
    book_id: int
    quantity: int
    price_at_purchase: float

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_code: str
    user_id: int
    status: str
    payment_method: str
    payment_status: str
    original_amount: float
    discount_amount: float
    shipping_fee: float
    total_price: float
    voucher_id: Optional[int] = None
    shipping_address_id: int
    shipping_provider_id: int
    note: Optional[str] = None
    transaction_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemOut]

    class Config:
        from_attributes = True


class OrderPage(BaseModel):
    items: List[OrderOut]
    total: int
    page: int
    limit: int
    pages: int
