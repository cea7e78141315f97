from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Numeric, Boolean, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from core.db import Base

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled", "digital_delivered")
PAYMENT_METHODS = ("cod", "bank_transfer", "vnpay", "momo", "zalopay")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_code: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)

    original_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    discount_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    shipping_fee: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    total_price: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    voucher_id: Mapped[int | None] = mapped_column(ForeignKey("vouchers.id", ondelete="SET NULL"), nullable=True)

    payment_method: Mapped[str] = mapped_column(String(30), default="cod")
    payment_status: Mapped[str] = mapped_column(String(30), default="pending")
    status: Mapped[str] = mapped_column(String(30), default="pending", index=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    shipping_address_id: Mapped[int] = mapped_column(ForeignKey("addresses.id", ondelete="RESTRICT"))
    shipping_provider_id: Mapped[int] = mapped_column(ForeignKey("shipping_providers.id", ondelete="RESTRICT"))
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")
    voucher = relationship("Voucher")
    shipping_address = relationship("Address")
    shipping_provider = relationship("ShippingProvider")
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")

    @validates("order_code")
    def _freeze_order_code(self, key, value):
        if self.order_code is not None and value != self.order_code:
            raise ValueError("order_code cannot be changed once assigned")
        return value

    @property
    def active_items(self):
        return [item for item in self.items if not item.is_deleted]

    @property
    def is_all_digital(self) -> bool:
        items = self.active_items
        return bool(items) and all(item.book.is_digital for item in items)
