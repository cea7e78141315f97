from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Numeric, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class VoucherUsage(Base):
    __tablename__ = "voucher_usages"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    voucher_id: Mapped[int] = mapped_column(ForeignKey("vouchers.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    voucher_code: Mapped[str] = mapped_column(String(20))
    discount_amount: Mapped[float] = mapped_column(Numeric(12, 2))
    order_amount: Mapped[float] = mapped_column(Numeric(12, 2))
    is_refunded: Mapped[bool] = mapped_column(Boolean, default=False)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    voucher = relationship("Voucher")
