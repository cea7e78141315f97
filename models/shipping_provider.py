from datetime import datetime
from sqlalchemy import String, DateTime, Numeric, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class ShippingProvider(Base):
    __tablename__ = "shipping_providers"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(150))
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    base_fee: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    estimated_time: Mapped[str | None] = mapped_column(String(50), nullable=True)  # e.g. "2-3 days"
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
