from datetime import datetime

from sqlalchemy import String, DateTime, Numeric, Integer, Boolean, Text, Table, Column, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from core.db import Base

VOUCHER_TYPES = ("percentage", "fixed_amount", "free_shipping")


# Allow-lists: an empty list means "no restriction"
voucher_categories = Table(
    "voucher_categories",
    Base.metadata,
    Column("voucher_id", Integer, ForeignKey("vouchers.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", Integer, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)

voucher_books = Table(
    "voucher_books",
    Base.metadata,
    Column("voucher_id", Integer, ForeignKey("vouchers.id", ondelete="CASCADE"), primary_key=True),
    Column("book_id", Integer, ForeignKey("books.id", ondelete="CASCADE"), primary_key=True),
)

voucher_users = Table(
    "voucher_users",
    Base.metadata,
    Column("voucher_id", Integer, ForeignKey("vouchers.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(20), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20))
    value: Mapped[float] = mapped_column(Numeric(12, 2))
    min_order_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    max_discount_amount: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    valid_from: Mapped[datetime] = mapped_column(DateTime)
    valid_to: Mapped[datetime] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    categories = relationship("Category", secondary=voucher_categories)
    books = relationship("Book", secondary=voucher_books)
    users = relationship("User", secondary=voucher_users)

    @validates("code")
    def _normalize_code(self, key, value):
        return value.strip().upper()

    @property
    def remaining_usage(self) -> int | None:
        if self.usage_limit is None:
            return None
        return max(0, self.usage_limit - (self.used_count or 0))

    def is_valid_at(self, now: datetime) -> bool:
        return (
            bool(self.is_active)
            and not self.is_deleted
            and self.valid_from <= now <= self.valid_to
            and (self.usage_limit is None or (self.used_count or 0) < self.usage_limit)
        )
