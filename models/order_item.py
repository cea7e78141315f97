from sqlalchemy import ForeignKey, Integer, Numeric, Boolean, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from core.db import Base


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),)

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    book_id: Mapped[int] = mapped_column(ForeignKey("books.id", ondelete="RESTRICT"), index=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    price_at_purchase: Mapped[float] = mapped_column(Numeric(12, 2))
    # Set once fulfilment has taken this line out of stock
    stock_reserved: Mapped[bool] = mapped_column(Boolean, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)

    order = relationship("Order", back_populates="items")
    book = relationship("Book")

    @validates("price_at_purchase")
    def _freeze_price(self, key, value):
        # Snapshot taken at checkout; later catalog price changes must not leak in
        if self.price_at_purchase is not None:
            raise ValueError("price_at_purchase is immutable")
        return value

    @property
    def line_total(self):
        return self.price_at_purchase * self.quantity
