import enum
import logging
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.errors import InvalidRequest, NotFound
from models.book import Book

logger = logging.getLogger(__name__)


class StockOperation(str, enum.Enum):
    SET = "set"
    ADD = "add"
    SUBTRACT = "subtract"


@dataclass(frozen=True)
class StockAdjustment:
    operation: StockOperation
    quantity: int

    def __post_init__(self):
        if not isinstance(self.operation, StockOperation):
            raise InvalidRequest(f"Unknown stock operation: {self.operation}")
        if self.quantity < 0:
            raise InvalidRequest("Stock quantity cannot be negative")


def find_book(db: Session, book_id: int) -> Book | None:
    """Return an orderable book: active and not soft-deleted."""
    return (
        db.query(Book)
        .filter(Book.id == book_id, Book.is_active.is_(True), Book.is_deleted.is_(False))
        .one_or_none()
    )


def apply_stock_adjustment(db: Session, book_id: int, adjustment: StockAdjustment) -> int:
    """Apply a stock change with single-statement updates and return the new stock.

    Subtractions that would go below zero clamp at zero and are logged; the
    caller has already checked availability, so this only happens when two
    checkouts race for the last copies.
    """
    if adjustment.operation is StockOperation.SET:
        result = db.execute(update(Book).where(Book.id == book_id).values(stock=adjustment.quantity))
    elif adjustment.operation is StockOperation.ADD:
        result = db.execute(
            update(Book).where(Book.id == book_id).values(stock=Book.stock + adjustment.quantity)
        )
    else:
        result = db.execute(
            update(Book)
            .where(Book.id == book_id, Book.stock >= adjustment.quantity)
            .values(stock=Book.stock - adjustment.quantity)
        )
        if result.rowcount == 0:
            result = db.execute(update(Book).where(Book.id == book_id).values(stock=0))
            if result.rowcount:
                logger.warning(
                    "Stock for book %s clamped at 0 while subtracting %s", book_id, adjustment.quantity
                )

    if result.rowcount == 0:
        raise NotFound("Book", detail=f"Book with ID {book_id} not found")

    return db.query(Book.stock).filter(Book.id == book_id).scalar()


def decrement_stock(db: Session, book_id: int, quantity: int) -> int:
    return apply_stock_adjustment(db, book_id, StockAdjustment(StockOperation.SUBTRACT, quantity))


def increment_stock(db: Session, book_id: int, quantity: int) -> int:
    return apply_stock_adjustment(db, book_id, StockAdjustment(StockOperation.ADD, quantity))
