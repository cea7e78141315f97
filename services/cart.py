from typing import Iterable

from sqlalchemy import delete
from sqlalchemy.orm import Session

from models.cart_item import CartItem


def get_cart(db: Session, user_id: int) -> list[CartItem]:
    return db.query(CartItem).filter(CartItem.user_id == user_id).order_by(CartItem.id).all()


def remove_items(db: Session, user_id: int, book_ids: Iterable[int]) -> int:
    """Drop the given books from the user's cart; returns the number of rows removed."""
    ids = list(set(book_ids))
    if not ids:
        return 0
    result = db.execute(
        delete(CartItem).where(CartItem.user_id == user_id, CartItem.book_id.in_(ids))
    )
    return result.rowcount
