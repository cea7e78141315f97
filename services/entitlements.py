import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.errors import DownloadLimitReached, InvalidRequest, NotFound
from models.book import DIGITAL_FORMATS
from models.order_item import OrderItem
from models.user_book import UserBook
from services import catalog

logger = logging.getLogger(__name__)

DOWNLOAD_TYPES = ("download", "stream")


def _find_grant(db: Session, user_id: int, book_id: int) -> UserBook | None:
    return (
        db.query(UserBook)
        .filter(UserBook.user_id == user_id, UserBook.book_id == book_id)
        .one_or_none()
    )


def grant(db: Session, user_id: int, order_id: int, items: Iterable[OrderItem]) -> list[UserBook]:
    """
    Deliver an order's items: digital books become UserBook grants, physical
    books take stock out of the catalog.

    Returns the grants created or reactivated. Does not commit.
    """
    granted = []
    for item in items:
        book = item.book
        if not book.is_digital:
            if not item.stock_reserved:
                catalog.decrement_stock(db, book.id, item.quantity)
                item.stock_reserved = True
            continue

        existing = _find_grant(db, user_id, book.id)
        if existing and existing.is_active:
            logger.debug("User %s already owns book %s, skipping grant", user_id, book.id)
            continue

        if existing:
            existing.is_active = True
            existing.order_id = order_id
            existing.file_path = book.file_path
            existing.file_size = book.file_size
            existing.mime_type = book.mime_type
            granted.append(existing)
            continue

        user_book = UserBook(
            user_id=user_id,
            book_id=book.id,
            order_id=order_id,
            book_type=book.format,
            file_path=book.file_path,
            file_size=book.file_size,
            mime_type=book.mime_type,
            download_count=0,
            download_history=[],
            is_active=True,
        )
        db.add(user_book)
        granted.append(user_book)

    db.flush()
    return granted


def revoke(db: Session, order_id: int) -> int:
    """Undo ``grant`` for a cancelled order. Returns the number of grants deactivated."""
    grants = (
        db.query(UserBook)
        .filter(UserBook.order_id == order_id, UserBook.is_active.is_(True))
        .all()
    )
    for user_book in grants:
        user_book.is_active = False

    items = (
        db.query(OrderItem)
        .filter(OrderItem.order_id == order_id, OrderItem.is_deleted.is_(False))
        .all()
    )
    # Only lines whose stock was actually taken go back on the shelf
    for item in items:
        if item.stock_reserved:
            catalog.increment_stock(db, item.book_id, item.quantity)
            item.stock_reserved = False

    db.flush()
    return len(grants)


def list_library(db: Session, user_id: int, book_type: Optional[str] = None) -> list[UserBook]:
    query = db.query(UserBook).filter(UserBook.user_id == user_id, UserBook.is_active.is_(True))
    if book_type:
        if book_type not in DIGITAL_FORMATS:
            raise InvalidRequest(f"Unknown book type: {book_type}")
        query = query.filter(UserBook.book_type == book_type)
    return query.order_by(UserBook.created_at.desc(), UserBook.id.desc()).all()


def get_user_book(db: Session, user_id: int, book_id: int) -> UserBook:
    user_book = _find_grant(db, user_id, book_id)
    if not user_book or not user_book.is_active:
        raise NotFound("Book", detail="Book not found in your library")
    return user_book


def record_download(
    db: Session,
    user_id: int,
    book_id: int,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    download_type: str = "download",
) -> UserBook:
    if download_type not in DOWNLOAD_TYPES:
        raise InvalidRequest(f"Unknown download type: {download_type}")

    user_book = get_user_book(db, user_id, book_id)
    if user_book.download_count >= settings.DOWNLOAD_LIMIT:
        raise DownloadLimitReached(
            f"Maximum download limit ({settings.DOWNLOAD_LIMIT}) reached",
            download_count=user_book.download_count,
        )

    now = datetime.utcnow()
    history = list(user_book.download_history or [])
    history.append(
        {
            "type": download_type,
            "ip": ip,
            "user_agent": user_agent,
            "timestamp": now.isoformat(),
            "status": "success",
        }
    )
    # JSON columns are not mutation-tracked, assign a new list
    user_book.download_history = history
    user_book.download_count = (user_book.download_count or 0) + 1
    user_book.last_download_at = now
    db.commit()
    db.refresh(user_book)

    logger.info("User %s downloaded book %s (%s/%s)", user_id, book_id, user_book.download_count, settings.DOWNLOAD_LIMIT)
    return user_book
