from sqlalchemy.orm import Session

from core.errors import Forbidden, NotFound
from models.address import Address


def find_address(db: Session, address_id: int, user_id: int) -> Address | None:
    return (
        db.query(Address)
        .filter(Address.id == address_id, Address.user_id == user_id, Address.is_deleted.is_(False))
        .one_or_none()
    )


def get_address_for_user(db: Session, address_id: int, user_id: int) -> Address:
    """Resolve a shipping address, distinguishing a missing address from someone else's."""
    address = find_address(db, address_id, user_id)
    if address:
        return address
    exists = (
        db.query(Address.id).filter(Address.id == address_id, Address.is_deleted.is_(False)).first()
    )
    if exists:
        raise Forbidden(detail="Shipping address does not belong to this user")
    raise NotFound("Shipping address")
