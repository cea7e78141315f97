from decimal import Decimal

from sqlalchemy.orm import Session

from core.errors import NotFound
from models.shipping_provider import ShippingProvider


def get_active_provider(db: Session, provider_id: int) -> ShippingProvider:
    provider = (
        db.query(ShippingProvider)
        .filter(
            ShippingProvider.id == provider_id,
            ShippingProvider.active.is_(True),
            ShippingProvider.is_deleted.is_(False),
        )
        .one_or_none()
    )
    if not provider:
        raise NotFound("Shipping provider", detail="Selected shipping provider not found or inactive")
    return provider


def get_fee(db: Session, provider_id: int) -> Decimal:
    provider = get_active_provider(db, provider_id)
    return Decimal(str(provider.base_fee or 0))


def get_estimated_time(db: Session, provider_id: int) -> str | None:
    return get_active_provider(db, provider_id).estimated_time
