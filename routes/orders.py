from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.auth import get_current_user, require_admin
from core.db import get_db
from models.user import User
from schemas.order import OrderCreate, OrderOut, OrderPage, OrderStatusUpdate
from services import order_status, orders

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/", response_model=OrderOut, status_code=201)
def create_order(data: OrderCreate, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return orders.create_order(
        db,
        user_id=current_user.id,
        items=[item.model_dump() for item in data.items],
        shipping_address_id=data.shipping_address_id,
        shipping_provider_id=data.shipping_provider_id,
        payment_method=data.payment_method,
        voucher_code=data.voucher_code,
        note=data.note,
    )


@router.get("/", response_model=OrderPage)
def list_my_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return orders.list_user_orders(db, current_user.id, status=status, page=page, limit=limit)


# Registered before /{order_id} so "admin" is not parsed as an id
@router.get("/admin/all", response_model=OrderPage)
def list_all_orders(
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return orders.list_orders(db, status=status, user_id=user_id, page=page, limit=limit)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return orders.get_order(db, order_id, current_user)


@router.post("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return orders.cancel_order(db, order_id, current_user.id)


@router.patch("/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: int,
    data: OrderStatusUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return order_status.set_order_status(db, order_id, data.status)
