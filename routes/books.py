from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.db import get_db
from models.user import User
from schemas.book import StockOut, StockUpdate
from services import catalog

router = APIRouter(prefix="/books", tags=["books"])


@router.patch("/{book_id}/stock", response_model=StockOut)
def update_stock(book_id: int, data: StockUpdate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    stock = catalog.apply_stock_adjustment(db, book_id, catalog.StockAdjustment(data.operation, data.quantity))
    db.commit()
    return {"book_id": book_id, "stock": stock}
