from pydantic import BaseModel, Field

from services.catalog import StockOperation


class StockUpdate(BaseModel):
    operation: StockOperation
    quantity: int = Field(..., ge=0)


class StockOut(BaseModel):
    book_id: int
    stock: int
