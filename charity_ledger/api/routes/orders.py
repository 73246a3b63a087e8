"""
Conditional order endpoints.
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Literal, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from charity_ledger.api.dependencies import get_current_user, get_order_book
from charity_ledger.core.conditional_orders import ConditionalOrderBook

router = APIRouter()

class CreateOrderRequest(BaseModel):
    position_id: Optional[str] = None
    symbol: Optional[str] = Field(None, min_length=1, max_length=20)
    direction: Literal['buy', 'sell']
    trigger_price: Decimal = Field(..., gt=0, decimal_places=8)
    quantity: Decimal = Field(..., gt=0, decimal_places=8)
    asset_type: Literal['stock', 'etf', 'crypto', 'bond', 'fund', 'other'] = 'other'
    expires_at: Optional[datetime] = None

class OrderResponse(BaseModel):
    id: str
    position_id: Optional[str]
    symbol: str
    direction: str
    trigger_price: Decimal
    quantity: Decimal
    status: str
    executed_price: Optional[Decimal]
    executed_at: Optional[datetime]
    expires_at: Optional[datetime]
    error_message: Optional[str]
    created_at: datetime
    
    class Config:
        from_attributes = True

@router.get("/", response_model=List[OrderResponse])
def list_orders(
    status: Optional[str] = Query(None, description="Filter by status"),
    user_id: str = Depends(get_current_user),
    book: ConditionalOrderBook = Depends(get_order_book)
):
    """
    List the caller's conditional orders.
    """
    return book.list_for_user(user_id, status)

@router.post("/", response_model=OrderResponse, status_code=201)
def create_order(
    request: CreateOrderRequest,
    user_id: str = Depends(get_current_user),
    book: ConditionalOrderBook = Depends(get_order_book)
):
    """
    Create a conditional order.
    """
    return book.create(
        user_id,
        request.direction,
        request.trigger_price,
        request.quantity,
        symbol=request.symbol,
        position_id=request.position_id,
        asset_type=request.asset_type,
        expires_at=request.expires_at
    )

@router.delete("/{order_id}")
def cancel_order(
    order_id: str,
    user_id: str = Depends(get_current_user),
    book: ConditionalOrderBook = Depends(get_order_book)
):
    """
    Cancel a pending order.
    """
    book.cancel(user_id, order_id)
    return {"status": "cancelled", "order_id": order_id}
