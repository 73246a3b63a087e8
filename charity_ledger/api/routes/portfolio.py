"""
Portfolio endpoints: summary, buy, sell and transaction history.
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Literal, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from charity_ledger.api.dependencies import get_current_user, get_position_ledger
from charity_ledger.core.position_ledger import PositionLedger

router = APIRouter()

class BuyRequest(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=20)
    asset_name: Optional[str] = None
    asset_type: Literal['stock', 'etf', 'crypto', 'bond', 'fund', 'other'] = 'other'
    quantity: Decimal = Field(..., gt=0, decimal_places=8)
    price_per_unit: Decimal = Field(..., gt=0, decimal_places=8)

class BuyResponse(BaseModel):
    position_id: str
    transaction_id: str
    new_quantity: Decimal
    new_average_cost: Decimal

class SellRequest(BaseModel):
    quantity: Decimal = Field(..., gt=0, decimal_places=8)
    price_per_unit: Decimal = Field(..., gt=0, decimal_places=8)

class AllocationResponse(BaseModel):
    allocation_id: str
    percentage: Decimal
    amount: Decimal
    organization_id: Optional[str]
    selection_method: str

class SellResponse(BaseModel):
    transaction_id: str
    position_id: str
    profit_or_loss: Decimal
    is_profitable: bool
    new_quantity: Decimal
    allocation: Optional[AllocationResponse]

class TransactionResponse(BaseModel):
    id: str
    position_id: str
    transaction_type: str
    quantity: Decimal
    price_per_unit: Decimal
    total_amount: Decimal
    profit_or_loss: Optional[Decimal]
    is_realized_profit: bool
    source_order_id: Optional[str]
    executed_at: datetime
    
    class Config:
        from_attributes = True

class ReconciliationResponse(BaseModel):
    position_id: str
    recorded_quantity: Decimal
    derived_quantity: Decimal
    recorded_charity: Decimal
    derived_charity: Decimal
    balanced: bool

@router.get("/")
def portfolio_summary(
    user_id: str = Depends(get_current_user),
    ledger: PositionLedger = Depends(get_position_ledger)
):
    """
    Open positions with value, cost, profit and charity totals.
    """
    return ledger.get_portfolio_summary(user_id)

@router.post("/", response_model=BuyResponse, status_code=201)
def buy(
    request: BuyRequest,
    user_id: str = Depends(get_current_user),
    ledger: PositionLedger = Depends(get_position_ledger)
):
    """
    Add to a position (buy).
    """
    result = ledger.buy(
        user_id,
        request.symbol,
        request.quantity,
        request.price_per_unit,
        asset_type=request.asset_type,
        name=request.asset_name
    )
    return BuyResponse(**result.__dict__)

@router.post("/{position_id}/sell", response_model=SellResponse)
def sell(
    position_id: str,
    request: SellRequest,
    user_id: str = Depends(get_current_user),
    ledger: PositionLedger = Depends(get_position_ledger)
):
    """
    Sell from a position. Profitable sells allocate to charity.
    """
    result = ledger.sell(user_id, position_id, request.quantity, request.price_per_unit)
    allocation = None
    if result.allocation is not None:
        allocation = AllocationResponse(**result.allocation.__dict__)
    return SellResponse(
        transaction_id=result.transaction_id,
        position_id=result.position_id,
        profit_or_loss=result.profit_or_loss,
        is_profitable=result.is_profitable,
        new_quantity=result.new_quantity,
        allocation=allocation
    )

@router.get("/transactions", response_model=List[TransactionResponse])
def list_transactions(
    limit: int = Query(50, ge=1, le=100, description="Maximum number of results"),
    user_id: str = Depends(get_current_user),
    ledger: PositionLedger = Depends(get_position_ledger)
):
    """
    Transaction history, newest first.
    """
    return ledger.list_transactions(user_id, limit)

@router.get("/{position_id}/reconciliation", response_model=ReconciliationResponse)
def reconcile_position(
    position_id: str,
    user_id: str = Depends(get_current_user),
    ledger: PositionLedger = Depends(get_position_ledger)
):
    """
    Compare the position row with its transaction log.
    """
    ledger.get_position(user_id, position_id)
    report = ledger.reconcile(position_id)
    return ReconciliationResponse(balanced=report.balanced, **report.__dict__)
