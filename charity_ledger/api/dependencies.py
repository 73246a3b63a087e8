"""
Shared FastAPI dependencies.
"""
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session
from charity_ledger.core.account_preferences import AccountPreferences
from charity_ledger.core.allocation_ledger import AllocationLedger
from charity_ledger.core.conditional_orders import ConditionalOrderBook
from charity_ledger.core.position_ledger import PositionLedger
from charity_ledger.models.base import SessionLocal, get_db
from charity_ledger.services.transparency import HashChainTransparencyLogger
from charity_ledger.services.wiring import (
    build_allocation_ledger, build_position_ledger, get_rule_engine
)

def get_current_user(x_user_id: str = Header(None)) -> str:
    """Calling user, supplied by the authentication layer in front of the API."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id

def get_position_ledger(db: Session = Depends(get_db)) -> PositionLedger:
    return build_position_ledger(db)

def get_allocation_ledger(db: Session = Depends(get_db)) -> AllocationLedger:
    return build_allocation_ledger(db)

def get_order_book(db: Session = Depends(get_db)) -> ConditionalOrderBook:
    return ConditionalOrderBook(db)

def get_account_preferences(db: Session = Depends(get_db)) -> AccountPreferences:
    return AccountPreferences(db, get_rule_engine())

def get_transparency_verifier() -> HashChainTransparencyLogger:
    return HashChainTransparencyLogger(SessionLocal)
