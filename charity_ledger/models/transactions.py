"""Ledger transaction database model."""
import uuid
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Boolean, ForeignKey
from sqlalchemy.sql import func
from charity_ledger.models.base import Base

class LedgerTransaction(Base):
    """
    Append-only buy/sell record. Never updated once written.
    """
    __tablename__ = 'ledger_transactions'
    
    # Primary key
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    position_id = Column(String(36), ForeignKey('positions.id'), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    
    # Trade details
    transaction_type = Column(String(4), nullable=False)
    quantity = Column(Numeric(20, 8), nullable=False)
    price_per_unit = Column(Numeric(20, 8), nullable=False)
    total_amount = Column(Numeric(20, 8), nullable=False)
    
    # Sell only
    average_cost_at_sale = Column(Numeric(20, 8))
    profit_or_loss = Column(Numeric(20, 8))
    is_realized_profit = Column(Boolean, nullable=False, default=False)
    
    # Origin (direct request or conditional order id)
    source_order_id = Column(String(36))
    
    # Timestamps
    executed_at = Column(TIMESTAMP, nullable=False, index=True)
    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())
