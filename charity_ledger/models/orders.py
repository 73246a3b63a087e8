"""Conditional order database model."""
import uuid
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Text, ForeignKey
from sqlalchemy.sql import func
from charity_ledger.models.base import Base

class ConditionalOrder(Base):
    """
    User instruction to buy or sell once a trigger price is crossed.
    """
    __tablename__ = 'conditional_orders'
    
    # Primary key
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)
    position_id = Column(String(36), ForeignKey('positions.id'))
    
    # Order details
    symbol = Column(String(20), nullable=False)
    direction = Column(String(4), nullable=False)
    trigger_price = Column(Numeric(20, 8), nullable=False)
    quantity = Column(Numeric(20, 8), nullable=False)
    asset_type = Column(String(10), nullable=False, default='other')
    
    # Execution status
    status = Column(String(12), nullable=False, default='pending', index=True)
    executed_price = Column(Numeric(20, 8))
    executed_at = Column(TIMESTAMP)
    transaction_id = Column(String(36))
    expires_at = Column(TIMESTAMP)
    
    # Error tracking
    error_message = Column(Text)
    
    # Audit
    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP, nullable=False, server_default=func.now(), onupdate=func.now())
