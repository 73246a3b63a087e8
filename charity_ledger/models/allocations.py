"""Charity allocation database model."""
import uuid
from sqlalchemy import Column, String, Numeric, TIMESTAMP, ForeignKey
from sqlalchemy.sql import func
from charity_ledger.models.base import Base

class AllocationRecord(Base):
    """
    Charitable allocation tied 1:1 to a profitable sell transaction.
    
    Status lifecycle: allocated -> transferred -> confirmed, or failed.
    """
    __tablename__ = 'allocation_records'
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id = Column(
        String(36), ForeignKey('ledger_transactions.id'), nullable=False, unique=True
    )
    user_id = Column(String(64), nullable=False, index=True)
    
    # Amounts
    profit_amount = Column(Numeric(20, 8), nullable=False)
    allocation_percentage = Column(Numeric(7, 4), nullable=False)
    allocation_amount = Column(Numeric(20, 8), nullable=False)
    
    # Beneficiary
    organization_id = Column(String(36), ForeignKey('beneficiary_organizations.id'), index=True)
    selection_method = Column(String(10), nullable=False)
    impact_category = Column(String(50))
    
    # State
    status = Column(String(12), nullable=False, default='allocated', index=True)
    transparency_log_ref = Column(String(64))
    
    # Timestamps
    allocated_at = Column(TIMESTAMP, nullable=False)
    transferred_at = Column(TIMESTAMP)
    confirmed_at = Column(TIMESTAMP)
    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP, nullable=False, server_default=func.now(), onupdate=func.now())
