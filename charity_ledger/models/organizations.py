"""Beneficiary organization database model."""
import uuid
from decimal import Decimal
from sqlalchemy import Column, String, Numeric, TIMESTAMP, Boolean, Text
from sqlalchemy.sql import func
from charity_ledger.models.base import Base

class BeneficiaryOrganization(Base):
    """
    Charitable organization that can receive allocations.
    """
    __tablename__ = 'beneficiary_organizations'
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(50), nullable=False, index=True)
    wallet_address = Column(String(255))
    
    is_verified = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    
    # Incremented in the same transaction as each allocation
    total_received = Column(Numeric(20, 8), nullable=False, default=Decimal(0))
    
    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP, nullable=False, server_default=func.now(), onupdate=func.now())
