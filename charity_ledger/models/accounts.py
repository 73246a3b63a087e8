"""Account charity preference database model."""
from sqlalchemy import Column, String, Numeric, TIMESTAMP
from sqlalchemy.sql import func
from charity_ledger.models.base import Base

class AccountPreference(Base):
    """
    Per-user charity preference. The percentage is stored already clamped
    to the floor and is clamped again at allocation time.
    """
    __tablename__ = 'account_preferences'
    
    user_id = Column(String(64), primary_key=True)
    charity_percentage = Column(Numeric(7, 4), nullable=False)
    preferred_category = Column(String(50))
    preferred_organization_id = Column(String(36))
    
    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP, nullable=False, server_default=func.now(), onupdate=func.now())
