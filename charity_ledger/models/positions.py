"""Position database model."""
import uuid
from decimal import Decimal
from sqlalchemy import Column, String, Numeric, TIMESTAMP, UniqueConstraint
from sqlalchemy.sql import func
from charity_ledger.models.base import Base

class Position(Base):
    """
    Per-user, per-symbol investment position at weighted-average cost.
    
    Rows are never deleted: a fully sold position keeps quantity 0 and
    its history.
    """
    __tablename__ = 'positions'
    __table_args__ = (
        UniqueConstraint('user_id', 'symbol', name='uq_positions_user_symbol'),
    )
    
    # Primary key
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)
    symbol = Column(String(20), nullable=False, index=True)
    asset_name = Column(String(255))
    asset_type = Column(String(10), nullable=False, default='other')
    
    # Holdings
    quantity = Column(Numeric(20, 8), nullable=False, default=Decimal(0))
    average_cost = Column(Numeric(20, 8), nullable=False, default=Decimal(0))
    
    # Profit tracking
    realized_profit = Column(Numeric(20, 8), nullable=False, default=Decimal(0))
    total_charity_allocated = Column(Numeric(20, 8), nullable=False, default=Decimal(0))
    current_price = Column(Numeric(20, 8))
    unrealized_profit = Column(Numeric(20, 8), nullable=False, default=Decimal(0))
    
    # Timestamps
    first_acquired_at = Column(TIMESTAMP, nullable=False)
    last_mutated_at = Column(TIMESTAMP, nullable=False)
    created_at = Column(TIMESTAMP, nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP, nullable=False, server_default=func.now(), onupdate=func.now())
    
    @property
    def cost_basis(self) -> Decimal:
        return Decimal(self.quantity) * Decimal(self.average_cost)
    
    @property
    def is_open(self) -> bool:
        return Decimal(self.quantity) > 0
