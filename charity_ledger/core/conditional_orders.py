"""
Conditional (trigger-price) orders: creation, cancellation and the
pending-order snapshot consumed by the matcher.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import desc, or_
from sqlalchemy.orm import Session
from charity_ledger.core.allocation_rules import to_positive_amount
from charity_ledger.core.exceptions import (
    LedgerValidationError, OrderNotCancellable, OrderNotFound, PositionNotFound
)
from charity_ledger.models.orders import ConditionalOrder
from charity_ledger.models.positions import Position
from charity_ledger.utils.constants import (
    ASSET_TYPES, DEFAULT_ASSET_TYPE, ORDER_CANCELLED, ORDER_EXPIRED, ORDER_PENDING,
    TRANSACTION_BUY, TRANSACTION_SELL
)
from charity_ledger.utils.logging import get_logger

logger = get_logger(__name__)

@dataclass(frozen=True)
class PendingOrder:
    """Detached snapshot of a pending order."""
    id: str
    user_id: str
    position_id: Optional[str]
    symbol: str
    direction: str
    trigger_price: Decimal
    quantity: Decimal
    asset_type: str

class ConditionalOrderBook:
    """
    Storage-facing operations on conditional orders.
    """
    
    def __init__(self, db: Session, clock=datetime.utcnow):
        self.db = db
        self.clock = clock
    
    def create(
        self,
        user_id: str,
        direction: str,
        trigger_price,
        quantity,
        symbol: Optional[str] = None,
        position_id: Optional[str] = None,
        asset_type: str = DEFAULT_ASSET_TYPE,
        expires_at: Optional[datetime] = None
    ) -> ConditionalOrder:
        """
        Create a pending order. Sell orders must reference a position owned
        by the user; buy orders may open a new one.
        """
        if direction not in (TRANSACTION_BUY, TRANSACTION_SELL):
            raise LedgerValidationError(f"direction must be 'buy' or 'sell', got {direction!r}")
        trigger_price = to_positive_amount(trigger_price, 'trigger_price')
        quantity = to_positive_amount(quantity, 'quantity')
        if asset_type not in ASSET_TYPES:
            raise LedgerValidationError(f"asset_type must be one of {', '.join(ASSET_TYPES)}")
        if expires_at is not None and expires_at <= self.clock():
            raise LedgerValidationError("expires_at must be in the future")
        
        if position_id:
            position = self.db.query(Position).filter(
                Position.id == position_id,
                Position.user_id == user_id
            ).first()
            if position is None:
                raise PositionNotFound(f"Position {position_id} not found")
            if symbol and symbol.strip().upper() != position.symbol:
                raise LedgerValidationError(
                    f"Order symbol {symbol} does not match position symbol {position.symbol}"
                )
            symbol = position.symbol
            asset_type = position.asset_type
        elif direction == TRANSACTION_SELL:
            raise LedgerValidationError("Sell orders must reference a position")
        
        if not symbol or not symbol.strip():
            raise LedgerValidationError("symbol is required")
        
        order = ConditionalOrder(
            user_id=user_id,
            position_id=position_id,
            symbol=symbol.strip().upper(),
            direction=direction,
            trigger_price=trigger_price,
            quantity=quantity,
            asset_type=asset_type,
            status=ORDER_PENDING,
            expires_at=expires_at
        )
        try:
            self.db.add(order)
            self.db.commit()
            self.db.refresh(order)
        except Exception:
            self.db.rollback()
            raise
        
        logger.info(
            "Conditional order created",
            order_id=order.id,
            user_id=user_id,
            symbol=order.symbol,
            direction=direction,
            trigger_price=str(trigger_price),
            quantity=str(quantity)
        )
        return order
    
    def cancel(self, user_id: str, order_id: str) -> None:
        """Cancel a pending order owned by the user."""
        try:
            updated = self.db.query(ConditionalOrder).filter(
                ConditionalOrder.id == order_id,
                ConditionalOrder.user_id == user_id,
                ConditionalOrder.status == ORDER_PENDING
            ).update({ConditionalOrder.status: ORDER_CANCELLED}, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        
        if updated == 1:
            logger.info("Conditional order cancelled", order_id=order_id, user_id=user_id)
            return
        
        order = self.get(user_id, order_id)
        raise OrderNotCancellable(f"Order {order_id} is {order.status} and cannot be cancelled")
    
    def get(self, user_id: str, order_id: str) -> ConditionalOrder:
        order = self.db.query(ConditionalOrder).filter(
            ConditionalOrder.id == order_id,
            ConditionalOrder.user_id == user_id
        ).first()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order
    
    def list_for_user(self, user_id: str, status: Optional[str] = None) -> List[ConditionalOrder]:
        query = self.db.query(ConditionalOrder).filter(ConditionalOrder.user_id == user_id)
        if status:
            query = query.filter(ConditionalOrder.status == status.lower())
        return query.order_by(desc(ConditionalOrder.created_at)).all()
    
    def pending(self, now: datetime = None) -> List[PendingOrder]:
        """Pending orders that have not expired, oldest first."""
        now = now or self.clock()
        orders = self.db.query(ConditionalOrder).filter(
            ConditionalOrder.status == ORDER_PENDING,
            or_(ConditionalOrder.expires_at.is_(None), ConditionalOrder.expires_at > now)
        ).order_by(ConditionalOrder.created_at.asc(), ConditionalOrder.id.asc()).all()
        
        return [
            PendingOrder(
                id=o.id,
                user_id=o.user_id,
                position_id=o.position_id,
                symbol=o.symbol,
                direction=o.direction,
                trigger_price=Decimal(o.trigger_price),
                quantity=Decimal(o.quantity),
                asset_type=o.asset_type or DEFAULT_ASSET_TYPE
            )
            for o in orders
        ]
    
    def expire_overdue(self, now: datetime = None) -> int:
        """Move pending orders past their expiry to 'expired'."""
        now = now or self.clock()
        try:
            expired = self.db.query(ConditionalOrder).filter(
                ConditionalOrder.status == ORDER_PENDING,
                ConditionalOrder.expires_at.isnot(None),
                ConditionalOrder.expires_at <= now
            ).update({ConditionalOrder.status: ORDER_EXPIRED}, synchronize_session=False)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        
        if expired:
            logger.info("Expired conditional orders", count=expired)
        return expired
