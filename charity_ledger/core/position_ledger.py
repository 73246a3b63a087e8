"""
Position ledger: weighted-average-cost positions, the append-only
transaction log and the profitable-sell charity allocation.

Every buy/sell is one unit of work. A profitable sell commits the trade,
the position update and the allocation together or not at all.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional
from sqlalchemy import func, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from charity_ledger.core.account_preferences import AccountPreferences
from charity_ledger.core.allocation_ledger import AllocationLedger
from charity_ledger.core.allocation_rules import AllocationRuleEngine, to_positive_amount
from charity_ledger.core.charity_selector import CharitySelector
from charity_ledger.core.exceptions import (
    InsufficientQuantity, LedgerValidationError, PositionNotFound
)
from charity_ledger.models.allocations import AllocationRecord
from charity_ledger.models.positions import Position
from charity_ledger.models.transactions import LedgerTransaction
from charity_ledger.utils.constants import (
    ALLOCATION_ALLOCATED, ASSET_TYPES, DEFAULT_ASSET_TYPE, HUNDRED,
    MAX_QUERY_LIMIT, QUANTITY_SCALE, TRANSACTION_BUY, TRANSACTION_SELL, ZERO
)
from charity_ledger.utils.locks import KeyedLocks
from charity_ledger.utils.logging import get_logger
from charity_ledger.utils.metrics import record_allocation, record_trade

logger = get_logger(__name__)

STORAGE_QUANTUM = Decimal(1).scaleb(-QUANTITY_SCALE)

# Called inside the unit of work right before commit
BeforeCommit = Callable[[Session, Dict], None]

@dataclass(frozen=True)
class BuyResult:
    position_id: str
    transaction_id: str
    new_quantity: Decimal
    new_average_cost: Decimal

@dataclass(frozen=True)
class AllocationOutcome:
    allocation_id: str
    percentage: Decimal
    amount: Decimal
    organization_id: Optional[str]
    selection_method: str

@dataclass(frozen=True)
class SellResult:
    transaction_id: str
    position_id: str
    profit_or_loss: Decimal
    is_profitable: bool
    new_quantity: Decimal
    allocation: Optional[AllocationOutcome] = None

@dataclass(frozen=True)
class ReconciliationReport:
    position_id: str
    recorded_quantity: Decimal
    derived_quantity: Decimal
    recorded_charity: Decimal
    derived_charity: Decimal

    @property
    def balanced(self) -> bool:
        return (self.recorded_quantity == self.derived_quantity
                and self.recorded_charity == self.derived_charity)

def _quantize(value: Decimal) -> Decimal:
    return value.quantize(STORAGE_QUANTUM, rounding=ROUND_HALF_UP)

class PositionLedger:
    """
    Buy/sell mutations on positions.

    Mutations on the same (user, symbol) are serialized: row locks
    (SELECT ... FOR UPDATE) across processes, keyed locks inside one
    process. Different positions proceed independently.
    """

    _position_locks = KeyedLocks()

    def __init__(
        self,
        db: Session,
        rules: AllocationRuleEngine,
        allocation_ledger: AllocationLedger = None,
        selector: CharitySelector = None,
        preferences: AccountPreferences = None,
        clock=datetime.utcnow
    ):
        self.db = db
        self.rules = rules
        self.allocation_ledger = allocation_ledger or AllocationLedger(db)
        self.selector = selector or CharitySelector(db)
        self.preferences = preferences or AccountPreferences(db, rules)
        self.clock = clock

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def buy(
        self,
        user_id: str,
        symbol: str,
        quantity,
        price_per_unit,
        asset_type: str = DEFAULT_ASSET_TYPE,
        name: Optional[str] = None,
        source_order_id: Optional[str] = None,
        before_commit: Optional[BeforeCommit] = None
    ) -> BuyResult:
        """
        Add to (or open) a position at weighted-average cost.

        Args:
            user_id: Owner of the position
            symbol: Instrument symbol, case-insensitive
            quantity: Units bought, > 0
            price_per_unit: Fill price, > 0
            asset_type: One of stock, etf, crypto, bond, fund, other
            name: Optional display name for a new position
            source_order_id: Conditional order that triggered this buy
            before_commit: Hook run inside the unit of work before commit

        Returns:
            BuyResult with the new quantity and average cost
        """
        user_id = self._require_user(user_id)
        symbol = self._normalize_symbol(symbol)
        quantity = to_positive_amount(quantity, 'quantity')
        price = to_positive_amount(price_per_unit, 'price_per_unit')
        if asset_type not in ASSET_TYPES:
            raise LedgerValidationError(
                f"asset_type must be one of {', '.join(ASSET_TYPES)}, got {asset_type!r}"
            )

        with self._position_locks.hold((user_id, symbol)):
            # A concurrent first buy in another process can win the insert;
            # the retry then finds its row and averages in
            for attempt in range(2):
                try:
                    return self._buy_unit_of_work(
                        user_id, symbol, quantity, price, asset_type, name,
                        source_order_id, before_commit
                    )
                except IntegrityError:
                    self.db.rollback()
                    if attempt:
                        raise
                    logger.warning("Concurrent position insert, retrying", user_id=user_id, symbol=symbol)

    def _buy_unit_of_work(self, user_id, symbol, quantity, price, asset_type, name,
                          source_order_id, before_commit) -> BuyResult:
        now = self.clock()
        total_amount = _quantize(quantity * price)

        try:
            position = self.db.query(Position).filter(
                Position.user_id == user_id,
                Position.symbol == symbol
            ).with_for_update().first()

            if position is not None:
                old_quantity = Decimal(position.quantity)
                old_cost = old_quantity * Decimal(position.average_cost)
                new_quantity = old_quantity + quantity
                new_average_cost = _quantize((old_cost + total_amount) / new_quantity)

                position.quantity = new_quantity
                position.average_cost = new_average_cost
                position.last_mutated_at = now
            else:
                new_quantity = quantity
                new_average_cost = price
                position = Position(
                    user_id=user_id,
                    symbol=symbol,
                    asset_name=name,
                    asset_type=asset_type,
                    quantity=new_quantity,
                    average_cost=new_average_cost,
                    realized_profit=ZERO,
                    total_charity_allocated=ZERO,
                    unrealized_profit=ZERO,
                    first_acquired_at=now,
                    last_mutated_at=now
                )
                self.db.add(position)
            self.db.flush()

            transaction = LedgerTransaction(
                position_id=position.id,
                user_id=user_id,
                transaction_type=TRANSACTION_BUY,
                quantity=quantity,
                price_per_unit=price,
                total_amount=total_amount,
                is_realized_profit=False,
                source_order_id=source_order_id,
                executed_at=now
            )
            self.db.add(transaction)
            self.db.flush()

            result = BuyResult(
                position_id=position.id,
                transaction_id=transaction.id,
                new_quantity=new_quantity,
                new_average_cost=new_average_cost
            )
            if before_commit is not None:
                before_commit(self.db, {'transaction_id': transaction.id, 'position_id': position.id})

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        record_trade(TRANSACTION_BUY)
        logger.info(
            "Position bought",
            user_id=user_id,
            symbol=symbol,
            position_id=result.position_id,
            quantity=str(quantity),
            price=str(price),
            new_quantity=str(new_quantity),
            new_average_cost=str(new_average_cost)
        )
        return result

    def sell(
        self,
        user_id: str,
        position_id: str,
        quantity,
        price_per_unit,
        source_order_id: Optional[str] = None,
        before_commit: Optional[BeforeCommit] = None
    ) -> SellResult:
        """
        Sell part or all of a position.

        A profitable sell allocates at least the floor percentage of the
        realized profit to charity in the same transaction. Any failure,
        including an allocation invariant violation, rolls back the trade.

        Raises:
            PositionNotFound: position missing or owned by another user
            InsufficientQuantity: quantity exceeds the position
        """
        user_id = self._require_user(user_id)
        quantity = to_positive_amount(quantity, 'quantity')
        price = to_positive_amount(price_per_unit, 'price_per_unit')

        # Symbol is immutable, so the lock key can be read before locking
        symbol = self.db.query(Position.symbol).filter(
            Position.id == position_id,
            Position.user_id == user_id
        ).scalar()
        if symbol is None:
            raise PositionNotFound(f"Position {position_id} not found")

        with self._position_locks.hold((user_id, symbol)):
            return self._sell_unit_of_work(
                user_id, position_id, quantity, price, source_order_id, before_commit
            )

    def _sell_unit_of_work(self, user_id, position_id, quantity, price,
                           source_order_id, before_commit) -> SellResult:
        now = self.clock()

        try:
            position = self.db.query(Position).filter(
                Position.id == position_id,
                Position.user_id == user_id
            ).with_for_update().first()
            if position is None:
                raise PositionNotFound(f"Position {position_id} not found")

            current_quantity = Decimal(position.quantity)
            if quantity > current_quantity:
                raise InsufficientQuantity(
                    f"Cannot sell {quantity} of {position.symbol}, only {current_quantity} held"
                )

            average_cost = Decimal(position.average_cost)
            sell_amount = quantity * price
            profit_or_loss = _quantize(sell_amount - quantity * average_cost)
            is_profitable = profit_or_loss > ZERO

            transaction = LedgerTransaction(
                position_id=position.id,
                user_id=user_id,
                transaction_type=TRANSACTION_SELL,
                quantity=quantity,
                price_per_unit=price,
                total_amount=_quantize(sell_amount),
                average_cost_at_sale=average_cost,
                profit_or_loss=profit_or_loss,
                is_realized_profit=is_profitable,
                source_order_id=source_order_id,
                executed_at=now
            )
            self.db.add(transaction)
            self.db.flush()

            new_quantity = current_quantity - quantity
            position.quantity = new_quantity
            position.realized_profit = Decimal(position.realized_profit or 0) + profit_or_loss
            position.last_mutated_at = now
            if position.current_price is not None:
                position.unrealized_profit = new_quantity * (Decimal(position.current_price) - average_cost)

            outcome = None
            if is_profitable:
                outcome = self._allocate(user_id, transaction.id, profit_or_loss, now)
                position.total_charity_allocated = (
                    Decimal(position.total_charity_allocated or 0) + outcome.amount
                )
            self.db.flush()

            result = SellResult(
                transaction_id=transaction.id,
                position_id=position.id,
                profit_or_loss=profit_or_loss,
                is_profitable=is_profitable,
                new_quantity=new_quantity,
                allocation=outcome
            )
            if before_commit is not None:
                before_commit(self.db, {'transaction_id': transaction.id, 'position_id': position.id})

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        record_trade(TRANSACTION_SELL)
        if outcome is not None:
            record_allocation(outcome.selection_method, outcome.amount)
        logger.info(
            "Position sold",
            user_id=user_id,
            position_id=position_id,
            quantity=str(quantity),
            price=str(price),
            profit_or_loss=str(profit_or_loss),
            new_quantity=str(new_quantity),
            charity_amount=str(outcome.amount) if outcome else None
        )
        return result

    def _allocate(self, user_id: str, transaction_id: str, profit: Decimal, now: datetime) -> AllocationOutcome:
        preference = self.preferences.get(user_id)
        requested = preference.charity_percentage if preference else None
        explicit_id = preference.preferred_organization_id if preference else None
        category = preference.preferred_category if preference else None

        # Re-enforced here even though the stored preference is already clamped
        allocation = self.rules.allocate(profit, requested)

        org = self.selector.select(explicit_id, category)
        method = self.selector.selection_method(explicit_id, category)

        record = AllocationRecord(
            transaction_id=transaction_id,
            user_id=user_id,
            profit_amount=profit,
            allocation_percentage=allocation.percentage,
            allocation_amount=allocation.amount,
            organization_id=org.id if org else None,
            selection_method=method,
            impact_category=org.category if org else None,
            status=ALLOCATION_ALLOCATED,
            allocated_at=now
        )
        self.allocation_ledger.record(record)

        return AllocationOutcome(
            allocation_id=record.id,
            percentage=allocation.percentage,
            amount=allocation.amount,
            organization_id=record.organization_id,
            selection_method=method
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_position(self, user_id: str, position_id: str) -> Position:
        position = self.db.query(Position).filter(
            Position.id == position_id,
            Position.user_id == user_id
        ).first()
        if position is None:
            raise PositionNotFound(f"Position {position_id} not found")
        return position

    def list_positions(self, user_id: str, include_closed: bool = False) -> List[Position]:
        query = self.db.query(Position).filter(Position.user_id == user_id)
        if not include_closed:
            query = query.filter(Position.quantity > 0)
        return query.order_by(Position.symbol.asc()).all()

    def list_transactions(self, user_id: str, limit: int = 50) -> List[LedgerTransaction]:
        limit = max(1, min(int(limit), MAX_QUERY_LIMIT))
        return self.db.query(LedgerTransaction).filter(
            LedgerTransaction.user_id == user_id
        ).order_by(desc(LedgerTransaction.executed_at)).limit(limit).all()

    def get_portfolio_summary(self, user_id: str) -> Dict:
        """
        Open positions plus totals. Realized profit and charity totals
        include closed positions.
        """
        positions = self.list_positions(user_id, include_closed=True)

        total_value = ZERO
        total_cost = ZERO
        total_unrealized = ZERO
        total_realized = ZERO
        total_charity = ZERO
        holdings = []

        for position in positions:
            quantity = Decimal(position.quantity)
            average_cost = Decimal(position.average_cost)
            total_realized += Decimal(position.realized_profit or 0)
            total_charity += Decimal(position.total_charity_allocated or 0)
            if quantity <= ZERO:
                continue

            mark = Decimal(position.current_price) if position.current_price is not None else average_cost
            value = quantity * mark
            total_value += value
            total_cost += quantity * average_cost
            total_unrealized += Decimal(position.unrealized_profit or 0)
            holdings.append({
                'id': position.id,
                'symbol': position.symbol,
                'name': position.asset_name,
                'asset_type': position.asset_type,
                'quantity': quantity,
                'average_cost': average_cost,
                'current_price': position.current_price,
                'value': value,
                'unrealized_profit': Decimal(position.unrealized_profit or 0),
                'realized_profit': Decimal(position.realized_profit or 0),
                'charity_allocated': Decimal(position.total_charity_allocated or 0),
            })

        holdings.sort(key=lambda h: h['value'], reverse=True)

        if total_realized > ZERO:
            charity_share = (total_charity / total_realized * HUNDRED).quantize(Decimal('0.01'))
        else:
            charity_share = self.rules.floor_percentage

        return {
            'positions': holdings,
            'summary': {
                'total_value': total_value,
                'total_cost': total_cost,
                'total_unrealized_profit': total_unrealized,
                'total_realized_profit': total_realized,
                'total_charity_allocated': total_charity,
                'charity_percentage_of_profit': charity_share,
            }
        }

    def reconcile(self, position_id: str) -> ReconciliationReport:
        """
        Rebuild quantity and charity totals from the transaction log and
        compare them with the position row.
        """
        position = self.db.query(Position).filter(Position.id == position_id).first()
        if position is None:
            raise PositionNotFound(f"Position {position_id} not found")

        rows = self.db.query(
            LedgerTransaction.transaction_type,
            func.coalesce(func.sum(LedgerTransaction.quantity), 0)
        ).filter(
            LedgerTransaction.position_id == position_id
        ).group_by(LedgerTransaction.transaction_type).all()
        totals = {kind: Decimal(str(amount)) for kind, amount in rows}
        derived_quantity = totals.get(TRANSACTION_BUY, ZERO) - totals.get(TRANSACTION_SELL, ZERO)

        derived_charity = self.db.query(
            func.coalesce(func.sum(AllocationRecord.allocation_amount), 0)
        ).join(
            LedgerTransaction, LedgerTransaction.id == AllocationRecord.transaction_id
        ).filter(LedgerTransaction.position_id == position_id).scalar()

        report = ReconciliationReport(
            position_id=position_id,
            recorded_quantity=_quantize(Decimal(position.quantity)),
            derived_quantity=_quantize(derived_quantity),
            recorded_charity=_quantize(Decimal(position.total_charity_allocated or 0)),
            derived_charity=_quantize(Decimal(str(derived_charity)))
        )
        if not report.balanced:
            logger.error(
                "Position out of balance",
                position_id=position_id,
                recorded_quantity=str(report.recorded_quantity),
                derived_quantity=str(report.derived_quantity),
                recorded_charity=str(report.recorded_charity),
                derived_charity=str(report.derived_charity)
            )
        return report

    def mark_to_market(self, quote_provider, user_id: Optional[str] = None) -> int:
        """
        Refresh current price and unrealized profit of open positions.
        Positions whose quote is unavailable are left untouched.
        """
        query = self.db.query(Position).filter(Position.quantity > 0)
        if user_id:
            query = query.filter(Position.user_id == user_id)

        prices: Dict[str, Optional[Decimal]] = {}
        updated = 0
        try:
            for position in query.all():
                if position.symbol not in prices:
                    quote = quote_provider.get_quote(position.symbol)
                    prices[position.symbol] = quote.price if quote else None
                price = prices[position.symbol]
                if price is None:
                    continue

                position.current_price = price
                position.unrealized_profit = Decimal(position.quantity) * (price - Decimal(position.average_cost))
                updated += 1
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Positions marked to market", updated=updated, symbols=len(prices))
        return updated

    @staticmethod
    def _require_user(user_id) -> str:
        if not user_id or not str(user_id).strip():
            raise LedgerValidationError("user_id is required")
        return str(user_id)

    @staticmethod
    def _normalize_symbol(symbol) -> str:
        if not isinstance(symbol, str) or not symbol.strip():
            raise LedgerValidationError("symbol is required")
        symbol = symbol.strip().upper()
        if len(symbol) > 20:
            raise LedgerValidationError(f"symbol too long: {symbol!r}")
        return symbol
