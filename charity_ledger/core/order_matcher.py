"""
Scheduled conditional order matcher.

Each tick polls pending orders, fetches a quote per order and fires the
ones whose trigger is crossed through the position ledger. One order's
failure never blocks the others. Failed orders are not retried.
"""
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from sqlalchemy.orm import Session
from charity_ledger.core.conditional_orders import ConditionalOrderBook, PendingOrder
from charity_ledger.core.exceptions import OrderStateConflict
from charity_ledger.core.position_ledger import PositionLedger
from charity_ledger.data.market_data import QuoteProvider
from charity_ledger.models.orders import ConditionalOrder
from charity_ledger.services.audit_service import AuditSink, NullAuditSink
from charity_ledger.services.notifier import Notifier, NullNotifier
from charity_ledger.utils.constants import (
    DEFAULT_MATCH_INTERVAL_SECONDS, ORDER_EXECUTED, ORDER_FAILED, ORDER_PENDING,
    TRANSACTION_BUY, TRANSACTION_SELL
)
from charity_ledger.utils.logging import get_logger
from charity_ledger.utils.metrics import matcher_tick_time, record_order_outcome

logger = get_logger(__name__)

@dataclass
class TickReport:
    """What one matcher pass did."""
    skipped: bool = False
    evaluated: int = 0
    executed: int = 0
    failed: int = 0
    waiting: int = 0
    unquoted: int = 0
    conflicts: int = 0

def should_fire(direction: str, current_price: Decimal, trigger_price: Decimal) -> bool:
    """
    Sell fires at or above the trigger (take profit), buy at or below it
    (buy the dip).
    """
    if direction == TRANSACTION_SELL:
        return current_price >= trigger_price
    if direction == TRANSACTION_BUY:
        return current_price <= trigger_price
    return False

class OrderMatcher:
    """
    Polling loop over pending conditional orders.

    `tick()` runs one pass and can be driven directly (tests, Celery);
    `start()`/`stop()` manage an in-process background thread. Ticks never
    overlap: a tick requested while another is running is skipped.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ledger_factory: Callable[[Session], PositionLedger],
        quote_provider: QuoteProvider,
        notifier: Notifier = None,
        audit_sink: AuditSink = None,
        interval_seconds: int = DEFAULT_MATCH_INTERVAL_SECONDS,
        clock=datetime.utcnow
    ):
        self.session_factory = session_factory
        self.ledger_factory = ledger_factory
        self.quote_provider = quote_provider
        self.notifier = notifier or NullNotifier()
        self.audit_sink = audit_sink or NullAuditSink()
        self.interval_seconds = interval_seconds
        self.clock = clock

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='order-matcher', daemon=True)
        self._thread.start()
        logger.info("Order matcher started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Order matcher stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error("Order matcher tick failed", error=str(e))
            self._stop_event.wait(self.interval_seconds)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def tick(self) -> TickReport:
        """Run one matching pass unless another pass is in progress."""
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous matcher tick still running, skipping")
            return TickReport(skipped=True)
        try:
            with matcher_tick_time.time():
                return self._run_tick()
        finally:
            self._tick_lock.release()

    def _run_tick(self) -> TickReport:
        report = TickReport()
        now = self.clock()

        db = self.session_factory()
        try:
            orders = ConditionalOrderBook(db, clock=self.clock).pending(now)
        finally:
            db.close()

        if not orders:
            return report

        logger.info("Processing pending conditional orders", count=len(orders))
        for order in orders:
            report.evaluated += 1
            self._process(order, report)

        logger.info(
            "Matcher tick complete",
            evaluated=report.evaluated,
            executed=report.executed,
            failed=report.failed,
            waiting=report.waiting,
            unquoted=report.unquoted
        )
        return report

    def _process(self, order: PendingOrder, report: TickReport):
        quote = self._quote(order.symbol)
        if quote is None:
            report.unquoted += 1
            record_order_outcome(order.direction, 'unquoted')
            return

        price = Decimal(quote.price)
        if not should_fire(order.direction, price, order.trigger_price):
            report.waiting += 1
            record_order_outcome(order.direction, 'waiting')
            return

        logger.info(
            "Executing conditional order",
            order_id=order.id,
            symbol=order.symbol,
            direction=order.direction,
            price=str(price),
            trigger_price=str(order.trigger_price)
        )
        try:
            transaction_id = self._fire(order, price)
        except OrderStateConflict:
            # Cancelled or fired elsewhere between snapshot and execution
            report.conflicts += 1
            record_order_outcome(order.direction, 'conflict')
            logger.info("Order no longer pending, skipped", order_id=order.id)
            return
        except Exception as e:
            report.failed += 1
            record_order_outcome(order.direction, 'failed')
            self._record_failure(order, e)
            return

        report.executed += 1
        record_order_outcome(order.direction, 'executed')
        self._announce(order, price, transaction_id)

    def _quote(self, symbol: str):
        try:
            return self.quote_provider.get_quote(symbol)
        except Exception as e:
            logger.warning("Quote provider failed", symbol=symbol, error=str(e))
            return None

    def _fire(self, order: PendingOrder, price: Decimal) -> str:
        """
        Execute through the ledger and flip the order to executed in the
        same unit of work.
        """
        now = self.clock()

        def claim(session: Session, info: dict):
            updated = session.query(ConditionalOrder).filter(
                ConditionalOrder.id == order.id,
                ConditionalOrder.status == ORDER_PENDING
            ).update({
                ConditionalOrder.status: ORDER_EXECUTED,
                ConditionalOrder.executed_price: price,
                ConditionalOrder.executed_at: now,
                ConditionalOrder.transaction_id: info['transaction_id'],
            }, synchronize_session=False)
            if updated != 1:
                raise OrderStateConflict(f"Order {order.id} is no longer pending")

        db = self.session_factory()
        try:
            ledger = self.ledger_factory(db)
            if order.direction == TRANSACTION_SELL:
                result = ledger.sell(
                    order.user_id,
                    order.position_id,
                    order.quantity,
                    price,
                    source_order_id=order.id,
                    before_commit=claim
                )
            else:
                result = ledger.buy(
                    order.user_id,
                    order.symbol,
                    order.quantity,
                    price,
                    asset_type=order.asset_type,
                    source_order_id=order.id,
                    before_commit=claim
                )
            return result.transaction_id
        finally:
            db.close()

    def _announce(self, order: PendingOrder, price: Decimal, transaction_id: str):
        payload = {
            'order_id': order.id,
            'symbol': order.symbol,
            'direction': order.direction,
            'executed_price': price,
            'quantity': order.quantity,
            'transaction_id': transaction_id,
        }
        try:
            self.notifier.notify(order.user_id, 'order:executed', payload)
        except Exception as e:
            logger.warning("Order notification failed", order_id=order.id, error=str(e))

        self.audit_sink.log(
            action='order_execution',
            entity_type='conditional_order',
            entity_id=order.id,
            actor=order.user_id,
            severity='info',
            details=dict(payload, timestamp=self.clock())
        )

    def _record_failure(self, order: PendingOrder, error: Exception):
        logger.error(
            "Failed to execute conditional order",
            order_id=order.id,
            symbol=order.symbol,
            error=str(error),
            error_type=type(error).__name__
        )

        db = self.session_factory()
        try:
            db.query(ConditionalOrder).filter(
                ConditionalOrder.id == order.id,
                ConditionalOrder.status == ORDER_PENDING
            ).update({
                ConditionalOrder.status: ORDER_FAILED,
                ConditionalOrder.error_message: str(error)[:1000],
            }, synchronize_session=False)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("Could not mark order failed", order_id=order.id, error=str(e))
        finally:
            db.close()

        self.audit_sink.log(
            action='order_execution_failed',
            entity_type='conditional_order',
            entity_id=order.id,
            actor=order.user_id,
            severity='error',
            details={
                'error': str(error),
                'symbol': order.symbol,
                'direction': order.direction,
            }
        )
