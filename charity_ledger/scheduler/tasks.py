"""
Celery background tasks.
"""
from celery import Task
import redis
from charity_ledger.scheduler.celery_app import app
from charity_ledger.core.charity_selector import CharitySelector
from charity_ledger.core.conditional_orders import ConditionalOrderBook
from charity_ledger.data.market_data import build_quote_provider
from charity_ledger.models.base import SessionLocal
from charity_ledger.models.positions import Position
from charity_ledger.services.wiring import (
    build_allocation_ledger, build_order_matcher, build_position_ledger
)
from charity_ledger.utils.constants import MATCHER_LOCK_NAME
from charity_ledger.utils.logging import get_logger
from config.settings import get_settings

logger = get_logger(__name__)

_matcher = None

def get_matcher():
    global _matcher
    if _matcher is None:
        _matcher = build_order_matcher()
    return _matcher

class DatabaseTask(Task):
    """Base task with database session management."""
    _db = None
    
    @property
    def db(self):
        if self._db is None:
            self._db = SessionLocal()
        return self._db
    
    def after_return(self, *args, **kwargs):
        if self._db is not None:
            self._db.close()
            self._db = None


@app.task
def match_conditional_orders():
    """
    Run one matcher tick.
    A Redis lock keeps ticks from overlapping across workers.
    """
    settings = get_settings()
    client = redis.Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT)
    lock = client.lock(MATCHER_LOCK_NAME, timeout=settings.ORDER_MATCH_INTERVAL_SECONDS)
    
    if not lock.acquire(blocking=False):
        logger.warning("Matcher tick already running on another worker, skipping")
        return {'status': 'skipped'}
    
    try:
        report = get_matcher().tick()
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            logger.warning("Matcher lock expired before release")
    
    return {
        'status': 'skipped' if report.skipped else 'completed',
        'evaluated': report.evaluated,
        'executed': report.executed,
        'failed': report.failed
    }


@app.task(base=DatabaseTask, bind=True)
def expire_conditional_orders(self):
    """Mark pending orders past their expiry as expired."""
    expired = ConditionalOrderBook(self.db).expire_overdue()
    return {'status': 'completed', 'expired': expired}


@app.task(base=DatabaseTask, bind=True)
def mark_positions_to_market(self):
    """Refresh current price and unrealized profit on open positions."""
    ledger = build_position_ledger(self.db)
    updated = ledger.mark_to_market(build_quote_provider())
    return {'status': 'completed', 'updated': updated}


@app.task(base=DatabaseTask, bind=True)
def assign_unassigned_allocations(self):
    """Give allocations recorded without a beneficiary an organization."""
    ledger = build_allocation_ledger(self.db)
    assigned = ledger.assign_unassigned(CharitySelector(self.db))
    return {'status': 'completed', 'assigned': assigned}


@app.task(base=DatabaseTask, bind=True)
def end_of_day_reconciliation(self):
    """
    Daily task: rebuild every position from its transaction log.
    Runs at 10 PM UTC.
    """
    logger.info("Starting end-of-day reconciliation")
    
    ledger = build_position_ledger(self.db)
    position_ids = [row[0] for row in self.db.query(Position.id).all()]
    
    unbalanced = []
    for position_id in position_ids:
        report = ledger.reconcile(position_id)
        if not report.balanced:
            unbalanced.append(position_id)
    
    logger.info(
        "Reconciliation complete",
        positions=len(position_ids),
        unbalanced=len(unbalanced)
    )
    return {'status': 'completed', 'positions': len(position_ids), 'unbalanced': unbalanced}
