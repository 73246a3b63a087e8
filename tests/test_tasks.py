"""
Tests for the Celery tasks, run eagerly against the test database.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import redis

from charity_ledger.core.conditional_orders import ConditionalOrderBook
from charity_ledger.core.order_matcher import TickReport
from charity_ledger.models.orders import ConditionalOrder
from charity_ledger.models.positions import Position
from charity_ledger.scheduler import tasks


class FakeLock:
    def __init__(self, free=True, expired=False):
        self.free = free
        self.expired = expired
        self.released = False

    def acquire(self, blocking=True):
        return self.free

    def release(self):
        if self.expired:
            raise redis.exceptions.LockError("lock expired")
        self.released = True


class FakeMatcher:
    def __init__(self):
        self.ticks = 0

    def tick(self):
        self.ticks += 1
        return TickReport(evaluated=2, executed=1, failed=1)


@pytest.fixture
def matcher(monkeypatch):
    fake = FakeMatcher()
    monkeypatch.setattr(tasks, "get_matcher", lambda: fake)
    return fake


def _patch_lock(monkeypatch, lock):
    monkeypatch.setattr(tasks.redis, "Redis", lambda **kwargs: type("Client", (), {
        "lock": lambda self, name, timeout=None: lock
    })())


@pytest.fixture
def task_sessions(monkeypatch, session_factory):
    monkeypatch.setattr(tasks, "SessionLocal", session_factory)


def test_match_runs_one_tick(monkeypatch, matcher):
    lock = FakeLock()
    _patch_lock(monkeypatch, lock)

    result = tasks.match_conditional_orders()

    assert matcher.ticks == 1
    assert lock.released
    assert result == {'status': 'completed', 'evaluated': 2, 'executed': 1, 'failed': 1}


def test_match_skipped_while_locked(monkeypatch, matcher):
    _patch_lock(monkeypatch, FakeLock(free=False))

    assert tasks.match_conditional_orders() == {'status': 'skipped'}
    assert matcher.ticks == 0


def test_match_tolerates_expired_lock(monkeypatch, matcher):
    _patch_lock(monkeypatch, FakeLock(expired=True))

    assert tasks.match_conditional_orders()['status'] == 'completed'


def test_expire_conditional_orders(db, task_sessions):
    order = ConditionalOrderBook(db).create(
        "alice", "buy", 10, 1, symbol="ACME",
        expires_at=datetime.utcnow() + timedelta(hours=1)
    )
    db.query(ConditionalOrder).filter(ConditionalOrder.id == order.id).update(
        {ConditionalOrder.expires_at: datetime.utcnow() - timedelta(minutes=1)}
    )
    db.commit()

    result = tasks.expire_conditional_orders.apply().get()

    assert result == {'status': 'completed', 'expired': 1}


def test_assign_unassigned_allocations(db, ledger, task_sessions):
    bought = ledger.buy("alice", "ACME", 10, 100)
    ledger.sell("alice", bought.position_id, 10, 200)

    # No organizations yet, so nothing can be assigned
    assert tasks.assign_unassigned_allocations.apply().get()['assigned'] == 0


def test_end_of_day_reconciliation(db, ledger, task_sessions):
    balanced = ledger.buy("alice", "ACME", 10, 100)
    drifted = ledger.buy("alice", "BOLT", 10, 100)
    db.query(Position).filter(Position.id == drifted.position_id).update(
        {Position.quantity: Decimal("11")}
    )
    db.commit()

    result = tasks.end_of_day_reconciliation.apply().get()

    assert result['positions'] == 2
    assert result['unbalanced'] == [drifted.position_id]
    assert balanced.position_id not in result['unbalanced']
