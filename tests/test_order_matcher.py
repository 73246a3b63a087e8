"""
Tests for the scheduled conditional order matcher.
"""
import threading
import time
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import FakeQuoteProvider
from charity_ledger.core.conditional_orders import ConditionalOrderBook
from charity_ledger.core.order_matcher import OrderMatcher, should_fire
from charity_ledger.models.allocations import AllocationRecord
from charity_ledger.models.orders import ConditionalOrder
from charity_ledger.models.positions import Position


class BlockingQuoteProvider(FakeQuoteProvider):
    """Holds the first quote request until released."""

    def __init__(self, prices):
        super().__init__(prices)
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_quote(self, symbol):
        self.entered.set()
        self.release.wait(5)
        return super().get_quote(symbol)


class CancellingQuoteProvider(FakeQuoteProvider):
    """Cancels the order while its quote is being fetched."""

    def __init__(self, prices, session_factory, user_id, order_id):
        super().__init__(prices)
        self.session_factory = session_factory
        self.user_id = user_id
        self.order_id = order_id

    def get_quote(self, symbol):
        db = self.session_factory()
        try:
            ConditionalOrderBook(db).cancel(self.user_id, self.order_id)
        finally:
            db.close()
        return super().get_quote(symbol)


@pytest.fixture
def build_matcher(session_factory, make_ledger, notifier, audit_sink):

    def _build(quote_provider, **kwargs):
        return OrderMatcher(
            session_factory=session_factory,
            ledger_factory=lambda session: make_ledger(session),
            quote_provider=quote_provider,
            notifier=notifier,
            audit_sink=audit_sink,
            **kwargs
        )

    return _build


@pytest.fixture
def holding(ledger):
    return ledger.buy("alice", "ACME", 10, 100).position_id


def _order(session_factory, order_id):
    db = session_factory()
    try:
        return db.query(ConditionalOrder).filter(ConditionalOrder.id == order_id).one()
    finally:
        db.close()


def _quantity(session_factory, position_id):
    db = session_factory()
    try:
        return Decimal(db.query(Position).filter(Position.id == position_id).one().quantity)
    finally:
        db.close()


@pytest.mark.parametrize("direction,current,trigger,expected", [
    ("sell", "150", "150", True),
    ("sell", "151", "150", True),
    ("sell", "149.99", "150", False),
    ("buy", "50", "50", True),
    ("buy", "49", "50", True),
    ("buy", "50.01", "50", False),
    ("hold", "50", "50", False),
])
def test_should_fire(direction, current, trigger, expected):
    assert should_fire(direction, Decimal(current), Decimal(trigger)) is expected


class TestTick:

    def test_sell_waits_below_trigger(self, db, build_matcher, holding, quotes, session_factory):
        order = ConditionalOrderBook(db).create("alice", "sell", 150, 5, position_id=holding)
        quotes.set("ACME", "149.99")

        report = build_matcher(quotes).tick()

        assert report.waiting == 1
        assert report.executed == 0
        assert _order(session_factory, order.id).status == "pending"
        assert _quantity(session_factory, holding) == Decimal("10")

    def test_sell_fires_at_trigger(self, db, build_matcher, holding, quotes, notifier, audit_sink,
                                   session_factory, organizations):
        order = ConditionalOrderBook(db).create("alice", "sell", 150, 5, position_id=holding)
        quotes.set("ACME", 150)

        report = build_matcher(quotes).tick()

        executed = _order(session_factory, order.id)
        assert report.executed == 1
        assert executed.status == "executed"
        assert executed.executed_price == Decimal("150")
        assert executed.executed_at is not None
        assert executed.transaction_id is not None
        assert _quantity(session_factory, holding) == Decimal("5")

        check = session_factory()
        try:
            allocation = check.query(AllocationRecord).one()
            assert allocation.transaction_id == executed.transaction_id
            assert allocation.allocation_amount == Decimal("25")
        finally:
            check.close()

        assert notifier.messages[0][0] == "alice"
        assert notifier.messages[0][1] == "order:executed"
        assert audit_sink.entries[-1]["action"] == "order_execution"
        assert audit_sink.entries[-1]["entity_id"] == order.id

    def test_buy_fires_at_or_below_trigger(self, db, build_matcher, quotes, session_factory):
        order = ConditionalOrderBook(db).create("alice", "buy", 50, 2, symbol="BOLT", asset_type="etf")
        matcher = build_matcher(quotes)

        quotes.set("BOLT", "50.5")
        assert matcher.tick().waiting == 1

        quotes.set("BOLT", "49")
        assert matcher.tick().executed == 1

        check = session_factory()
        try:
            position = check.query(Position).filter(Position.symbol == "BOLT").one()
            assert position.quantity == Decimal("2")
            assert position.average_cost == Decimal("49")
            assert position.asset_type == "etf"
        finally:
            check.close()
        assert _order(session_factory, order.id).executed_price == Decimal("49")

    def test_order_executes_once(self, db, build_matcher, holding, quotes, session_factory):
        ConditionalOrderBook(db).create("alice", "sell", 150, 5, position_id=holding)
        quotes.set("ACME", 200)
        matcher = build_matcher(quotes)

        first = matcher.tick()
        second = matcher.tick()

        assert first.executed == 1
        assert second.evaluated == 0
        assert _quantity(session_factory, holding) == Decimal("5")

    def test_failure_is_isolated(self, db, build_matcher, holding, quotes, audit_sink, session_factory):
        book = ConditionalOrderBook(db)
        oversized = book.create("alice", "sell", 150, 100, position_id=holding)
        regular = book.create("alice", "sell", 150, 4, position_id=holding)
        quotes.set("ACME", 160)

        report = build_matcher(quotes).tick()

        failed = _order(session_factory, oversized.id)
        assert report.failed == 1
        assert report.executed == 1
        assert failed.status == "failed"
        assert "Cannot sell" in failed.error_message
        assert _order(session_factory, regular.id).status == "executed"
        assert _quantity(session_factory, holding) == Decimal("6")

        failures = [e for e in audit_sink.entries if e["action"] == "order_execution_failed"]
        assert len(failures) == 1
        assert failures[0]["severity"] == "error"
        assert failures[0]["entity_id"] == oversized.id

    def test_failed_orders_are_not_retried(self, db, build_matcher, holding, quotes):
        ConditionalOrderBook(db).create("alice", "sell", 150, 100, position_id=holding)
        quotes.set("ACME", 160)
        matcher = build_matcher(quotes)

        assert matcher.tick().failed == 1
        assert matcher.tick().evaluated == 0

    def test_missing_quote_skips_order(self, db, build_matcher, holding, quotes, session_factory):
        order = ConditionalOrderBook(db).create("alice", "sell", 150, 5, position_id=holding)

        report = build_matcher(quotes).tick()

        assert report.unquoted == 1
        assert _order(session_factory, order.id).status == "pending"

    def test_quote_provider_error_skips_order(self, db, build_matcher, holding, quotes, session_factory):
        order = ConditionalOrderBook(db).create("alice", "sell", 150, 5, position_id=holding)
        quotes.failing.add("ACME")

        report = build_matcher(quotes).tick()

        assert report.unquoted == 1
        assert _order(session_factory, order.id).status == "pending"

    def test_expired_orders_not_evaluated(self, db, build_matcher, holding, quotes):
        ConditionalOrderBook(db).create(
            "alice", "sell", 150, 5, position_id=holding,
            expires_at=datetime.utcnow() + timedelta(hours=1)
        )
        quotes.set("ACME", 200)
        matcher = build_matcher(quotes, clock=lambda: datetime.utcnow() + timedelta(hours=2))

        assert matcher.tick().evaluated == 0
        assert quotes.calls == []

    def test_cancelled_while_firing_is_not_executed(self, db, build_matcher, holding, session_factory):
        order = ConditionalOrderBook(db).create("alice", "sell", 150, 5, position_id=holding)
        quotes = CancellingQuoteProvider({"ACME": Decimal("200")}, session_factory, "alice", order.id)

        report = build_matcher(quotes).tick()

        assert report.conflicts == 1
        assert report.executed == 0
        assert _order(session_factory, order.id).status == "cancelled"
        assert _quantity(session_factory, holding) == Decimal("10")

    def test_overlapping_tick_is_skipped(self, db, build_matcher, holding, session_factory):
        ConditionalOrderBook(db).create("alice", "sell", 150, 5, position_id=holding)
        quotes = BlockingQuoteProvider({"ACME": Decimal("200")})
        matcher = build_matcher(quotes)
        reports = []

        worker = threading.Thread(target=lambda: reports.append(matcher.tick()))
        worker.start()
        assert quotes.entered.wait(5)

        overlapping = matcher.tick()
        quotes.release.set()
        worker.join(5)

        assert overlapping.skipped is True
        assert reports[0].executed == 1
        assert _quantity(session_factory, holding) == Decimal("5")


def test_background_loop(db, build_matcher, holding, quotes, session_factory):
    order = ConditionalOrderBook(db).create("alice", "sell", 150, 5, position_id=holding)
    quotes.set("ACME", 200)
    matcher = build_matcher(quotes, interval_seconds=0.05)

    matcher.start()
    try:
        assert matcher.running
        deadline = time.monotonic() + 5
        while _order(session_factory, order.id).status == "pending" and time.monotonic() < deadline:
            time.sleep(0.05)
    finally:
        matcher.stop(timeout=5)

    assert not matcher.running
    assert _order(session_factory, order.id).status == "executed"
