"""
Pytest configuration and fixtures for ledger tests.

Provides a file-backed SQLite database per test, seeded organizations and
fakes for the external collaborators (quotes, notifications, audit).
"""
import os

# Must be set before config.settings is first imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TRANSPARENCY_LOG_ENABLED", "false")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")

from decimal import Decimal
from typing import Dict, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from charity_ledger.core.allocation_ledger import AllocationLedger
from charity_ledger.core.allocation_rules import AllocationRuleEngine
from charity_ledger.core.position_ledger import PositionLedger
from charity_ledger.data.market_data import Quote, QuoteProvider
from charity_ledger.models.base import Base
# Import all models to register them
from charity_ledger.models.accounts import AccountPreference  # noqa: F401
from charity_ledger.models.allocations import AllocationRecord  # noqa: F401
from charity_ledger.models.audit_log import AuditLog, TransparencyEntry  # noqa: F401
from charity_ledger.models.orders import ConditionalOrder  # noqa: F401
from charity_ledger.models.organizations import BeneficiaryOrganization
from charity_ledger.models.positions import Position  # noqa: F401
from charity_ledger.models.transactions import LedgerTransaction  # noqa: F401
from charity_ledger.services.audit_service import AuditSink
from charity_ledger.services.notifier import Notifier


# =============================
# Database Fixtures
# =============================


@pytest.fixture
def engine(tmp_path):
    """
    File-backed SQLite engine so several sessions and threads can share it.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================
# Domain Fixtures
# =============================


@pytest.fixture
def rules():
    return AllocationRuleEngine(floor_percentage=10)


@pytest.fixture
def organizations(db):
    """Three verified orgs, one unverified and one inactive."""
    orgs = {
        "health": BeneficiaryOrganization(name="Clinics", category="health", is_verified=True),
        "education": BeneficiaryOrganization(name="Books", category="education", is_verified=True),
        "social": BeneficiaryOrganization(name="Food Bank", category="social", is_verified=True),
        "unverified": BeneficiaryOrganization(name="New Shelter", category="animals", is_verified=False),
        "inactive": BeneficiaryOrganization(
            name="Closed Fund", category="health", is_verified=True, is_active=False
        ),
    }
    for org in orgs.values():
        db.add(org)
    db.commit()
    return {key: org.id for key, org in orgs.items()}


@pytest.fixture
def make_ledger(rules):
    """Build a PositionLedger bound to the given session."""

    def _make(session, rule_engine=None, **allocation_kwargs):
        engine = rule_engine or rules
        allocation_ledger = AllocationLedger(session, **allocation_kwargs)
        return PositionLedger(session, engine, allocation_ledger=allocation_ledger)

    return _make


@pytest.fixture
def ledger(db, make_ledger):
    return make_ledger(db)


# =============================
# Collaborator Fakes
# =============================


class ImmediateExecutor:
    """Runs submitted work inline so background effects are observable."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        fn(*args, **kwargs)


class FakeQuoteProvider(QuoteProvider):
    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        self.prices = dict(prices or {})
        self.calls = []
        self.failing = set()

    def set(self, symbol: str, price):
        self.prices[symbol] = Decimal(str(price)) if price is not None else None

    def get_quote(self, symbol: str) -> Optional[Quote]:
        self.calls.append(symbol)
        if symbol in self.failing:
            raise ConnectionError(f"quote feed down for {symbol}")
        price = self.prices.get(symbol)
        if price is None:
            return None
        return Quote(symbol=symbol, price=Decimal(str(price)))


class RecordingNotifier(Notifier):
    def __init__(self):
        self.messages = []

    def notify(self, user_id, event, payload):
        self.messages.append((user_id, event, payload))


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.entries = []

    def log(self, action, entity_type, entity_id, actor="system", severity="info", details=None, reason=None):
        self.entries.append({
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "actor": actor,
            "severity": severity,
            "details": details or {},
        })


@pytest.fixture
def immediate_executor():
    return ImmediateExecutor()


@pytest.fixture
def quotes():
    return FakeQuoteProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()

