"""
Construction of ledger components from settings.
"""
from functools import lru_cache
from sqlalchemy.orm import Session
from charity_ledger.core.allocation_ledger import AllocationLedger
from charity_ledger.core.allocation_rules import AllocationRuleEngine, build_allocation_rule_engine
from charity_ledger.core.order_matcher import OrderMatcher
from charity_ledger.core.position_ledger import PositionLedger
from charity_ledger.data.market_data import build_quote_provider
from charity_ledger.models.base import SessionLocal
from charity_ledger.services.audit_service import AuditService
from charity_ledger.services.notifier import build_notifier
from charity_ledger.services.transparency import (
    HashChainTransparencyLogger, NullTransparencyLogger, TransparencyLogger
)
from config.settings import get_settings

@lru_cache()
def get_rule_engine() -> AllocationRuleEngine:
    """Rule engine built once from the charity policy at startup."""
    return build_allocation_rule_engine()

def build_transparency_logger(session_factory=SessionLocal) -> TransparencyLogger:
    if not get_settings().TRANSPARENCY_LOG_ENABLED:
        return NullTransparencyLogger()
    return HashChainTransparencyLogger(session_factory)

def build_allocation_ledger(db: Session, session_factory=SessionLocal) -> AllocationLedger:
    return AllocationLedger(
        db,
        transparency_logger=build_transparency_logger(session_factory),
        session_factory=session_factory
    )

def build_position_ledger(db: Session, session_factory=SessionLocal) -> PositionLedger:
    return PositionLedger(
        db,
        get_rule_engine(),
        allocation_ledger=build_allocation_ledger(db, session_factory)
    )

def build_order_matcher(session_factory=SessionLocal) -> OrderMatcher:
    settings = get_settings()
    return OrderMatcher(
        session_factory=session_factory,
        ledger_factory=lambda db: build_position_ledger(db, session_factory),
        quote_provider=build_quote_provider(),
        notifier=build_notifier(),
        audit_sink=AuditService(session_factory),
        interval_seconds=settings.ORDER_MATCH_INTERVAL_SECONDS
    )
