"""
Tests for allocation persistence, transparency publication and impact
projections.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from charity_ledger.core.allocation_ledger import AllocationLedger
from charity_ledger.core.charity_selector import CharitySelector
from charity_ledger.core.exceptions import AllocationNotFound, InvalidStatusTransition
from charity_ledger.models.allocations import AllocationRecord
from charity_ledger.models.audit_log import TransparencyEntry
from charity_ledger.models.organizations import BeneficiaryOrganization
from charity_ledger.services.transparency import HashChainTransparencyLogger, TransparencyLogger


class ExplodingTransparencyLogger(TransparencyLogger):
    def record(self, allocation_id, amounts, timestamp):
        raise RuntimeError("transparency backend unreachable")


def _round_trip(ledger, user_id="alice", buy_price=100, sell_price=200, quantity=10):
    bought = ledger.buy(user_id, "ACME", quantity, buy_price)
    return ledger.sell(user_id, bought.position_id, quantity, sell_price)


def _org_totals(session_factory):
    db = session_factory()
    try:
        return {org.id: Decimal(org.total_received) for org in db.query(BeneficiaryOrganization).all()}
    finally:
        db.close()


def _manual_record(org_id, transaction_id="tx-1"):
    return AllocationRecord(
        transaction_id=transaction_id,
        user_id="alice",
        profit_amount=Decimal("100"),
        allocation_percentage=Decimal("10"),
        allocation_amount=Decimal("10"),
        organization_id=org_id,
        selection_method="explicit",
        status="allocated",
        allocated_at=datetime.utcnow()
    )


class TestRecording:

    def test_profitable_sell_credits_organization(self, db, ledger, organizations, session_factory):
        result = _round_trip(ledger)

        totals = _org_totals(session_factory)
        assert result.allocation.amount == Decimal("100.0000")
        assert totals[result.allocation.organization_id] == Decimal("100")
        assert sum(totals.values()) == Decimal("100")

    def test_rollback_discards_record_and_credit(self, db, organizations, session_factory):
        AllocationLedger(db).record(_manual_record(organizations["health"]))
        db.rollback()

        assert db.query(AllocationRecord).count() == 0
        assert _org_totals(session_factory)[organizations["health"]] == Decimal("0")

    def test_unknown_organization_rejected(self, db, organizations):
        with pytest.raises(AllocationNotFound):
            AllocationLedger(db).record(_manual_record("missing-org"))
        db.rollback()

    def test_no_organization_leaves_allocation_unassigned(self, db, ledger):
        result = _round_trip(ledger)

        record = db.query(AllocationRecord).one()
        assert record.organization_id is None
        assert record.status == "allocated"
        assert result.allocation.amount == Decimal("100.0000")


class TestTransparency:

    def test_published_after_commit(self, db, make_ledger, organizations, session_factory, immediate_executor):
        transparency = HashChainTransparencyLogger(session_factory)
        ledger = make_ledger(
            db,
            transparency_logger=transparency,
            dispatcher=immediate_executor,
            session_factory=session_factory
        )

        result = _round_trip(ledger)

        check = session_factory()
        try:
            record = check.query(AllocationRecord).filter(
                AllocationRecord.id == result.allocation.allocation_id
            ).one()
            assert immediate_executor.submitted == 1
            assert record.transparency_log_ref is not None
            assert record.status == "allocated"
        finally:
            check.close()

        receipt = transparency.verify(record.transparency_log_ref)
        assert receipt["valid"] is True
        assert receipt["allocation_id"] == result.allocation.allocation_id
        assert receipt["payload"]["allocation_amount"] == "100.0000"
        assert transparency.verify("not-a-receipt") is None

    def test_rolled_back_allocation_not_published(self, db, organizations, session_factory, immediate_executor):
        allocation_ledger = AllocationLedger(
            db,
            transparency_logger=HashChainTransparencyLogger(session_factory),
            dispatcher=immediate_executor,
            session_factory=session_factory
        )
        allocation_ledger.record(_manual_record(organizations["health"]))
        db.rollback()

        assert immediate_executor.submitted == 0
        assert db.query(TransparencyEntry).count() == 0

    def test_transparency_failure_does_not_affect_trade(self, db, make_ledger, organizations, immediate_executor):
        ledger = make_ledger(
            db,
            transparency_logger=ExplodingTransparencyLogger(),
            dispatcher=immediate_executor
        )

        result = _round_trip(ledger)

        record = db.query(AllocationRecord).one()
        assert result.is_profitable
        assert record.transparency_log_ref is None

    def test_entries_form_a_hash_chain(self, db, make_ledger, organizations, session_factory, immediate_executor):
        transparency = HashChainTransparencyLogger(session_factory)
        ledger = make_ledger(
            db,
            transparency_logger=transparency,
            dispatcher=immediate_executor,
            session_factory=session_factory
        )

        bought = ledger.buy("alice", "ACME", 30, 100)
        for _ in range(3):
            ledger.sell("alice", bought.position_id, 10, 150)

        entries = db.query(TransparencyEntry).order_by(TransparencyEntry.id).all()
        assert len(entries) == 3
        assert entries[0].previous_hash is None
        assert entries[1].previous_hash == entries[0].event_hash
        assert transparency.verify_chain() is True


class TestStatusLifecycle:

    def test_allocated_to_confirmed(self, db, ledger, organizations):
        result = _round_trip(ledger)
        allocations = AllocationLedger(db)

        allocations.transition(result.allocation.allocation_id, "transferred")
        record = allocations.transition(result.allocation.allocation_id, "confirmed")

        assert record.status == "confirmed"
        assert record.transferred_at is not None
        assert record.confirmed_at is not None

    def test_terminal_status_cannot_change(self, db, ledger, organizations):
        result = _round_trip(ledger)
        allocations = AllocationLedger(db)
        allocations.transition(result.allocation.allocation_id, "failed")

        with pytest.raises(InvalidStatusTransition):
            allocations.transition(result.allocation.allocation_id, "transferred")

    def test_cannot_skip_transfer(self, db, ledger, organizations):
        result = _round_trip(ledger)

        with pytest.raises(InvalidStatusTransition):
            AllocationLedger(db).transition(result.allocation.allocation_id, "confirmed")

    def test_unknown_allocation(self, db):
        with pytest.raises(AllocationNotFound):
            AllocationLedger(db).transition("missing", "transferred")


def test_assign_unassigned_credits_new_beneficiary(db, ledger, session_factory):
    _round_trip(ledger)
    org = BeneficiaryOrganization(name="Late Arrival", category="social", is_verified=True)
    db.add(org)
    db.commit()

    assigned = AllocationLedger(db).assign_unassigned(CharitySelector(db))

    record = db.query(AllocationRecord).one()
    assert assigned == 1
    assert record.organization_id == org.id
    assert record.impact_category == "social"
    assert _org_totals(session_factory)[org.id] == Decimal("100")


def test_assign_unassigned_without_organizations(db, ledger):
    _round_trip(ledger)

    assert AllocationLedger(db).assign_unassigned(CharitySelector(db)) == 0


class TestImpact:

    def test_user_impact(self, db, ledger, organizations):
        bought = ledger.buy("alice", "ACME", 10, 100)
        ledger.sell("alice", bought.position_id, 5, 200)
        ledger.sell("alice", bought.position_id, 5, 300)
        _round_trip(ledger, user_id="bob")

        impact = AllocationLedger(db).get_user_impact("alice")

        assert impact.total_donated == Decimal("150")
        assert impact.donations_count == 2
        assert impact.average_percentage == Decimal("10")
        assert impact.beneficiaries_helped == 15
        assert sum(c["amount"] for c in impact.top_categories) == Decimal("150")
        assert len(impact.recent_donations) == 2
        assert sum(m["amount"] for m in impact.monthly_trend) == Decimal("150")

    def test_failed_allocations_excluded(self, db, ledger, organizations):
        result = _round_trip(ledger)
        allocations = AllocationLedger(db)
        allocations.transition(result.allocation.allocation_id, "failed")

        impact = allocations.get_user_impact("alice")

        assert impact.total_donated == Decimal("0")
        assert impact.donations_count == 0
        assert impact.average_percentage == Decimal("0")

    def test_platform_metrics_default_to_floor(self, db):
        metrics = AllocationLedger(db).get_platform_metrics()

        assert metrics.total_donated == Decimal("0")
        assert metrics.total_donors == 0
        assert metrics.average_percentage == Decimal("10")

    def test_custom_policy_read_once(self, db, monkeypatch):
        def unexpected():
            raise AssertionError("policy file should not be read")

        monkeypatch.setattr("charity_ledger.core.allocation_ledger.get_charity_policy", unexpected)
        policy = {
            'allocation': {'floor_percentage': 15},
            'impact': {'beneficiary_unit': 20, 'top_categories': 3, 'recent_donations': 5},
        }

        allocations = AllocationLedger(db, policy=policy)

        assert allocations.default_percentage == Decimal("15")
        assert allocations.impact_policy['beneficiary_unit'] == 20
        assert allocations.get_platform_metrics().average_percentage == Decimal("15")

    def test_platform_metrics(self, db, ledger, organizations):
        _round_trip(ledger, user_id="alice")
        _round_trip(ledger, user_id="bob")

        metrics = AllocationLedger(db).get_platform_metrics()

        assert metrics.total_donated == Decimal("200")
        assert metrics.total_donors == 2
        assert metrics.total_transactions == 2

    def test_list_organizations_only_active(self, db, organizations):
        allocations = AllocationLedger(db)

        names = {org.name for org in allocations.list_organizations()}

        assert "Closed Fund" not in names
        assert len(names) == 4
        assert [org.name for org in allocations.list_organizations("health")] == ["Clinics"]
