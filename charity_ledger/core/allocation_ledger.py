"""
Allocation ledger: persistence of charity allocations, organization
running totals and impact projections.
"""
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from sqlalchemy import event, func, desc
from sqlalchemy.orm import Session
from charity_ledger.core.charity_selector import CharitySelector
from charity_ledger.core.exceptions import AllocationNotFound, InvalidStatusTransition
from charity_ledger.models.allocations import AllocationRecord
from charity_ledger.models.base import SessionLocal
from charity_ledger.models.organizations import BeneficiaryOrganization
from charity_ledger.services.transparency import NullTransparencyLogger, TransparencyLogger
from charity_ledger.utils.constants import (
    ALLOCATION_ALLOCATED, ALLOCATION_CONFIRMED, ALLOCATION_FAILED,
    ALLOCATION_TRANSFERRED, ZERO
)
from charity_ledger.utils.logging import get_logger
from config.settings import get_charity_policy

logger = get_logger(__name__)

# Shared pool for fire-and-forget transparency writes
_transparency_pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix='transparency')

_PENDING_KEY = 'pending_transparency'
_HOOKED_KEY = 'transparency_hooked'

ALLOWED_TRANSITIONS = {
    ALLOCATION_ALLOCATED: {ALLOCATION_TRANSFERRED, ALLOCATION_FAILED},
    ALLOCATION_TRANSFERRED: {ALLOCATION_CONFIRMED, ALLOCATION_FAILED},
    ALLOCATION_CONFIRMED: set(),
    ALLOCATION_FAILED: set(),
}

@dataclass
class UserImpact:
    """Charity impact of one user."""
    total_donated: Decimal
    donations_count: int
    average_percentage: Decimal
    beneficiaries_helped: int
    top_categories: List[Dict] = field(default_factory=list)
    recent_donations: List[AllocationRecord] = field(default_factory=list)
    monthly_trend: List[Dict] = field(default_factory=list)

@dataclass
class PlatformMetrics:
    """Platform-wide charity totals."""
    total_donated: Decimal
    total_donors: int
    total_transactions: int
    average_percentage: Decimal

class AllocationLedger:
    """
    Persists allocation records together with the organization running
    total, inside the caller's transaction.
    
    After the surrounding transaction commits, each recorded allocation is
    handed to the transparency logger on a background worker. Rolled-back
    allocations are never published.
    """
    
    def __init__(
        self,
        db: Session,
        transparency_logger: TransparencyLogger = None,
        dispatcher=None,
        session_factory=None,
        policy: dict = None
    ):
        self.db = db
        self.transparency_logger = transparency_logger or NullTransparencyLogger()
        self.dispatcher = dispatcher or _transparency_pool
        self.session_factory = session_factory or SessionLocal
        policy = policy or get_charity_policy()
        self.impact_policy = policy['impact']
        self.default_percentage = Decimal(str(policy['allocation']['floor_percentage']))
    
    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    
    def record(self, allocation: AllocationRecord) -> AllocationRecord:
        """
        Add an allocation and increment its organization's running total.
        
        Does not commit; both writes land or roll back with the caller's
        unit of work.
        """
        self.db.add(allocation)
        if allocation.organization_id:
            self._credit_organization(allocation.organization_id, Decimal(allocation.allocation_amount))
        self.db.flush()
        
        logger.info(
            "Charity allocation recorded",
            allocation_id=allocation.id,
            transaction_id=allocation.transaction_id,
            amount=str(allocation.allocation_amount),
            percentage=str(allocation.allocation_percentage),
            organization_id=allocation.organization_id
        )
        
        self._schedule_publication(allocation)
        return allocation
    
    def _credit_organization(self, organization_id: str, amount: Decimal):
        updated = self.db.query(BeneficiaryOrganization).filter(
            BeneficiaryOrganization.id == organization_id
        ).update(
            {BeneficiaryOrganization.total_received: BeneficiaryOrganization.total_received + amount},
            synchronize_session=False
        )
        if updated != 1:
            raise AllocationNotFound(f"Organization {organization_id} not found")
    
    def _schedule_publication(self, allocation: AllocationRecord):
        if not self.transparency_logger.enabled:
            return
        
        pending = self.db.info.setdefault(_PENDING_KEY, [])
        pending.append((allocation.id, {
            'user_id': allocation.user_id,
            'profit_amount': allocation.profit_amount,
            'allocation_percentage': allocation.allocation_percentage,
            'allocation_amount': allocation.allocation_amount,
            'organization_id': allocation.organization_id,
        }, allocation.allocated_at))
        
        if not self.db.info.get(_HOOKED_KEY):
            event.listen(self.db, 'after_commit', self._after_commit)
            event.listen(self.db, 'after_rollback', self._after_rollback)
            self.db.info[_HOOKED_KEY] = True
    
    def _after_commit(self, session: Session):
        pending = session.info.pop(_PENDING_KEY, [])
        for allocation_id, amounts, timestamp in pending:
            self.dispatcher.submit(self._publish, allocation_id, amounts, timestamp)
    
    def _after_rollback(self, session: Session):
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            logger.info("Discarded transparency publications after rollback", count=len(dropped))
    
    def _publish(self, allocation_id: str, amounts: Dict, timestamp: datetime):
        # Best effort: failures are logged and never reach the trade path
        try:
            receipt = self.transparency_logger.record(allocation_id, amounts, timestamp)
            if not receipt:
                return
            db = self.session_factory()
            try:
                db.query(AllocationRecord).filter(AllocationRecord.id == allocation_id).update(
                    {AllocationRecord.transparency_log_ref: receipt},
                    synchronize_session=False
                )
                db.commit()
            finally:
                db.close()
        except Exception as e:
            logger.error("Transparency logging failed (non-blocking)",
                         allocation_id=allocation_id, error=str(e))
    
    def transition(self, allocation_id: str, new_status: str, at: datetime = None) -> AllocationRecord:
        """
        Move an allocation along allocated -> transferred -> confirmed,
        or to failed. Commits.
        """
        allocation = self.db.query(AllocationRecord).filter(
            AllocationRecord.id == allocation_id
        ).with_for_update().first()
        if allocation is None:
            raise AllocationNotFound(f"Allocation {allocation_id} not found")
        
        if new_status not in ALLOWED_TRANSITIONS.get(allocation.status, set()):
            raise InvalidStatusTransition(
                f"Cannot move allocation from {allocation.status} to {new_status}"
            )
        
        at = at or datetime.utcnow()
        allocation.status = new_status
        if new_status == ALLOCATION_TRANSFERRED:
            allocation.transferred_at = at
        elif new_status == ALLOCATION_CONFIRMED:
            allocation.confirmed_at = at
        self.db.commit()
        
        logger.info("Allocation status changed", allocation_id=allocation_id, status=new_status)
        return allocation
    
    def assign_unassigned(self, selector: CharitySelector) -> int:
        """
        Give allocations recorded without a beneficiary an organization,
        crediting its running total in the same transaction.
        """
        assigned = 0
        try:
            pending = self.db.query(AllocationRecord).filter(
                AllocationRecord.organization_id.is_(None),
                AllocationRecord.status == ALLOCATION_ALLOCATED
            ).with_for_update().all()
            
            for allocation in pending:
                org = selector.select()
                if org is None:
                    break
                allocation.organization_id = org.id
                allocation.impact_category = org.category
                self._credit_organization(org.id, Decimal(allocation.allocation_amount))
                # Expire so the next balanced pick sees the new total
                self.db.flush()
                self.db.expire(org)
                assigned += 1
            
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        
        if assigned:
            logger.info("Assigned beneficiaries to allocations", count=assigned)
        return assigned
    
    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------
    
    def get_user_impact(self, user_id: str) -> UserImpact:
        total, count, average = self.db.query(
            func.coalesce(func.sum(AllocationRecord.allocation_amount), 0),
            func.count(AllocationRecord.id),
            func.avg(AllocationRecord.allocation_percentage)
        ).filter(
            AllocationRecord.user_id == user_id,
            AllocationRecord.status != ALLOCATION_FAILED
        ).one()
        total = Decimal(str(total))
        
        category_rows = self.db.query(
            AllocationRecord.impact_category,
            func.sum(AllocationRecord.allocation_amount).label('amount')
        ).filter(
            AllocationRecord.user_id == user_id,
            AllocationRecord.impact_category.isnot(None),
            AllocationRecord.status != ALLOCATION_FAILED
        ).group_by(
            AllocationRecord.impact_category
        ).order_by(desc('amount')).limit(self.impact_policy['top_categories']).all()
        
        recent = self.list_recent(user_id, self.impact_policy['recent_donations'])
        
        return UserImpact(
            total_donated=total,
            donations_count=int(count),
            average_percentage=Decimal(str(average)) if average is not None else ZERO,
            beneficiaries_helped=int(total // Decimal(str(self.impact_policy['beneficiary_unit']))),
            top_categories=[
                {'category': category, 'amount': Decimal(str(amount))}
                for category, amount in category_rows
            ],
            recent_donations=recent,
            monthly_trend=self._monthly_trend(user_id)
        )
    
    def _monthly_trend(self, user_id: str) -> List[Dict]:
        rows = self.db.query(
            AllocationRecord.allocated_at, AllocationRecord.allocation_amount
        ).filter(
            AllocationRecord.user_id == user_id,
            AllocationRecord.status != ALLOCATION_FAILED
        ).order_by(AllocationRecord.allocated_at.asc()).all()
        
        months = OrderedDict()
        for allocated_at, amount in rows:
            key = allocated_at.strftime('%Y-%m')
            months[key] = months.get(key, ZERO) + Decimal(amount)
        return [{'month': month, 'amount': amount} for month, amount in months.items()]
    
    def list_recent(self, user_id: str, limit: int = 10) -> List[AllocationRecord]:
        return self.db.query(AllocationRecord).filter(
            AllocationRecord.user_id == user_id
        ).order_by(desc(AllocationRecord.allocated_at)).limit(limit).all()
    
    def get_platform_metrics(self) -> PlatformMetrics:
        total, donors, transactions, average = self.db.query(
            func.coalesce(func.sum(AllocationRecord.allocation_amount), 0),
            func.count(func.distinct(AllocationRecord.user_id)),
            func.count(AllocationRecord.id),
            func.avg(AllocationRecord.allocation_percentage)
        ).filter(AllocationRecord.status != ALLOCATION_FAILED).one()
        
        return PlatformMetrics(
            total_donated=Decimal(str(total)),
            total_donors=int(donors),
            total_transactions=int(transactions),
            average_percentage=(
                Decimal(str(average)) if average is not None else self.default_percentage
            )
        )
    
    def list_organizations(self, category: Optional[str] = None) -> List[BeneficiaryOrganization]:
        query = self.db.query(BeneficiaryOrganization).filter(
            BeneficiaryOrganization.is_active.is_(True)
        )
        if category:
            query = query.filter(BeneficiaryOrganization.category == category)
        return query.order_by(desc(BeneficiaryOrganization.total_received)).all()
