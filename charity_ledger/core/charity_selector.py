"""
Beneficiary organization selection.
"""
import random
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Session
from charity_ledger.models.organizations import BeneficiaryOrganization
from charity_ledger.utils.constants import (
    SELECTION_BALANCED, SELECTION_CATEGORY, SELECTION_EXPLICIT
)
from charity_ledger.utils.logging import get_logger

logger = get_logger(__name__)

class CharitySelector:
    """
    Chooses the organization that receives an allocation.
    
    Selection order:
    1. Explicit organization id (must be active, need not be verified)
    2. Random active + verified organization in the preferred category
    3. Active + verified organization with the lowest running total
    """
    
    def __init__(self, db: Session, rng: random.Random = None):
        self.db = db
        self.rng = rng or random.Random()
    
    @staticmethod
    def selection_method(explicit_id: Optional[str], category: Optional[str]) -> str:
        if explicit_id:
            return SELECTION_EXPLICIT
        if category:
            return SELECTION_CATEGORY
        return SELECTION_BALANCED
    
    def select(
        self,
        explicit_id: Optional[str] = None,
        category: Optional[str] = None
    ) -> Optional[BeneficiaryOrganization]:
        """
        Pick a beneficiary, or None when nothing matches.
        """
        if explicit_id:
            org = self.db.query(BeneficiaryOrganization).filter(
                BeneficiaryOrganization.id == explicit_id,
                BeneficiaryOrganization.is_active.is_(True)
            ).first()
            if org is None:
                logger.warning("Preferred organization unavailable", organization_id=explicit_id)
            return org
        
        if category:
            candidates = self._eligible().filter(
                BeneficiaryOrganization.category == category
            ).all()
            if not candidates:
                logger.warning("No verified organization in category", category=category)
                return None
            return self.rng.choice(candidates)
        
        return self._least_funded()
    
    def _eligible(self):
        return self.db.query(BeneficiaryOrganization).filter(
            BeneficiaryOrganization.is_active.is_(True),
            BeneficiaryOrganization.is_verified.is_(True)
        )
    
    def _least_funded(self) -> Optional[BeneficiaryOrganization]:
        candidates = self._eligible().order_by(
            BeneficiaryOrganization.total_received.asc()
        ).all()
        if not candidates:
            logger.warning("No verified organization available for balanced selection")
            return None
        
        lowest = Decimal(candidates[0].total_received)
        ties = [org for org in candidates if Decimal(org.total_received) == lowest]
        return self.rng.choice(ties)
