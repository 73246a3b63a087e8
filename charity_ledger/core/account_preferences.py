"""
Per-user charity preferences.
"""
from typing import Optional
from sqlalchemy.orm import Session
from charity_ledger.core.allocation_rules import AllocationRuleEngine
from charity_ledger.core.exceptions import LedgerValidationError
from charity_ledger.models.accounts import AccountPreference
from charity_ledger.models.organizations import BeneficiaryOrganization
from charity_ledger.utils.logging import get_logger

logger = get_logger(__name__)

class AccountPreferences:
    """
    Reads and updates the charity preference used on profitable sells.
    
    The stored percentage is clamped to [floor, 100] here and clamped
    again by the rule engine at allocation time.
    """
    
    def __init__(self, db: Session, rules: AllocationRuleEngine):
        self.db = db
        self.rules = rules
    
    def get(self, user_id: str) -> Optional[AccountPreference]:
        return self.db.query(AccountPreference).filter(
            AccountPreference.user_id == user_id
        ).first()
    
    def update(
        self,
        user_id: str,
        charity_percentage=None,
        preferred_category: Optional[str] = None,
        preferred_organization_id: Optional[str] = None
    ) -> AccountPreference:
        """
        Create or update a user's preference. Commits.
        """
        percentage = self.rules.enforce_floor(charity_percentage)
        
        if preferred_organization_id:
            exists = self.db.query(BeneficiaryOrganization.id).filter(
                BeneficiaryOrganization.id == preferred_organization_id,
                BeneficiaryOrganization.is_active.is_(True)
            ).first()
            if exists is None:
                raise LedgerValidationError(
                    f"Organization {preferred_organization_id} is not an active beneficiary"
                )
        
        try:
            preference = self.get(user_id)
            if preference is None:
                preference = AccountPreference(user_id=user_id, charity_percentage=percentage)
                self.db.add(preference)
            preference.charity_percentage = percentage
            preference.preferred_category = preferred_category
            preference.preferred_organization_id = preferred_organization_id
            self.db.commit()
            self.db.refresh(preference)
        except Exception:
            self.db.rollback()
            raise
        
        logger.info(
            "Charity preference updated",
            user_id=user_id,
            percentage=str(percentage),
            category=preferred_category,
            organization_id=preferred_organization_id
        )
        return preference
