"""
Charity impact, organization and preference endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from charity_ledger.api.dependencies import (
    get_account_preferences, get_allocation_ledger, get_current_user,
    get_transparency_verifier
)
from charity_ledger.core.account_preferences import AccountPreferences
from charity_ledger.core.allocation_ledger import AllocationLedger
from charity_ledger.services.transparency import HashChainTransparencyLogger

router = APIRouter()

class AllocationRecordResponse(BaseModel):
    id: str
    transaction_id: str
    profit_amount: Decimal
    allocation_percentage: Decimal
    allocation_amount: Decimal
    organization_id: Optional[str]
    selection_method: str
    impact_category: Optional[str]
    status: str
    transparency_log_ref: Optional[str]
    allocated_at: datetime
    
    class Config:
        from_attributes = True

class OrganizationResponse(BaseModel):
    id: str
    name: str
    description: Optional[str]
    category: str
    is_verified: bool
    total_received: Decimal
    
    class Config:
        from_attributes = True

class PreferenceRequest(BaseModel):
    charity_percentage: Optional[Decimal] = None
    preferred_category: Optional[str] = None
    preferred_organization_id: Optional[str] = None

@router.get("/summary")
def user_impact(
    user_id: str = Depends(get_current_user),
    ledger: AllocationLedger = Depends(get_allocation_ledger)
):
    """
    Charity impact of the calling user.
    """
    impact = ledger.get_user_impact(user_id)
    return {
        "total_donated": impact.total_donated,
        "donations_count": impact.donations_count,
        "average_percentage": impact.average_percentage,
        "beneficiaries_helped": impact.beneficiaries_helped,
        "top_categories": impact.top_categories,
        "monthly_trend": impact.monthly_trend,
        "recent_donations": [
            AllocationRecordResponse.model_validate(record) for record in impact.recent_donations
        ],
    }

@router.get("/platform-metrics")
def platform_metrics(ledger: AllocationLedger = Depends(get_allocation_ledger)):
    """
    Platform-wide charity totals.
    """
    metrics = ledger.get_platform_metrics()
    return metrics.__dict__

@router.get("/organizations", response_model=List[OrganizationResponse])
def list_organizations(
    category: Optional[str] = Query(None, description="Filter by category"),
    ledger: AllocationLedger = Depends(get_allocation_ledger)
):
    """
    Active beneficiary organizations.
    """
    return ledger.list_organizations(category)

@router.post("/preference")
def update_preference(
    request: PreferenceRequest,
    user_id: str = Depends(get_current_user),
    preferences: AccountPreferences = Depends(get_account_preferences)
):
    """
    Update the caller's charity preference. Percentages below the floor
    are raised to the floor.
    """
    preference = preferences.update(
        user_id,
        charity_percentage=request.charity_percentage,
        preferred_category=request.preferred_category,
        preferred_organization_id=request.preferred_organization_id
    )
    return {
        "charity_percentage": preference.charity_percentage,
        "preferred_category": preference.preferred_category,
        "preferred_organization_id": preference.preferred_organization_id,
    }

@router.get("/verify/{receipt}")
def verify_receipt(
    receipt: str,
    verifier: HashChainTransparencyLogger = Depends(get_transparency_verifier)
):
    """
    Check a transparency log receipt.
    """
    result = verifier.verify(receipt)
    if result is None:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return result
