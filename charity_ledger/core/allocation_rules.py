"""
Charity allocation rule engine.

Pure computation, no I/O. Given a realized profit and a requested
percentage it enforces the floor, computes the allocation amount and
validates the result.

Rounding contract: amounts are quantized to `amount_places` decimal
places with ROUND_HALF_UP (half away from zero). Reconciliation must use
the same rule.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import decimal
from typing import Any, Optional
from charity_ledger.core.exceptions import (
    AllocationInvariantViolation, ConfigurationError, LedgerValidationError
)
from charity_ledger.utils.constants import HUNDRED, QUANTITY_SCALE, ZERO
from charity_ledger.utils.logging import get_logger
from charity_ledger.utils.metrics import record_floor_clamp, record_invariant_violation
from config.settings import get_charity_policy

logger = get_logger(__name__)

@dataclass(frozen=True)
class AllocationResult:
    """Output of the rule engine."""
    percentage: Decimal
    amount: Decimal
    clamped: bool = False

def to_decimal(value: Any, field: str) -> Decimal:
    """Convert user or storage input to Decimal, rejecting garbage."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise LedgerValidationError(f"{field} must be numeric, got bool")
    if isinstance(value, float):
        # Go through repr so 9.99 stays 9.99 instead of its binary expansion
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise LedgerValidationError(f"{field} must be numeric, got {value!r}")

def to_positive_amount(value: Any, field: str, places: int = QUANTITY_SCALE) -> Decimal:
    """
    Convert a quantity or price to a positive Decimal that storage can
    hold exactly.

    Raises:
        LedgerValidationError: non-finite, not positive, or more than
            `places` fractional digits
    """
    amount = to_decimal(value, field)
    if not amount.is_finite() or amount <= ZERO:
        raise LedgerValidationError(f"{field} must be a positive number, got {value!r}")
    try:
        exact = amount == amount.quantize(Decimal(1).scaleb(-places))
    except InvalidOperation:
        exact = False
    if not exact:
        raise LedgerValidationError(
            f"{field} supports at most {places} decimal places, got {value!r}"
        )
    return amount

class AllocationRuleEngine:
    """
    Enforces the minimum charity percentage on realized profits.
    
    No code path, configuration value or user input may produce a
    percentage below the floor for a positive profit.
    """
    
    def __init__(
        self,
        floor_percentage,
        amount_places: int = 4,
        tolerance=Decimal('0.0001'),
        floor_slack=Decimal('0.01'),
        rounding: str = ROUND_HALF_UP
    ):
        floor = to_decimal(floor_percentage, 'floor_percentage')
        if not floor.is_finite() or floor <= ZERO or floor > HUNDRED:
            raise ConfigurationError(
                f"Charity floor must be in (0, 100], got {floor_percentage!r}"
            )
        if rounding not in (decimal.ROUND_HALF_UP, decimal.ROUND_HALF_EVEN):
            raise ConfigurationError(f"Unsupported rounding mode {rounding!r}")
        
        self.floor_percentage = floor
        self.quantum = Decimal(1).scaleb(-int(amount_places))
        # Never tighter than half a quantum, which rounding alone can produce
        self.tolerance = max(to_decimal(tolerance, 'tolerance'), self.quantum / 2)
        self.floor_slack = to_decimal(floor_slack, 'floor_slack')
        self.rounding = rounding
    
    def enforce_floor(self, requested: Optional[Any]) -> Decimal:
        """
        Clamp a requested percentage into [floor, 100].
        
        Absent, zero, negative, NaN and below-floor requests all become
        the floor. Anything above 100 becomes 100.
        """
        if requested is None:
            logger.debug("No charity percentage requested, applying floor",
                         floor=str(self.floor_percentage))
            return self.floor_percentage
        
        percentage = to_decimal(requested, 'percentage')
        
        if percentage.is_nan() or percentage < self.floor_percentage:
            logger.warning(
                "Charity percentage below floor requested, enforcing floor",
                requested=str(requested),
                floor=str(self.floor_percentage)
            )
            record_floor_clamp()
            return self.floor_percentage
        
        if percentage > HUNDRED:
            return HUNDRED
        
        return percentage
    
    def allocate(self, profit_amount: Any, requested_percentage: Optional[Any] = None) -> AllocationResult:
        """
        Compute the charity allocation for a realized profit.
        
        Args:
            profit_amount: Realized profit (may be zero or negative)
            requested_percentage: User preference, may be None
        
        Returns:
            AllocationResult with clamped percentage and rounded amount
        
        Raises:
            AllocationInvariantViolation: if the post-condition check fails
        """
        profit = to_decimal(profit_amount, 'profit_amount')
        if not profit.is_finite():
            raise LedgerValidationError(f"profit_amount must be finite, got {profit_amount!r}")
        
        percentage = self.enforce_floor(requested_percentage)
        clamped = requested_percentage is None or percentage != to_decimal(
            requested_percentage, 'percentage'
        )
        
        amount = self._compute_amount(profit, percentage)
        try:
            self.validate(profit, percentage, amount)
        except AllocationInvariantViolation as e:
            record_invariant_violation(e.code)
            raise
        
        return AllocationResult(percentage=percentage, amount=amount, clamped=clamped)
    
    def _compute_amount(self, profit: Decimal, percentage: Decimal) -> Decimal:
        if profit <= ZERO:
            return ZERO
        
        raw = profit * percentage / HUNDRED
        return raw.quantize(self.quantum, rounding=self.rounding)
    
    def validate(self, profit: Decimal, percentage: Decimal, amount: Decimal):
        """
        Post-condition self-check. Raises on any mismatch.
        """
        if percentage < self.floor_percentage or percentage > HUNDRED:
            raise AllocationInvariantViolation(
                f"Percentage {percentage} outside [{self.floor_percentage}, 100]",
                code='MINIMUM_PERCENTAGE_VIOLATION'
            )
        
        if profit <= ZERO:
            if amount != ZERO:
                raise AllocationInvariantViolation(
                    f"Non-positive profit {profit} produced allocation {amount}",
                    code='CHARITY_CALCULATION_ERROR'
                )
            return
        
        expected = profit * percentage / HUNDRED
        if abs(amount - expected) > self.tolerance:
            raise AllocationInvariantViolation(
                f"Charity calculation mismatch. Expected {expected}, got {amount}",
                code='CHARITY_CALCULATION_ERROR'
            )
        
        actual_percentage = amount / profit * HUNDRED
        # Sub-quantum profits round to 0; only rounding residue may dip below the floor
        rounding_residue = abs(expected - amount) <= self.quantum / 2
        if actual_percentage < self.floor_percentage - self.floor_slack and not rounding_residue:
            raise AllocationInvariantViolation(
                f"Charity percentage {actual_percentage}% is below minimum "
                f"{self.floor_percentage}%",
                code='MINIMUM_PERCENTAGE_VIOLATION'
            )

def build_allocation_rule_engine(policy: dict = None) -> AllocationRuleEngine:
    """Build the engine from the charity policy, read once at startup."""
    policy = policy or get_charity_policy()
    rules = policy['allocation']
    rounding = getattr(decimal, rules.get('rounding', 'ROUND_HALF_UP'))
    return AllocationRuleEngine(
        floor_percentage=rules['floor_percentage'],
        amount_places=rules.get('amount_places', 4),
        tolerance=Decimal(str(rules.get('tolerance', '0.0001'))),
        floor_slack=Decimal(str(rules.get('floor_slack', '0.01'))),
        rounding=rounding
    )
