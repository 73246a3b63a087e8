"""
Ledger error taxonomy.

Validation and business-rule errors are recoverable and raised before any
mutation. AllocationInvariantViolation signals a defect in allocation math
and must abort the surrounding unit of work.
"""

class LedgerError(Exception):
    """Base class for all ledger errors."""
    code = 'LEDGER_ERROR'
    
    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        if code is not None:
            self.code = code

class ConfigurationError(LedgerError):
    code = 'CONFIGURATION_ERROR'

class LedgerValidationError(LedgerError):
    """Malformed quantity, price, percentage or direction."""
    code = 'VALIDATION_ERROR'

class BusinessRuleError(LedgerError):
    code = 'BUSINESS_RULE_VIOLATION'

class PositionNotFound(BusinessRuleError):
    code = 'POSITION_NOT_FOUND'

class InsufficientQuantity(BusinessRuleError):
    code = 'INSUFFICIENT_QUANTITY'

class OrderNotFound(BusinessRuleError):
    code = 'ORDER_NOT_FOUND'

class OrderNotCancellable(BusinessRuleError):
    code = 'ORDER_NOT_CANCELLABLE'

class OrderStateConflict(BusinessRuleError):
    """The order left 'pending' while it was being fired."""
    code = 'ORDER_STATE_CONFLICT'

class AllocationNotFound(BusinessRuleError):
    code = 'ALLOCATION_NOT_FOUND'

class InvalidStatusTransition(BusinessRuleError):
    code = 'INVALID_STATUS_TRANSITION'

class AllocationInvariantViolation(LedgerError):
    """
    Allocation math produced a result that breaks the floor or the
    amount identity. Never recoverable.
    """
    code = 'ALLOCATION_INVARIANT_VIOLATION'
