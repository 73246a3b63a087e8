"""
Application constants to replace magic numbers throughout the codebase.
"""
from decimal import Decimal

# Numeric storage
QUANTITY_PRECISION = 20
QUANTITY_SCALE = 8
ZERO = Decimal('0')
HUNDRED = Decimal('100')

# Asset types accepted for positions
ASSET_TYPES = ('stock', 'etf', 'crypto', 'bond', 'fund', 'other')
DEFAULT_ASSET_TYPE = 'other'

# Ledger transaction types
TRANSACTION_BUY = 'buy'
TRANSACTION_SELL = 'sell'

# Conditional order statuses
ORDER_PENDING = 'pending'
ORDER_EXECUTED = 'executed'
ORDER_CANCELLED = 'cancelled'
ORDER_FAILED = 'failed'
ORDER_EXPIRED = 'expired'

# Allocation statuses
ALLOCATION_ALLOCATED = 'allocated'
ALLOCATION_TRANSFERRED = 'transferred'
ALLOCATION_CONFIRMED = 'confirmed'
ALLOCATION_FAILED = 'failed'

# Beneficiary selection methods
SELECTION_EXPLICIT = 'explicit'
SELECTION_CATEGORY = 'category'
SELECTION_BALANCED = 'balanced'

# Scheduler
DEFAULT_MATCH_INTERVAL_SECONDS = 60
MATCHER_LOCK_NAME = 'charity-ledger:order-matcher'

# API timeouts
API_TIMEOUT_SHORT = 5
API_TIMEOUT_MEDIUM = 10

# Database query limits
DEFAULT_QUERY_LIMIT = 50
MAX_QUERY_LIMIT = 100

# Notification channel prefix
NOTIFICATION_CHANNEL_PREFIX = 'notifications'
