"""Prometheus metrics exporters."""
from decimal import Decimal
from prometheus_client import Counter, Histogram, CollectorRegistry

# Create registry
registry = CollectorRegistry()

# ========== TRADE METRICS ==========
trades_recorded = Counter(
    'ledger_trades_total',
    'Total number of buy/sell transactions committed',
    ['side'],
    registry=registry
)

# ========== CHARITY METRICS ==========
charity_allocations = Counter(
    'charity_allocations_total',
    'Total number of charity allocations committed',
    ['selection_method'],
    registry=registry
)

charity_allocated_amount = Counter(
    'charity_allocated_amount_total',
    'Sum of committed charity allocation amounts',
    registry=registry
)

floor_clamps = Counter(
    'charity_floor_clamps_total',
    'Requested percentages raised to the charity floor',
    registry=registry
)

invariant_violations = Counter(
    'allocation_invariant_violations_total',
    'Allocation post-condition failures',
    ['code'],
    registry=registry
)

# ========== ORDER METRICS ==========
orders_matched = Counter(
    'conditional_orders_total',
    'Conditional order outcomes per matcher pass',
    ['direction', 'outcome'],
    registry=registry
)

matcher_tick_time = Histogram(
    'order_matcher_tick_seconds',
    'Order matcher tick duration in seconds',
    registry=registry
)

# ========== HELPER FUNCTIONS ==========
def record_trade(side: str):
    """Record a committed buy or sell."""
    trades_recorded.labels(side=side).inc()

def record_allocation(selection_method: str, amount: Decimal):
    """Record a committed charity allocation."""
    charity_allocations.labels(selection_method=selection_method).inc()
    charity_allocated_amount.inc(float(amount))

def record_floor_clamp():
    floor_clamps.inc()

def record_invariant_violation(code: str):
    invariant_violations.labels(code=code).inc()

def record_order_outcome(direction: str, outcome: str):
    """Record what the matcher did with one order."""
    orders_matched.labels(direction=direction, outcome=outcome).inc()
