"""
FastAPI application entry point.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from charity_ledger.api.routes import charity, health, orders, portfolio
from charity_ledger.core.exceptions import (
    AllocationInvariantViolation, AllocationNotFound, BusinessRuleError,
    LedgerValidationError, OrderNotFound, PositionNotFound
)
from charity_ledger.utils.logging import get_logger

logger = get_logger(__name__)

app = FastAPI(
    title="Charity Ledger API",
    description="Investment tracking with mandatory charity allocation on realized profit",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(portfolio.router, prefix="/portfolio", tags=["Portfolio"])
app.include_router(orders.router, prefix="/orders", tags=["Orders"])
app.include_router(charity.router, prefix="/charity", tags=["Charity"])

def _error(status_code: int, exc) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": exc.code, "detail": str(exc)})

@app.exception_handler(LedgerValidationError)
async def validation_error_handler(request: Request, exc: LedgerValidationError):
    return _error(422, exc)

@app.exception_handler(BusinessRuleError)
async def business_rule_handler(request: Request, exc: BusinessRuleError):
    if isinstance(exc, (PositionNotFound, OrderNotFound, AllocationNotFound)):
        return _error(404, exc)
    return _error(409, exc)

@app.exception_handler(AllocationInvariantViolation)
async def invariant_violation_handler(request: Request, exc: AllocationInvariantViolation):
    logger.critical("Allocation invariant violated", path=request.url.path, error=str(exc))
    return _error(500, exc)

@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "Charity Ledger API",
        "version": "1.0.0",
        "docs": "/docs"
    }
