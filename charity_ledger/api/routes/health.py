"""
Health check and metrics endpoints.
"""
from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session
from sqlalchemy import text
from charity_ledger.models.base import get_db
from charity_ledger.utils.metrics import registry
from datetime import datetime

router = APIRouter()

@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """
    Health check endpoint.
    Verifies database connectivity.
    """
    try:
        db.execute(text("SELECT 1"))
        
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat(),
            "database": "connected"
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "timestamp": datetime.utcnow().isoformat(),
            "database": "disconnected",
            "error": str(e)
        }

@router.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
