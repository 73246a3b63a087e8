"""Audit log and transparency log database models."""
from sqlalchemy import Column, String, TIMESTAMP, Integer, JSON
from sqlalchemy.sql import func
from charity_ledger.models.base import Base

class AuditLog(Base):
    """
    Immutable audit trail with blockchain-like integrity.
    """
    __tablename__ = 'audit_log'
    
    # Primary key
    id = Column(Integer, primary_key=True)
    timestamp = Column(TIMESTAMP, nullable=False, server_default=func.now(), index=True)
    
    # Event details
    event_type = Column(String(50), nullable=False)
    entity_type = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(64), nullable=False, index=True)
    severity = Column(String(10), nullable=False, default='info')
    
    # Actor and action
    actor = Column(String(64), nullable=False)
    action = Column(String(255), nullable=False)
    reason = Column(String(255))
    
    # State snapshot
    details = Column(JSON)
    
    # Cryptographic integrity
    event_hash = Column(String(64), nullable=False)
    previous_hash = Column(String(64))

class TransparencyEntry(Base):
    """
    Public, hash-chained record of a charity allocation.
    """
    __tablename__ = 'transparency_entries'
    
    id = Column(Integer, primary_key=True)
    timestamp = Column(TIMESTAMP, nullable=False, index=True)
    allocation_id = Column(String(36), nullable=False, index=True)
    
    payload = Column(JSON, nullable=False)
    
    event_hash = Column(String(64), nullable=False, unique=True)
    previous_hash = Column(String(64))
