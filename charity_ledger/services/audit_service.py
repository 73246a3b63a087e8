"""
Append-only audit sink for order executions and other compliance events.
"""
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from charity_ledger.models.audit_log import AuditLog
from charity_ledger.utils.hashing import create_event_hash, decimal_default, verify_hash_chain
from charity_ledger.utils.logging import get_logger
import json

logger = get_logger(__name__)

class AuditSink(ABC):
    
    @abstractmethod
    def log(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str = 'system',
        severity: str = 'info',
        details: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ):
        pass

class NullAuditSink(AuditSink):
    
    def log(self, action, entity_type, entity_id, actor='system', severity='info', details=None, reason=None):
        return None

class AuditService(AuditSink):
    """
    Writes hash-chained audit rows in their own session.
    
    Failures are logged and never raised: an audit outage must not undo a
    trade that already committed.
    """
    
    _chain_lock = threading.Lock()
    
    def __init__(self, session_factory, clock=datetime.utcnow):
        self.session_factory = session_factory
        self.clock = clock
    
    def log(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        actor: str = 'system',
        severity: str = 'info',
        details: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ):
        # Round-trip through JSON so Decimals and datetimes are stored as text
        details = json.loads(json.dumps(details or {}, default=decimal_default))
        timestamp = self.clock()
        
        with self._chain_lock:
            db: Session = self.session_factory()
            try:
                last = db.query(AuditLog).order_by(AuditLog.id.desc()).first()
                previous_hash = last.event_hash if last else None
                event_hash = create_event_hash(
                    timestamp=timestamp,
                    event_type=action,
                    entity_id=entity_id,
                    after_state=details,
                    previous_hash=previous_hash
                )
                entry = AuditLog(
                    timestamp=timestamp,
                    event_type=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    severity=severity,
                    actor=actor,
                    action=action,
                    reason=reason,
                    details=details,
                    event_hash=event_hash,
                    previous_hash=previous_hash
                )
                db.add(entry)
                db.commit()
                logger.info("Audit log entry created", action=action, entity_id=entity_id)
                return entry.id
            except SQLAlchemyError as e:
                db.rollback()
                logger.error("Failed to write audit log", action=action,
                             entity_id=entity_id, error=str(e))
                return None
            finally:
                db.close()
    
    def verify_chain(self) -> bool:
        db: Session = self.session_factory()
        try:
            entries = db.query(AuditLog).order_by(AuditLog.id.asc()).all()
            return verify_hash_chain(entries)
        finally:
            db.close()
