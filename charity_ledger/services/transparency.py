"""
Transparency log for charity allocations.

The log is an optional, best-effort side channel. The null logger is a
complete, valid configuration.
"""
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Any, Optional
from sqlalchemy.orm import Session
from charity_ledger.models.audit_log import TransparencyEntry
from charity_ledger.utils.hashing import create_event_hash, verify_hash_chain
from charity_ledger.utils.logging import get_logger

logger = get_logger(__name__)

class TransparencyLogger(ABC):
    """Capability interface for publishing allocations."""
    
    @abstractmethod
    def record(self, allocation_id: str, amounts: Dict[str, Any], timestamp: datetime) -> Optional[str]:
        """Publish an allocation and return a receipt id."""
        pass
    
    @property
    def enabled(self) -> bool:
        return True

class NullTransparencyLogger(TransparencyLogger):
    """Transparency logging switched off."""
    
    def record(self, allocation_id: str, amounts: Dict[str, Any], timestamp: datetime) -> Optional[str]:
        return None
    
    @property
    def enabled(self) -> bool:
        return False

class HashChainTransparencyLogger(TransparencyLogger):
    """
    Local append-only log where each entry hashes its predecessor.
    The receipt is the entry's SHA-256 hash.
    """
    
    _chain_lock = threading.Lock()
    
    def __init__(self, session_factory):
        self.session_factory = session_factory
    
    def record(self, allocation_id: str, amounts: Dict[str, Any], timestamp: datetime) -> Optional[str]:
        with self._chain_lock:
            db: Session = self.session_factory()
            try:
                last = db.query(TransparencyEntry).order_by(TransparencyEntry.id.desc()).first()
                previous_hash = last.event_hash if last else None
                
                payload = {key: str(value) if value is not None else None for key, value in amounts.items()}
                event_hash = create_event_hash(
                    timestamp=timestamp,
                    event_type='charity_allocation',
                    entity_id=allocation_id,
                    after_state=payload,
                    previous_hash=previous_hash
                )
                
                db.add(TransparencyEntry(
                    timestamp=timestamp,
                    allocation_id=allocation_id,
                    payload=payload,
                    event_hash=event_hash,
                    previous_hash=previous_hash
                ))
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        
        logger.info("Allocation published to transparency log",
                    allocation_id=allocation_id, receipt=event_hash)
        return event_hash
    
    def verify(self, receipt: str) -> Optional[Dict[str, Any]]:
        """
        Look up a receipt and recompute its hash.
        
        Returns:
            Entry details with a `valid` flag, or None for unknown receipts
        """
        db: Session = self.session_factory()
        try:
            entry = db.query(TransparencyEntry).filter(
                TransparencyEntry.event_hash == receipt
            ).first()
            if entry is None:
                return None
            
            recomputed = create_event_hash(
                timestamp=entry.timestamp,
                event_type='charity_allocation',
                entity_id=entry.allocation_id,
                after_state=entry.payload,
                previous_hash=entry.previous_hash
            )
            return {
                'receipt': entry.event_hash,
                'allocation_id': entry.allocation_id,
                'timestamp': entry.timestamp,
                'payload': entry.payload,
                'previous_hash': entry.previous_hash,
                'valid': recomputed == entry.event_hash
            }
        finally:
            db.close()
    
    def verify_chain(self) -> bool:
        db: Session = self.session_factory()
        try:
            entries = db.query(TransparencyEntry).order_by(TransparencyEntry.id.asc()).all()
            return verify_hash_chain(entries)
        finally:
            db.close()
