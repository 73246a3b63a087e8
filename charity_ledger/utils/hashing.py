"""Cryptographic hashing for audit trail and transparency log integrity."""
import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, Optional

def decimal_default(obj):
    """Convert Decimal to string for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

def create_event_hash(
    timestamp: datetime,
    event_type: str,
    entity_id: str,
    after_state: Dict[str, Any],
    previous_hash: Optional[str] = None
) -> str:
    """
    Create SHA-256 hash of event, chained to the previous entry.
    """
    event_data = {
        'timestamp': timestamp.isoformat(),
        'event_type': event_type,
        'entity_id': entity_id,
        'after_state': after_state,
        'previous_hash': previous_hash
    }
    
    # Create canonical JSON with Decimal handling
    canonical_json = json.dumps(event_data, sort_keys=True, default=decimal_default)
    
    # Hash
    hash_obj = hashlib.sha256(canonical_json.encode('utf-8'))
    return hash_obj.hexdigest()

def verify_hash_chain(entries: list) -> bool:
    """Verify that every entry points at the hash of the one before it."""
    if len(entries) < 2:
        return True
    
    for i in range(1, len(entries)):
        current = entries[i]
        previous = entries[i - 1]
        
        if current.previous_hash != previous.event_hash:
            return False
    
    return True
