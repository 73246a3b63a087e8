"""
User notifications over Redis pub/sub.
"""
import json
from abc import ABC, abstractmethod
from typing import Dict, Any
import redis
from charity_ledger.utils.constants import NOTIFICATION_CHANNEL_PREFIX
from charity_ledger.utils.hashing import decimal_default
from charity_ledger.utils.logging import get_logger
from config.settings import get_settings

logger = get_logger(__name__)

class Notifier(ABC):
    
    @abstractmethod
    def notify(self, user_id: str, event: str, payload: Dict[str, Any]):
        """Push a message to one user. Must not raise."""
        pass

class NullNotifier(Notifier):
    
    def notify(self, user_id: str, event: str, payload: Dict[str, Any]):
        return None

class RedisNotifier(Notifier):
    """Publishes JSON messages on `notifications:<user_id>`."""
    
    def __init__(self, client: redis.Redis = None):
        if client is None:
            settings = get_settings()
            client = redis.Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                decode_responses=True
            )
        self.client = client
    
    def notify(self, user_id: str, event: str, payload: Dict[str, Any]):
        channel = f"{NOTIFICATION_CHANNEL_PREFIX}:{user_id}"
        message = json.dumps({'event': event, 'data': payload}, default=decimal_default)
        try:
            self.client.publish(channel, message)
        except redis.RedisError as e:
            logger.warning("Notification delivery failed", user_id=user_id, event=event, error=str(e))

def build_notifier() -> Notifier:
    settings = get_settings()
    if not settings.NOTIFICATIONS_ENABLED:
        return NullNotifier()
    return RedisNotifier()
