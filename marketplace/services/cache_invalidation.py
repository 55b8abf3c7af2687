"""
Cache invalidation for read-through projections of ledger and request state.

The core calls into this after every persisted mutation. It is not a cache itself:
if Redis is unreachable the failure is logged and the mutation still stands.
"""
import logging
from typing import Iterable, List, Optional

import redis

from marketplace.core import config

logger = logging.getLogger(__name__)


class CacheKeys:
    """Key layout shared with the read side."""

    @staticmethod
    def subscription(user_id) -> str:
        return f"subscription:{user_id}"

    @staticmethod
    def user_credits(user_id) -> str:
        return f"user:credits:{user_id}"

    @staticmethod
    def request(request_id) -> str:
        return f"request:{request_id}"

    @staticmethod
    def request_list(user_id, side: str) -> str:
        return f"request:list:{user_id}:{side}"

    @staticmethod
    def notifications(user_id) -> str:
        return f"notifications:{user_id}"

    @staticmethod
    def unread_count(user_id) -> str:
        return f"unread:count:{user_id}"


# Primary key builder per entity kind; unknown kinds fall back to "<kind>:<id>"
ENTITY_KEYS = {
    "subscription": CacheKeys.subscription,
    "request": CacheKeys.request,
    "notifications": CacheKeys.notifications,
}


class CacheInvalidator:
    """
    Deletes cache entries for an entity and its related projections.

    ``client`` is any redis-py compatible client; ``None`` disables invalidation
    (no cache configured).
    """

    def __init__(self, client: Optional["redis.Redis"] = None):
        self.client = client

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "CacheInvalidator":
        url = url or config.REDIS_URL
        if not url:
            logger.info("REDIS_URL not configured, cache invalidation disabled")
            return cls(None)
        return cls(redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2))

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def invalidate(self, entity_kind: str, entity_id, related_keys: Iterable[str] = ()) -> bool:
        """
        Drop ``<entity_kind>:<entity_id>`` plus ``related_keys``.

        Returns True when the delete reached the cache, False when it was skipped or failed.
        """
        key_for = ENTITY_KEYS.get(entity_kind)
        primary = key_for(entity_id) if key_for else f"{entity_kind}:{entity_id}"
        keys: List[str] = [primary, *related_keys]
        if self.client is None:
            return False

        try:
            self.client.delete(*keys)
            logger.debug(f"Cache invalidated: {keys}")
            return True
        except redis.RedisError as e:
            logger.warning(f"Cache invalidation failed for {entity_kind}:{entity_id}: {e}")
            return False

    def invalidate_subscription(self, user_id) -> bool:
        return self.invalidate(
            "subscription",
            user_id,
            [CacheKeys.user_credits(user_id)],
        )

    def invalidate_request(self, request_id, client_id=None, provider_id=None) -> bool:
        related = []
        if client_id is not None:
            related.append(CacheKeys.request_list(client_id, "client"))
        if provider_id is not None:
            related.append(CacheKeys.request_list(provider_id, "provider"))
        return self.invalidate("request", request_id, related)

    def invalidate_notifications(self, user_id) -> bool:
        return self.invalidate(
            "notifications",
            user_id,
            [CacheKeys.unread_count(user_id)],
        )
