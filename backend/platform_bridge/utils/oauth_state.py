"""
OAuth CSRF state — single-use tokens held in Redis.

issue() writes the token with SET NX EX so it expires on its own;
consume() reads and deletes it in one GETDEL so a state can only be
redeemed once. The stored value carries the platform and whatever the
callback needs that the platform does not echo back (shop domain, store
URL).
Version: 1.0.0
"""
import json
import logging
import secrets
from typing import Any, Dict, Optional

import redis

from platform_bridge.core.config import settings
from platform_bridge.core.exceptions import OAuthStateError

logger = logging.getLogger("oauth_state")

_KEY_PREFIX = "oauth_state"


def _get_redis() -> redis.Redis:
    """Create a Redis client from the configured URL."""
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


class OAuthStateStore:
    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl: Optional[int] = None):
        self._redis = redis_client
        self._ttl = ttl or settings.oauth_state_ttl_seconds

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = _get_redis()
        return self._redis

    def issue(self, platform: str, context: Optional[Dict[str, Any]] = None) -> str:
        value = json.dumps({"platform": platform, **(context or {})})
        for _ in range(3):
            state = secrets.token_urlsafe(24)
            if self.redis.set(f"{_KEY_PREFIX}:{state}", value, nx=True, ex=self._ttl):
                logger.info("oauth state issued platform=%s ttl=%s", platform, self._ttl)
                return state
        raise OAuthStateError("could not allocate an OAuth state token", platform=platform)

    def consume(self, platform: str, state: Optional[str]) -> Dict[str, Any]:
        """Redeem a state exactly once; raises OAuthStateError when unknown, expired or reused."""
        if not state:
            raise OAuthStateError("missing OAuth state", platform=platform)
        raw = self.redis.getdel(f"{_KEY_PREFIX}:{state}")
        if raw is None:
            logger.info("oauth state rejected platform=%s reason=unknown_or_expired", platform)
            raise OAuthStateError("unknown or expired OAuth state", platform=platform)
        context = json.loads(raw)
        if context.get("platform") != platform:
            logger.info("oauth state rejected platform=%s issued_for=%s", platform, context.get("platform"))
            raise OAuthStateError("OAuth state was issued for another platform", platform=platform)
        return context
