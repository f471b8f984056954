"""
Redis session decision store for Entitlements Service.
"""

from datetime import datetime
from typing import List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.errors import EntitlementsException
from shared.logging import get_logger
from ..resolver.models import EntitlementDecision, EntitlementDecisionResponse


class RedisDecisionCache:
    """Caches facade decisions per session and account."""

    def __init__(self, redis_url: str, session_ttl: int = 300):
        self.redis_url = redis_url
        self.logger = get_logger("entitlements.cache.redis")
        self.redis: Optional[redis.Redis] = None

        self.max_ttl = session_ttl
        self.min_ttl = 1

        self.DECISION_PREFIX = "entitlement:session:"

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            await self.redis.ping()

            self.logger.info("Redis cache started")

        except (RedisError, OSError) as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise EntitlementsException("REDIS_START_FAILED", str(e)) from e

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis cache stopped")

    async def get_decision(self, session_id: str, account_id: str) -> Optional[EntitlementDecision]:
        """Get the cached decision for a session, if still valid."""
        cache_key = self._get_decision_key(session_id, account_id)
        try:
            cached_data = await self.redis.get(cache_key)
            if not cached_data:
                return None

            decision = EntitlementDecisionResponse.model_validate_json(cached_data).to_decision()
            self.logger.debug("Cache hit for decision", cache_key=cache_key)
            return decision

        except (RedisError, OSError, ValueError) as e:
            self.logger.error("Error getting cached decision", cache_key=cache_key, error=str(e))
            return None

    async def set_decision(self,
                           session_id: str,
                           account_id: str,
                           decision: EntitlementDecision,
                           now: datetime) -> bool:
        """Cache a decision until the earlier of the session TTL and its next boundary."""
        cache_key = self._get_decision_key(session_id, account_id)
        ttl_seconds = self._calculate_adaptive_ttl(decision, now)
        if ttl_seconds < self.min_ttl:
            return False

        try:
            payload = EntitlementDecisionResponse.from_decision(decision).model_dump_json(by_alias=True)
            await self.redis.setex(cache_key, ttl_seconds, payload)
            self.logger.debug("Cached decision", cache_key=cache_key, ttl=ttl_seconds)
            return True

        except (RedisError, OSError) as e:
            self.logger.error("Error caching decision", cache_key=cache_key, error=str(e))
            return False

    async def invalidate_session(self, session_id: str) -> int:
        """Drop every decision cached for a session."""
        return await self._delete_matching(f"{self.DECISION_PREFIX}{session_id}:account:*")

    async def invalidate_account(self, account_id: str) -> int:
        """Drop the account's decisions across all sessions."""
        return await self._delete_matching(f"{self.DECISION_PREFIX}*:account:{account_id}")

    async def _delete_matching(self, pattern: str) -> int:
        try:
            keys: List[str] = [key async for key in self.redis.scan_iter(match=pattern)]
            if keys:
                await self.redis.delete(*keys)
                self.logger.info("Invalidated cached decisions", pattern=pattern, count=len(keys))
            return len(keys)

        except (RedisError, OSError) as e:
            self.logger.error("Error invalidating decisions", pattern=pattern, error=str(e))
            return 0

    def _get_decision_key(self, session_id: str, account_id: str) -> str:
        """Generate cache key for a session decision."""
        return f"{self.DECISION_PREFIX}{session_id}:account:{account_id}"

    def _calculate_adaptive_ttl(self, decision: EntitlementDecision, now: datetime) -> int:
        """TTL bounded by the nearest trial end, period end or scheduled cancellation."""
        boundaries = [decision.trial_end_date, decision.current_period_end]
        if decision.subscription is not None:
            boundaries.append(decision.subscription.cancel_at)

        ttl = self.max_ttl
        for boundary in boundaries:
            if boundary is not None and boundary > now:
                ttl = min(ttl, int((boundary - now).total_seconds()))
            elif boundary is not None and decision.has_access:
                # A granting decision past one of its own boundaries is stale
                return 0

        return ttl

    async def health_check(self) -> bool:
        """Check Redis health."""
        if not self.redis:
            return False
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError):
            return False
