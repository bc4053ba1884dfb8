"""Per-tick cache of session dashboards.

Every client polls the same derived view, so one computation per session
per poll interval is enough. Cached copies are keyed by a per-session
generation that every write bumps: a dashboard computed before a write is
stored under the old generation and never served afterwards. Redis being
down only costs a recomputation.
"""
from typing import Optional

from redis.exceptions import RedisError

from boardbank.config import config
from boardbank.state.redis_client import RedisClient, redis_client
from boardbank.utils.logger import get_logger

logger = get_logger(__name__)

# Generation counters outlive any dashboard; expire them with idle sessions
GENERATION_TTL_SECONDS = 24 * 60 * 60


class AnalyticsCache:
    """Caches dashboard payloads in Redis."""
    
    def __init__(self, client: Optional[RedisClient] = None, ttl_seconds: Optional[int] = None):
        self._client = client or redis_client
        self._ttl = ttl_seconds or config.poll_interval_seconds
    
    def _generation_key(self, session_id: str) -> str:
        """Get Redis key for a session's write generation."""
        return f"session:{session_id}:dashboard:generation"
    
    def _dashboard_key(self, session_id: str, generation: int) -> str:
        """Get Redis key for a session's dashboard at one generation."""
        return f"session:{session_id}:dashboard:{generation}"
    
    async def generation(self, session_id: str) -> Optional[int]:
        """Current write generation of a session.
        
        Args:
            session_id: Session identifier.
            
        Returns:
            Generation number, or None if Redis is unavailable.
        """
        try:
            value = await self._client.get(self._generation_key(session_id))
        except RedisError as e:
            logger.error(f"Failed to read dashboard generation for {session_id}: {e}")
            return None
        return int(value or 0)
    
    async def get_dashboard(self, session_id: str) -> Optional[dict]:
        """Get the cached dashboard for the current generation.
        
        Args:
            session_id: Session identifier.
            
        Returns:
            Cached dashboard, or None on a miss.
        """
        generation = await self.generation(session_id)
        if generation is None:
            return None
        try:
            return await self._client.get_json(self._dashboard_key(session_id, generation))
        except RedisError as e:
            logger.error(f"Failed to read cached dashboard for {session_id}: {e}")
            return None
    
    async def set_dashboard(self, session_id: str, dashboard: dict, generation: int) -> None:
        """Cache a dashboard until the next poll tick.
        
        Args:
            session_id: Session identifier.
            dashboard: Serialized dashboard.
            generation: Generation read before the dashboard was computed.
        """
        try:
            await self._client.set_json(
                self._dashboard_key(session_id, generation), dashboard, ex=self._ttl
            )
            logger.debug(f"Cached dashboard for session {session_id} (generation {generation})")
        except RedisError as e:
            logger.error(f"Failed to cache dashboard for {session_id}: {e}")
    
    async def invalidate(self, session_id: str) -> None:
        """Bump a session's generation so older dashboards are no longer served.
        
        Args:
            session_id: Session identifier.
        """
        key = self._generation_key(session_id)
        try:
            await self._client.incr(key)
            await self._client.expire(key, GENERATION_TTL_SECONDS)
        except RedisError as e:
            logger.error(f"Failed to invalidate dashboard for {session_id}: {e}")


analytics_cache = AnalyticsCache()
