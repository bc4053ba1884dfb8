"""Cached state module."""
from .redis_client import RedisClient, redis_client
from .analytics_cache import AnalyticsCache, analytics_cache

__all__ = ["RedisClient", "redis_client", "AnalyticsCache", "analytics_cache"]
