"""
Cache package for Entitlements Service.

Provides a Redis client wrapper and a cache-aside store that fronts the
system of record, invalidating affected keys after every committed write
and falling back to the store whenever Redis is unavailable.
"""

from .cached_store import CachedEntitlementStore
from .redis_cache import RedisCache

__all__ = ["CachedEntitlementStore", "RedisCache"]
