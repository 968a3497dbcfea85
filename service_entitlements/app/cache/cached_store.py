"""
Cache-aside wrapper around an entitlement store.

Reads check Redis first and fall back to the store on a miss, then populate
the cache with a TTL. Writes go to the store first and, once committed,
delete every key that could answer for the written pair. The cache is never
authoritative: any Redis failure (or an open circuit) turns into a plain
store call, and an invalidation that does not land is healed by the TTL.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import quote

from pydantic import TypeAdapter

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import UnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.decision import decide
from ..domain.models import AuditRecord, Entitlement, EntitlementSnapshot, ModuleKey, utcnow
from ..persistence.base import EntitlementBackend
from .redis_cache import RedisCache


_ENTITLEMENT_LIST = TypeAdapter(List[Entitlement])
_NULL = "null"


def _encode_access(value: Optional[Entitlement]) -> str:
    return _NULL if value is None else value.snapshot().model_dump_json()


def _decode_access(raw: str) -> Optional[EntitlementSnapshot]:
    return None if raw == _NULL else EntitlementSnapshot.model_validate_json(raw)


def _encode_entitlement(value: Optional[Entitlement]) -> str:
    return _NULL if value is None else value.model_dump_json()


def _decode_entitlement(raw: str) -> Optional[Entitlement]:
    return None if raw == _NULL else Entitlement.model_validate_json(raw)


def _encode_list(value: List[Entitlement]) -> str:
    return _ENTITLEMENT_LIST.dump_json(value).decode("utf-8")


def _decode_list(raw: str) -> List[Entitlement]:
    return _ENTITLEMENT_LIST.validate_json(raw)


class CachedEntitlementStore:
    """Entitlement backend that serves hot reads from Redis."""

    GLOBAL_KEY = "all:entitlements"

    def __init__(
        self,
        store: EntitlementBackend,
        cache: RedisCache,
        *,
        ttl_seconds: int = 300,
        breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        # The global list changes whenever any tenant changes.
        self.global_ttl_seconds = max(1, ttl_seconds // 2)
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=UnavailableError,
            name="entitlements_cache"
        )
        self.metrics = metrics
        self._clock = clock or utcnow
        self.logger = get_logger("entitlements.cache.cached_store")
        self.stats: Dict[str, int] = {"hits": 0, "misses": 0, "errors": 0}

    # Keys
    #
    # Organization ids are percent-encoded so they never contain ":", which
    # keeps every key type in its own shape ("single:" keys have three parts,
    # the others two, and no module is called "all" or "entitlements").

    @staticmethod
    def _org(organization_id: str) -> str:
        return quote(organization_id, safe="")

    @classmethod
    def access_key(cls, organization_id: str, module_key: ModuleKey) -> str:
        return f"{cls._org(organization_id)}:{module_key.value}"

    @classmethod
    def organization_key(cls, organization_id: str) -> str:
        return f"{cls._org(organization_id)}:all"

    @classmethod
    def single_key(cls, organization_id: str, module_key: ModuleKey) -> str:
        return f"single:{cls._org(organization_id)}:{module_key.value}"

    def keys_for(self, organization_id: str, module_key: ModuleKey) -> List[str]:
        """Every key that can answer a question about this pair."""
        return [
            self.access_key(organization_id, module_key),
            self.organization_key(organization_id),
            self.single_key(organization_id, module_key),
            self.GLOBAL_KEY,
        ]

    # Lifecycle

    async def start(self):
        await self.store.start()
        try:
            await self.cache.start()
        except Exception:
            await self.store.stop()
            raise

    async def stop(self):
        try:
            await self.cache.stop()
        finally:
            await self.store.stop()

    async def health_check(self) -> Dict[str, str]:
        dependencies = dict(await self.store.health_check())
        dependencies["redis"] = "ok" if await self.cache.health_check() else "error"
        return dependencies

    # Cache plumbing

    def _record(self, cache_type: str, result: str):
        if result == "hit":
            self.stats["hits"] += 1
        elif result == "miss":
            self.stats["misses"] += 1
        elif result == "error":
            self.stats["errors"] += 1
        if self.metrics:
            self.metrics.record_cache_request(cache_type, result)

    async def _cache_call(self, cache_type: str, func: Callable[..., Awaitable[Any]], *args) -> Any:
        """Run a cache operation; returns None instead of raising when the cache is down."""
        try:
            return await self.breaker.call(func, *args)
        except CircuitBreakerOpenException:
            self._record(cache_type, "bypass")
        except UnavailableError as e:
            self._record(cache_type, "error")
            self.logger.warning("Cache unavailable, using store", cache_type=cache_type, error=str(e))
        return None

    async def _read_through(
        self,
        cache_type: str,
        key: str,
        ttl_seconds: int,
        loader: Callable[[], Awaitable[Any]],
        encode: Callable[[Any], str],
        decode: Callable[[str], Any],
    ) -> Any:
        cached = await self._cache_call(cache_type, self.cache.get, key)
        if cached is not None:
            try:
                value = decode(cached)
            except ValueError as e:
                self.logger.warning("Discarding undecodable cache entry", key=key, error=str(e))
            else:
                self._record(cache_type, "hit")
                return value

        self._record(cache_type, "miss")
        value = await loader()
        await self._cache_call(cache_type, self.cache.set, key, encode(value), ttl_seconds)
        return value

    async def _invalidate(self, organization_id: str, module_key: ModuleKey):
        keys = self.keys_for(organization_id, module_key)
        try:
            await self.breaker.call(self.cache.delete, *keys)
            self.logger.debug("Invalidated entitlement cache", keys=keys)
            return
        except CircuitBreakerOpenException:
            reason = "circuit open"
        except UnavailableError as e:
            reason = str(e)

        if self.metrics:
            self.metrics.record_invalidation_failure()
        self.logger.warning(
            "Cache invalidation failed, entries expire within TTL",
            organization_id=organization_id,
            module_key=module_key.value,
            ttl_seconds=self.ttl_seconds,
            error=reason
        )

    # Reads

    async def has_access(self, organization_id: str, module_key: ModuleKey) -> bool:
        # The entry holds status and expiry, not the answer, so a hit is
        # decided at read time and an expiry inside the TTL still denies.
        state = await self._read_through(
            "access",
            self.access_key(organization_id, module_key),
            self.ttl_seconds,
            lambda: self.store.get_entitlement(organization_id, module_key),
            _encode_access,
            _decode_access,
        )
        return decide(state, self._clock())

    async def get_entitlement(self, organization_id: str, module_key: ModuleKey) -> Optional[Entitlement]:
        return await self._read_through(
            "single",
            self.single_key(organization_id, module_key),
            self.ttl_seconds,
            lambda: self.store.get_entitlement(organization_id, module_key),
            _encode_entitlement,
            _decode_entitlement,
        )

    async def list_entitlements(self, organization_id: str) -> List[Entitlement]:
        return await self._read_through(
            "organization",
            self.organization_key(organization_id),
            self.ttl_seconds,
            lambda: self.store.list_entitlements(organization_id),
            _encode_list,
            _decode_list,
        )

    async def get_all_entitlements(self) -> List[Entitlement]:
        return await self._read_through(
            "global",
            self.GLOBAL_KEY,
            self.global_ttl_seconds,
            self.store.get_all_entitlements,
            _encode_list,
            _decode_list,
        )

    async def get_audit_history(
        self,
        organization_id: str,
        module_key: Optional[ModuleKey] = None,
        limit: int = 50,
    ) -> List[AuditRecord]:
        # Compliance reads always go to the store.
        return await self.store.get_audit_history(organization_id, module_key, limit)

    # Writes

    async def grant_access(
        self,
        organization_id: str,
        module_key: ModuleKey,
        valid_until: Optional[datetime] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        entitlement = await self.store.grant_access(organization_id, module_key, valid_until, actor, reason)
        await self._invalidate(organization_id, module_key)
        return entitlement

    async def revoke_access(
        self,
        organization_id: str,
        module_key: ModuleKey,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        entitlement = await self.store.revoke_access(organization_id, module_key, actor, reason)
        await self._invalidate(organization_id, module_key)
        return entitlement

    # Maintenance

    async def invalidate_all_cache(self) -> int:
        """Drop every entitlement cache entry."""
        deleted = await self._cache_call("all", self.cache.clear)
        return deleted or 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Client-side hit/miss counters plus breaker state."""
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            "hits": self.stats["hits"],
            "misses": self.stats["misses"],
            "errors": self.stats["errors"],
            "hit_rate": self.stats["hits"] / lookups if lookups else 0.0,
            "circuit_breaker": self.breaker.get_state(),
            "ttl_seconds": self.ttl_seconds,
        }
