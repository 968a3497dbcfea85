"""
Entitlements service facade.

Builds the configured backend (PostgreSQL or in-memory store, optionally
behind the Redis cache) and exposes the operations the route layer calls.
Module keys and other inputs are validated here, so backends only ever see
well-formed values.
"""

import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from shared.circuit_breaker import CircuitBreaker
from shared.config import EntitlementsConfig, get_config
from shared.errors import ConflictError, EntitlementServiceException, InvalidInputError, UnavailableError
from shared.logging import configure_logging, elapsed_ms, get_logger, operation_context
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.retry import RetryConfig, RetryError, retry_on_exception

from .cache.cached_store import CachedEntitlementStore
from .cache.redis_cache import RedisCache
from .domain.models import AuditRecord, Entitlement, ModuleKey, ensure_utc
from .persistence.base import EntitlementBackend
from .persistence.memory import InMemoryEntitlementStore
from .persistence.postgres import PostgreSQLEntitlementStore


ModuleKeyLike = Union[ModuleKey, str]


class EntitlementsService:
    """Entitlements service implementation."""

    def __init__(
        self,
        config: Optional[EntitlementsConfig] = None,
        *,
        store: Optional[EntitlementBackend] = None,
        cache: Optional[RedisCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or get_config()
        configure_logging(self.config.service_name, self.config.log_level)
        self.logger = get_logger(f"{self.config.service_name}.service")
        self.metrics = metrics or get_metrics_collector(self.config.service_name)

        self.store: EntitlementBackend = store or self._create_store(clock)
        self.cache: Optional[CachedEntitlementStore] = None
        if self.config.cache_enabled:
            self.cache = CachedEntitlementStore(
                self.store,
                cache or RedisCache(
                    self.config.redis_url,
                    key_prefix=self.config.cache_key_prefix,
                    socket_timeout=self.config.redis_socket_timeout,
                ),
                ttl_seconds=self.config.cache_ttl_seconds,
                breaker=CircuitBreaker(
                    failure_threshold=self.config.cache_failure_threshold,
                    recovery_timeout=self.config.cache_recovery_timeout,
                    expected_exception=UnavailableError,
                    name="entitlements_cache",
                ),
                metrics=self.metrics,
                clock=clock,
            )

        self.backend: EntitlementBackend = self.cache or self.store
        # A grant that lost the insert race finds the row on the next attempt.
        self._grant_with_retry = retry_on_exception(
            (ConflictError,),
            RetryConfig(
                max_attempts=self.config.grant_conflict_retries,
                base_delay=self.config.grant_retry_base_delay,
            ),
        )(self._grant)
        self._connected = False

    def _create_store(self, clock: Optional[Callable[[], datetime]]) -> EntitlementBackend:
        if self.config.use_in_memory_store:
            return InMemoryEntitlementStore(
                default_actor=self.config.default_actor,
                metrics=self.metrics,
                clock=clock,
            )
        return PostgreSQLEntitlementStore(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool_size,
            max_size=self.config.postgres_max_pool_size,
            command_timeout=self.config.postgres_command_timeout,
            create_schema=self.config.postgres_create_schema,
            default_actor=self.config.default_actor,
            metrics=self.metrics,
            clock=clock,
        )

    # Lifecycle

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        """Open the store pool and the cache connection."""
        if self._connected:
            return
        await self.backend.start()
        if self.config.metrics_port:
            try:
                self.metrics.start_metrics_server(self.config.metrics_port)
            except Exception:
                await self.backend.stop()
                raise
        self._connected = True

        self.logger.info(
            "Entitlements service started",
            store=type(self.store).__name__,
            cache_enabled=self.cache is not None,
            cache_ttl_seconds=self.config.cache_ttl_seconds if self.cache else None
        )

    async def disconnect(self):
        """Release the store pool and the cache connection together."""
        if not self._connected:
            return
        try:
            await self.backend.stop()
        finally:
            self._connected = False
            self.logger.info("Entitlements service stopped")

    async def __aenter__(self) -> "EntitlementsService":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.disconnect()

    # Boundary validation

    @staticmethod
    def _organization(organization_id: str) -> str:
        if not isinstance(organization_id, str) or not organization_id.strip():
            raise InvalidInputError("organization_id is required", details={"organization_id": organization_id})
        return organization_id

    def _limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.config.audit_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidInputError("limit must be a positive integer", details={"limit": limit})
        return min(limit, self.config.audit_max_limit)

    @contextmanager
    def _operation(self, name: str, **context: Optional[str]) -> Iterator[None]:
        start_time = time.time()
        with operation_context(**context):
            try:
                yield
            except EntitlementServiceException as e:
                self.metrics.record_error(e.code)
                self.logger.warning(
                    "Entitlement operation failed",
                    operation=name,
                    code=e.code,
                    error=e.message,
                    duration_ms=elapsed_ms(start_time)
                )
                raise
            self.logger.debug("Entitlement operation completed", operation=name, duration_ms=elapsed_ms(start_time))

    # Operations
    #
    # Boundary validation runs inside _operation so rejected input is logged
    # and counted like any other failure.

    async def has_access(self, organization_id: str, module_key: ModuleKeyLike) -> bool:
        """Whether the organization currently has access to the module."""
        with self._operation("has_access", organization_id=organization_id):
            org = self._organization(organization_id)
            allowed = await self.backend.has_access(org, ModuleKey.parse(module_key))

        self.metrics.record_access_check(allowed)
        return allowed

    async def grant_access(
        self,
        organization_id: str,
        module_key: ModuleKeyLike,
        valid_until: Optional[datetime] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        """Create or re-activate an entitlement; ``valid_until=None`` means no expiry."""
        with self._operation("grant_access", organization_id=organization_id, actor=actor):
            org = self._organization(organization_id)
            module = ModuleKey.parse(module_key)
            try:
                return await self._grant_with_retry(org, module, ensure_utc(valid_until), actor, reason)
            except RetryError as e:
                raise e.last_exception

    async def _grant(
        self,
        organization_id: str,
        module_key: ModuleKey,
        valid_until: Optional[datetime],
        actor: Optional[str],
        reason: Optional[str],
    ) -> Entitlement:
        return await self.backend.grant_access(organization_id, module_key, valid_until, actor, reason)

    async def revoke_access(
        self,
        organization_id: str,
        module_key: ModuleKeyLike,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        """Suspend an existing entitlement; raises ``NotFoundError`` when there is none."""
        with self._operation("revoke_access", organization_id=organization_id, actor=actor):
            org = self._organization(organization_id)
            return await self.backend.revoke_access(org, ModuleKey.parse(module_key), actor, reason)

    async def list_entitlements(self, organization_id: str) -> List[Entitlement]:
        with self._operation("list_entitlements", organization_id=organization_id):
            return await self.backend.list_entitlements(self._organization(organization_id))

    async def get_entitlement(self, organization_id: str, module_key: ModuleKeyLike) -> Optional[Entitlement]:
        with self._operation("get_entitlement", organization_id=organization_id):
            org = self._organization(organization_id)
            return await self.backend.get_entitlement(org, ModuleKey.parse(module_key))

    async def get_all_entitlements(self) -> List[Entitlement]:
        """Every entitlement of every organization; meant for operator tooling."""
        with self._operation("get_all_entitlements"):
            return await self.backend.get_all_entitlements()

    async def get_audit_history(
        self,
        organization_id: str,
        module_key: Optional[ModuleKeyLike] = None,
        limit: Optional[int] = None,
    ) -> List[AuditRecord]:
        """Audit records for an organization, newest first."""
        with self._operation("get_audit_history", organization_id=organization_id):
            org = self._organization(organization_id)
            module = ModuleKey.parse(module_key) if module_key is not None else None
            return await self.backend.get_audit_history(org, module, self._limit(limit))

    # Operations support

    async def health_check(self) -> Dict[str, Any]:
        """Dependency status; a cache outage degrades the service but does not fail it."""
        dependencies = await self.backend.health_check()
        store_ok = all(status == "ok" for name, status in dependencies.items() if name != "redis")
        status = "ok" if store_ok else "error"
        self.metrics.record_health_check(status)

        return {
            "service": self.config.service_name,
            "status": status,
            "degraded": dependencies.get("redis") == "error",
            "dependencies": dependencies,
        }

    async def invalidate_all_cache(self) -> int:
        if self.cache is None:
            return 0
        deleted = await self.cache.invalidate_all_cache()
        self.logger.info("Entitlement cache flushed", deleted=deleted)
        return deleted

    async def get_cache_stats(self) -> Dict[str, Any]:
        if self.cache is None:
            return {"enabled": False}
        return {"enabled": True, **await self.cache.get_cache_stats()}


def create_entitlement_service(config: Optional[EntitlementsConfig] = None) -> EntitlementsService:
    """Create an entitlements service from settings (not yet connected)."""
    return EntitlementsService(config or get_config())
