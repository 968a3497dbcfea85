"""
Tests for the entitlements service facade.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from shared.config import get_config
from shared.errors import ConflictError, InvalidInputError, NotFoundError, UnavailableError
from shared.metrics import MetricsCollector
from shared.test_helpers import FakeRedisClient, ManualClock, create_mock_pool
from service_entitlements.app.cache import CachedEntitlementStore, RedisCache
from service_entitlements.app.domain.models import AuditAction, Entitlement, EntitlementStatus, ModuleKey
from service_entitlements.app.main import EntitlementsService, create_entitlement_service
from service_entitlements.app.persistence import InMemoryEntitlementStore, PostgreSQLEntitlementStore


def _config(**overrides):
    settings = {
        "use_in_memory_store": True,
        "cache_enabled": False,
        "grant_retry_base_delay": 0.0,
    }
    settings.update(overrides)
    return get_config(**settings)


class TestServiceConstruction:
    """Backend selection from configuration."""

    def test_in_memory_without_cache(self):
        service = EntitlementsService(_config())

        assert isinstance(service.store, InMemoryEntitlementStore)
        assert service.cache is None
        assert service.backend is service.store

    def test_cache_wraps_store(self):
        service = EntitlementsService(
            _config(cache_enabled=True, cache_ttl_seconds=60),
            cache=RedisCache("redis://unused", client=FakeRedisClient()),
        )

        assert isinstance(service.backend, CachedEntitlementStore)
        assert service.backend.store is service.store
        assert service.backend.ttl_seconds == 60

    def test_postgres_is_the_default_store(self):
        service = EntitlementsService(_config(use_in_memory_store=False, postgres_dsn="postgres://db/ent"))

        assert isinstance(service.store, PostgreSQLEntitlementStore)
        assert service.store.dsn == "postgres://db/ent"
        assert service.connected is False

    def test_factory_builds_unconnected_service(self):
        service = create_entitlement_service(_config())

        assert isinstance(service, EntitlementsService)
        assert service.connected is False


class TestEntitlementsService:
    """Operations through the facade."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("entitlements")

    @pytest.fixture
    def service(self, clock, metrics):
        return EntitlementsService(_config(), clock=clock, metrics=metrics)

    @pytest.fixture
    def mock_store(self):
        store = AsyncMock()
        store.health_check.return_value = {"postgres": "ok"}
        return store

    @pytest.fixture
    def mocked_service(self, mock_store, metrics):
        return EntitlementsService(_config(), store=mock_store, metrics=metrics)

    @pytest.mark.asyncio
    async def test_grant_check_revoke(self, service):
        async with service:
            assert await service.has_access("org-1", "assets") is False

            entitlement = await service.grant_access("org-1", "assets", actor="alice")
            assert entitlement.status is EntitlementStatus.ACTIVE
            assert await service.has_access("org-1", ModuleKey.ASSETS) is True

            await service.revoke_access("org-1", "assets", reason="Contract ended")
            assert await service.has_access("org-1", "assets") is False

            history = await service.get_audit_history("org-1", "assets")
            assert [r.action for r in history] == [AuditAction.SUSPENDED, AuditAction.CREATED]
            assert history[0].reason == "Contract ended"

    @pytest.mark.asyncio
    async def test_naive_valid_until_is_taken_as_utc(self, mocked_service, mock_store):
        mock_store.grant_access.return_value = Entitlement(
            organization_id="org-1", module_key="assets", status="active"
        )

        await mocked_service.grant_access("org-1", "assets", valid_until=datetime(2030, 1, 1))

        valid_until = mock_store.grant_access.await_args.args[2]
        assert valid_until == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert valid_until.tzinfo is not None

    @pytest.mark.asyncio
    async def test_expiry_is_enforced(self, service, clock):
        await service.grant_access("org-1", "work", valid_until=clock.now + timedelta(days=1))
        assert await service.has_access("org-1", "work") is True

        clock.advance(days=1, seconds=1)
        assert await service.has_access("org-1", "work") is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("module_key", ["billing", "", "Assets", None])
    async def test_unknown_module_is_rejected(self, service, module_key):
        with pytest.raises(InvalidInputError):
            await service.has_access("org-1", module_key)

        with pytest.raises(InvalidInputError):
            await service.grant_access("org-1", module_key)

        assert await service.get_all_entitlements() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("organization_id", ["", "   ", None])
    async def test_missing_organization_is_rejected(self, service, organization_id):
        with pytest.raises(InvalidInputError):
            await service.list_entitlements(organization_id)

    @pytest.mark.asyncio
    async def test_rejected_input_is_counted(self, service, metrics):
        with pytest.raises(InvalidInputError):
            await service.has_access("org-1", "billing")
        with pytest.raises(InvalidInputError):
            await service.revoke_access("", "assets")
        with pytest.raises(InvalidInputError):
            await service.get_audit_history("org-1", limit=0)

        assert metrics.sample_value(
            "errors_total", {"error_type": "INVALID_INPUT", "service": "entitlements"}
        ) == 3.0
        assert metrics.sample_value("entitlement_checks_total", {"decision": "deny"}) == 0.0

    @pytest.mark.asyncio
    async def test_audit_limit_defaults_and_caps(self, mocked_service, mock_store):
        mock_store.get_audit_history.return_value = []

        await mocked_service.get_audit_history("org-1")
        assert mock_store.get_audit_history.await_args.args == ("org-1", None, 50)

        await mocked_service.get_audit_history("org-1", "work", limit=10_000)
        assert mock_store.get_audit_history.await_args.args == ("org-1", ModuleKey.WORK, 500)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, -1, True, "10"])
    async def test_invalid_audit_limit(self, service, limit):
        with pytest.raises(InvalidInputError):
            await service.get_audit_history("org-1", limit=limit)

    @pytest.mark.asyncio
    async def test_grant_retries_conflicts(self, mocked_service, mock_store):
        entitlement = Entitlement(organization_id="org-1", module_key="assets", status="active")
        mock_store.grant_access.side_effect = [ConflictError(), entitlement]

        assert await mocked_service.grant_access("org-1", "assets") is entitlement
        assert mock_store.grant_access.await_count == 2

    @pytest.mark.asyncio
    async def test_grant_surfaces_conflict_after_retries(self, mocked_service, mock_store, metrics):
        mock_store.grant_access.side_effect = ConflictError()

        with pytest.raises(ConflictError):
            await mocked_service.grant_access("org-1", "assets")

        assert mock_store.grant_access.await_count == 3
        assert metrics.sample_value(
            "errors_total", {"error_type": "CONFLICT", "service": "entitlements"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_revoke_missing_is_not_retried(self, mocked_service, mock_store, metrics):
        mock_store.revoke_access.side_effect = NotFoundError()

        with pytest.raises(NotFoundError):
            await mocked_service.revoke_access("org-1", "assets")

        assert mock_store.revoke_access.await_count == 1
        assert metrics.sample_value(
            "errors_total", {"error_type": "NOT_FOUND", "service": "entitlements"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_access_checks_are_counted(self, service, metrics):
        await service.grant_access("org-1", "assets")
        await service.has_access("org-1", "assets")
        await service.has_access("org-1", "planning")
        await service.has_access("org-2", "assets")

        assert metrics.sample_value("entitlement_checks_total", {"decision": "allow"}) == 1.0
        assert metrics.sample_value("entitlement_checks_total", {"decision": "deny"}) == 2.0

    @pytest.mark.asyncio
    async def test_listing_operations(self, service):
        await service.grant_access("org-b", "work")
        await service.grant_access("org-a", "planning")
        await service.grant_access("org-a", "assets")

        assert [e.module_key.value for e in await service.list_entitlements("org-a")] == ["assets", "planning"]
        assert (await service.get_entitlement("org-b", "work")).organization_id == "org-b"
        assert await service.get_entitlement("org-b", "assets") is None
        assert [e.organization_id for e in await service.get_all_entitlements()] == ["org-a", "org-a", "org-b"]

    @pytest.mark.asyncio
    async def test_health_check_store_failure(self, mocked_service, mock_store, metrics):
        assert (await mocked_service.health_check())["status"] == "ok"

        mock_store.health_check.return_value = {"postgres": "error"}
        health = await mocked_service.health_check()

        assert health["status"] == "error"
        assert health["dependencies"] == {"postgres": "error"}
        assert metrics.sample_value("health_check_total", {"status": "error"}) == 1.0

    @pytest.mark.asyncio
    async def test_cache_operations_without_cache(self, service):
        assert await service.invalidate_all_cache() == 0
        assert await service.get_cache_stats() == {"enabled": False}

    @pytest.mark.asyncio
    async def test_connect_and_disconnect_are_idempotent(self, mocked_service, mock_store):
        await mocked_service.connect()
        await mocked_service.connect()
        assert mocked_service.connected is True
        mock_store.start.assert_awaited_once()

        await mocked_service.disconnect()
        await mocked_service.disconnect()
        assert mocked_service.connected is False
        mock_store.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_connect_releases_the_pool(self, metrics):
        pool, conn = create_mock_pool()
        conn.execute.side_effect = OSError("connection reset")
        service = EntitlementsService(
            _config(use_in_memory_store=False, postgres_dsn="postgres://db/ent"), metrics=metrics
        )

        with patch("asyncpg.create_pool", new=AsyncMock(return_value=pool)):
            with pytest.raises(UnavailableError):
                await service.connect()

        assert service.connected is False
        pool.close.assert_awaited_once()
        assert service.store.pool is None

    @pytest.mark.asyncio
    async def test_failed_metrics_server_stops_backend(self, mock_store, metrics):
        service = EntitlementsService(_config(metrics_port=9464), store=mock_store, metrics=metrics)

        with patch.object(metrics, "start_metrics_server", side_effect=OSError("address in use")):
            with pytest.raises(OSError):
                await service.connect()

        assert service.connected is False
        mock_store.start.assert_awaited_once()
        mock_store.stop.assert_awaited_once()


class TestCachedService:
    """Facade behaviour with the Redis cache enabled."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def redis_client(self, clock):
        return FakeRedisClient(clock)

    @pytest.fixture
    def service(self, clock, redis_client):
        return EntitlementsService(
            _config(cache_enabled=True),
            cache=RedisCache("redis://unused", client=redis_client),
            clock=clock,
            metrics=MetricsCollector("entitlements"),
        )

    @pytest.mark.asyncio
    async def test_revoke_is_visible_immediately(self, service):
        async with service:
            await service.grant_access("org-1", "assets")
            assert await service.has_access("org-1", "assets") is True
            assert await service.has_access("org-1", "assets") is True

            await service.revoke_access("org-1", "assets")
            assert await service.has_access("org-1", "assets") is False

    @pytest.mark.asyncio
    async def test_cache_outage_degrades_health(self, service, redis_client):
        async with service:
            redis_client.fail = True
            health = await service.health_check()

            assert health["status"] == "ok"
            assert health["degraded"] is True
            assert health["dependencies"] == {"memory": "ok", "redis": "error"}

            await service.grant_access("org-1", "assets")
            assert await service.has_access("org-1", "assets") is True

    @pytest.mark.asyncio
    async def test_cache_stats_and_flush(self, service, redis_client):
        await service.grant_access("org-1", "assets")
        await service.has_access("org-1", "assets")
        await service.has_access("org-1", "assets")

        stats = await service.get_cache_stats()
        assert stats["enabled"] is True
        assert stats["hits"] == 1

        assert await service.invalidate_all_cache() == 1
        assert redis_client.keys() == []

    @pytest.mark.asyncio
    async def test_disconnect_closes_cache(self, service, redis_client):
        await service.connect()
        await service.disconnect()

        assert redis_client.closed is True
