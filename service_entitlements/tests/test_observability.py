"""
Tests for configuration, errors, logging context and metrics.
"""

import time

import pytest
from pydantic import ValidationError

from shared.config import get_config
from shared.errors import ConflictError, ErrorResponse, InvalidInputError, NotFoundError, UnavailableError
from shared.logging import (
    add_correlation_context,
    add_service_context,
    clear_context,
    elapsed_ms,
    operation_context,
    set_request_id,
)
from shared.metrics import MetricsCollector


class TestConfig:
    """Settings loading."""

    def test_defaults(self):
        config = get_config()

        assert config.service_name == "entitlements"
        assert config.cache_ttl_seconds == 300
        assert config.cache_key_prefix == "entitlement:"
        assert config.audit_default_limit == 50
        assert config.audit_max_limit == 500
        assert config.default_actor == "system"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ENTITLEMENTS_CACHE_TTL_SECONDS", "60")
        monkeypatch.setenv("ENTITLEMENTS_USE_IN_MEMORY_STORE", "true")

        config = get_config()

        assert config.cache_ttl_seconds == 60
        assert config.use_in_memory_store is True

    def test_keyword_overrides_win(self, monkeypatch):
        monkeypatch.setenv("ENTITLEMENTS_CACHE_ENABLED", "true")
        assert get_config(cache_enabled=False).cache_enabled is False

    def test_rejects_zero_ttl(self):
        with pytest.raises(ValidationError):
            get_config(cache_ttl_seconds=0)


class TestErrors:
    """Error types and their response payloads."""

    def test_codes(self):
        assert NotFoundError().code == "NOT_FOUND"
        assert ConflictError().code == "CONFLICT"
        assert InvalidInputError().code == "INVALID_INPUT"
        assert UnavailableError("postgres").code == "UNAVAILABLE"

    def test_unavailable_names_the_backend(self):
        error = UnavailableError("redis", "GET failed")

        assert error.service == "redis"
        assert str(error) == "redis: GET failed"

    def test_to_response_without_active_span(self):
        response = NotFoundError("No entitlement", details={"module_key": "assets"}).to_response()

        assert isinstance(response, ErrorResponse)
        assert response.trace_id is None
        assert response.code == "NOT_FOUND"
        assert response.details == {"module_key": "assets"}


class TestLoggingContext:
    """Correlation context binding."""

    def teardown_method(self):
        clear_context()

    def test_operation_context_binds_and_resets(self):
        with operation_context(actor="alice", organization_id="org-1"):
            event = add_correlation_context(None, "info", {"event": "granted"})
            assert event["actor"] == "alice"
            assert event["organization_id"] == "org-1"

        assert "actor" not in add_correlation_context(None, "info", {"event": "after"})

    def test_none_values_are_not_bound(self):
        with operation_context(actor=None, organization_id="org-1"):
            event = add_correlation_context(None, "info", {})

        assert "actor" not in event

    def test_explicit_fields_win(self):
        with operation_context(organization_id="org-1"):
            event = add_correlation_context(None, "info", {"organization_id": "org-2"})

        assert event["organization_id"] == "org-2"

    def test_request_id(self):
        request_id = set_request_id()

        assert add_correlation_context(None, "info", {})["request_id"] == request_id
        assert set_request_id("req-1") == "req-1"

        clear_context()
        assert "request_id" not in add_correlation_context(None, "info", {})

    def test_service_name_from_logger_name(self):
        event = add_service_context(None, "info", {"logger": "entitlements.cache.redis"})
        assert event["service"] == "entitlements"

    def test_elapsed_ms_is_non_negative(self):
        assert elapsed_ms(time.time()) >= 0


class TestMetricsCollector:
    """Prometheus collector."""

    def test_collectors_do_not_share_registries(self):
        first = MetricsCollector("entitlements")
        second = MetricsCollector("entitlements")

        first.record_access_check(True)

        assert first.sample_value("entitlement_checks_total", {"decision": "allow"}) == 1.0
        assert second.sample_value("entitlement_checks_total", {"decision": "allow"}) == 0.0

    def test_store_operation_timing(self):
        metrics = MetricsCollector("entitlements")

        with metrics.time_store_operation("grant_access"):
            pass
        with pytest.raises(RuntimeError):
            with metrics.time_store_operation("grant_access"):
                raise RuntimeError("boom")

        labels = {"operation": "grant_access"}
        assert metrics.sample_value("entitlement_store_operations_total", dict(labels, status="ok")) == 1.0
        assert metrics.sample_value("entitlement_store_operations_total", dict(labels, status="error")) == 1.0
        assert metrics.sample_value("entitlement_store_operation_duration_seconds_count", labels) == 2.0

    def test_export(self):
        metrics = MetricsCollector("entitlements")
        metrics.record_cache_request("access", "hit")
        metrics.record_invalidation_failure()

        body = metrics.export()

        assert b'entitlement_cache_requests_total{cache_type="access",result="hit"} 1.0' in body
        assert b"entitlement_cache_invalidation_failures_total 1.0" in body
        assert metrics.get_metric("service_info") is not None
