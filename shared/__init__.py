"""
Shared utilities for the Module Entitlements service.

This package aggregates common building blocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and correlation context
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for conflicting writes
- circuit_breaker: Protection for calls to optional backends
- test_helpers: Doubles and factories used by the test suites

Do not import from service_entitlements into shared/.
"""
