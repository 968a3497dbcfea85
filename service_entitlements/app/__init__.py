"""
Module Entitlements service package.

Answers whether an organization may use a product module, and records every
change to that answer. It provides:

- app.main: service facade (boundary validation, backend selection, lifecycle).
- app.domain: entitlement and audit models plus the pure access decision.
- app.persistence: PostgreSQL and in-memory stores (system of record).
- app.cache: Redis cache-aside wrapper with write invalidation.

Guidelines:
- The store is authoritative; the cache may only lag it by its TTL.
- Every mutation writes its audit record in the same unit of work.
- Keep decisions deterministic and observable (metrics + logs).
"""
