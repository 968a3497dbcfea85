"""
Persistence package for the Entitlements Service.

- base: the backend protocol every store satisfies.
- postgres: asyncpg-backed system of record.
- memory: in-process store with the same contract, for local runs and tests.
"""

from .base import EntitlementBackend
from .memory import InMemoryEntitlementStore
from .postgres import PostgreSQLEntitlementStore

__all__ = ["EntitlementBackend", "InMemoryEntitlementStore", "PostgreSQLEntitlementStore"]
