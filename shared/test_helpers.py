"""
Test helper functions and factory methods for the Module Entitlements service.
"""

import fnmatch
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

from redis.exceptions import ConnectionError as RedisConnectionError


class ManualClock:
    """Clock that only moves when told to.

    Call it for an aware UTC ``datetime`` (store clocks) or use
    ``monotonic`` for float seconds (Redis TTLs, circuit breakers), so one
    instance can drive every time-dependent component in a test.
    """

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRedisClient:
    """In-memory stand-in for ``redis.asyncio.Redis`` with string responses.

    Set ``fail = True`` to make every command raise a Redis connection
    error, as a dead server would.
    """

    def __init__(self, clock: Optional[ManualClock] = None):
        self.clock = clock or ManualClock()
        self.fail = False
        self.closed = False
        self.calls: List[Tuple[str, tuple]] = []
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _command(self, name: str, *args):
        self.calls.append((name, args))
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self.clock.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    def command_count(self, name: str) -> int:
        return sum(1 for command, _ in self.calls if command == name)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds left before ``key`` expires (None when absent or persistent)."""
        if self._live(key) is None:
            return None
        expires_at = self._data[key][1]
        return None if expires_at is None else expires_at - self.clock.monotonic()

    def keys(self) -> List[str]:
        return [key for key in list(self._data) if self._live(key) is not None]

    async def ping(self) -> bool:
        self._command("ping")
        return True

    async def get(self, key: str) -> Optional[str]:
        self._command("get", key)
        return self._live(key)

    async def set(self, key: str, value: str) -> bool:
        self._command("set", key, value)
        self._data[key] = (value, None)
        return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self._command("setex", key, ttl, value)
        self._data[key] = (value, self.clock.monotonic() + ttl)
        return True

    async def delete(self, *keys: str) -> int:
        self._command("delete", *keys)
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                deleted += 1
            self._data.pop(key, None)
        return deleted

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        self._command("scan_iter", match)
        for key in self.keys():
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def info(self) -> Dict[str, Any]:
        self._command("info")
        return {
            "redis_version": "7.2.0",
            "used_memory_human": "1.00M",
            "connected_clients": 1,
            "keyspace_hits": 0,
            "keyspace_misses": 0,
        }

    async def aclose(self):
        self.closed = True


class _AsyncContext:
    """Async context manager yielding a fixed value."""

    def __init__(self, value: Any = None):
        self.value = value

    async def __aenter__(self):
        return self.value

    async def __aexit__(self, exc_type, exc, tb):
        return False


def create_mock_pool() -> Tuple[MagicMock, MagicMock]:
    """Create a mocked asyncpg pool and the connection it hands out."""
    conn = MagicMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=1)
    conn.execute = AsyncMock(return_value="INSERT 0 1")
    conn.transaction = MagicMock(return_value=_AsyncContext())

    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_AsyncContext(conn))
    pool.close = AsyncMock()
    return pool, conn


def create_entitlement_row(
    organization_id: str = "org-1",
    module_key: str = "assets",
    status: str = "active",
    valid_until: Optional[datetime] = None,
    updated_by: str = "system",
    updated_at: Optional[datetime] = None,
    entitlement_id: Optional[uuid.UUID] = None,
) -> Dict[str, Any]:
    """Create a row shaped like ``SELECT * FROM entitlements``."""
    updated_at = updated_at or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    return {
        "id": entitlement_id or uuid.uuid4(),
        "organization_id": organization_id,
        "module_key": module_key,
        "status": status,
        "valid_until": valid_until,
        "created_by": updated_by,
        "created_at": updated_at,
        "updated_by": updated_by,
        "updated_at": updated_at,
    }


def create_audit_row(
    organization_id: str = "org-1",
    module_key: str = "assets",
    action: str = "created",
    previous_value: Optional[Dict[str, Any]] = None,
    new_value: Optional[Dict[str, Any]] = None,
    performed_by: str = "system",
    performed_at: Optional[datetime] = None,
    reason: Optional[str] = "Initial access granted",
) -> Dict[str, Any]:
    """Create a row shaped like ``SELECT * FROM entitlement_audit``."""
    return {
        "id": uuid.uuid4(),
        "entitlement_id": uuid.uuid4(),
        "organization_id": organization_id,
        "module_key": module_key,
        "action": action,
        "previous_value": previous_value,
        "new_value": new_value or {"status": "active", "valid_until": None},
        "performed_by": performed_by,
        "performed_at": performed_at or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc),
        "reason": reason,
    }
