"""
PostgreSQL persistence layer for the Entitlements Service.

The store is the system of record. Every mutation and its audit row are
written in one transaction; concurrent writers on the same
(organization, module) pair serialize on the entitlement row lock, and the
unique constraint on the pair is the backstop.
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import asyncpg

from shared.errors import ConflictError, NotFoundError, UnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.decision import decide
from ..domain.models import (
    AuditAction,
    AuditRecord,
    DEFAULT_AUDIT_REASONS,
    Entitlement,
    EntitlementSnapshot,
    EntitlementStatus,
    ModuleKey,
    grant_action,
    utcnow,
)


# Failures of the transport rather than of the statement.
TRANSPORT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
)


_INSERT_ENTITLEMENT = """
    INSERT INTO entitlements (
        id, organization_id, module_key, status, valid_until,
        created_by, created_at, updated_by, updated_at
    ) VALUES ($1, $2, $3, 'active', $4, $5, $6, $5, $6)
    ON CONFLICT (organization_id, module_key) DO NOTHING
    RETURNING *
"""

_SELECT_FOR_UPDATE = """
    SELECT * FROM entitlements
    WHERE organization_id = $1 AND module_key = $2
    FOR UPDATE
"""

_INSERT_AUDIT = """
    INSERT INTO entitlement_audit (
        id, entitlement_id, organization_id, module_key, action,
        previous_value, new_value, performed_by, performed_at, reason
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
"""


class PostgreSQLEntitlementStore:
    """PostgreSQL persistence layer for entitlements and their audit trail."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        command_timeout: float = 30.0,
        create_schema: bool = True,
        default_actor: str = "system",
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], datetime]] = None,
        pool: Optional[asyncpg.Pool] = None,
    ):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.create_schema = create_schema
        self.default_actor = default_actor
        self.metrics = metrics
        self._clock = clock or utcnow
        self.logger = get_logger("entitlements.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self):
        """Start the persistence layer."""
        if self.pool is None:
            try:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
            except (asyncpg.PostgresError,) + TRANSPORT_ERRORS as e:
                self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
                raise UnavailableError("postgres", f"Failed to start: {e}") from e

        if self.create_schema:
            try:
                await self._create_tables()
            except Exception:
                await self.stop()
                raise

        self.logger.info("PostgreSQL persistence started")

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec(
            "jsonb",
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )

    async def _create_tables(self):
        """Create database tables."""
        async with self._connection("create_tables") as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS entitlements (
                    id UUID PRIMARY KEY,
                    organization_id VARCHAR(255) NOT NULL,
                    module_key VARCHAR(50) NOT NULL,
                    status VARCHAR(20) NOT NULL,
                    valid_until TIMESTAMP WITH TIME ZONE,
                    created_by VARCHAR(255) NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_by VARCHAR(255) NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    CONSTRAINT uq_entitlements_org_module UNIQUE (organization_id, module_key)
                );
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS entitlement_audit (
                    id UUID PRIMARY KEY,
                    seq BIGSERIAL NOT NULL,
                    entitlement_id UUID NOT NULL REFERENCES entitlements(id),
                    organization_id VARCHAR(255) NOT NULL,
                    module_key VARCHAR(50) NOT NULL,
                    action VARCHAR(20) NOT NULL,
                    previous_value JSONB,
                    new_value JSONB NOT NULL,
                    performed_by VARCHAR(255) NOT NULL,
                    performed_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    reason TEXT
                );
            """)
            # Tables created before the sequence column existed.
            await conn.execute("""
                ALTER TABLE entitlement_audit ADD COLUMN IF NOT EXISTS seq BIGSERIAL;
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_entitlement_audit_org_module_time
                ON entitlement_audit(organization_id, module_key, performed_at DESC, seq DESC);
            """)

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection and translate driver failures."""
        if self.pool is None:
            raise UnavailableError("postgres", "Persistence layer not started")

        timer = self.metrics.time_store_operation(operation) if self.metrics else nullcontext()
        with timer:
            try:
                async with self.pool.acquire() as conn:
                    yield conn
            except asyncpg.UniqueViolationError as e:
                self.logger.warning("Unique constraint violated", operation=operation, error=str(e))
                raise ConflictError(
                    "Concurrent write on the same entitlement",
                    details={"operation": operation}
                ) from e
            except TRANSPORT_ERRORS as e:
                self.logger.error("PostgreSQL unavailable", operation=operation, error=str(e))
                raise UnavailableError("postgres", str(e) or type(e).__name__) from e

    async def has_access(self, organization_id: str, module_key: ModuleKey) -> bool:
        entitlement = await self.get_entitlement(organization_id, module_key)
        return decide(entitlement, self._clock())

    async def grant_access(
        self,
        organization_id: str,
        module_key: ModuleKey,
        valid_until: Optional[datetime] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        """Create or re-activate the entitlement for a pair."""
        actor = actor or self.default_actor
        now = self._clock()

        async with self._connection("grant_access") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    _INSERT_ENTITLEMENT,
                    uuid.uuid4(), organization_id, module_key.value, valid_until, actor, now
                )

                previous: Optional[Entitlement] = None
                if row is None:
                    # Row exists (possibly just committed by a concurrent grant);
                    # lock it so the read-modify-write below is serialized.
                    existing = await conn.fetchrow(_SELECT_FOR_UPDATE, organization_id, module_key.value)
                    if existing is None:
                        raise ConflictError(
                            "Entitlement vanished during grant",
                            details={"organization_id": organization_id, "module_key": module_key.value}
                        )
                    previous = self._row_to_entitlement(existing)
                    row = await conn.fetchrow("""
                        UPDATE entitlements
                        SET status = 'active', valid_until = $2, updated_by = $3, updated_at = $4
                        WHERE id = $1
                        RETURNING *
                    """, existing["id"], valid_until, actor, now)

                entitlement = self._row_to_entitlement(row)
                action = grant_action(previous)
                await self._insert_audit(conn, row["id"], previous, entitlement, action, actor, now, reason)

        self.logger.info(
            "Entitlement granted",
            organization_id=organization_id,
            module_key=module_key.value,
            action=action.value,
            valid_until=valid_until.isoformat() if valid_until else None
        )
        return entitlement

    async def revoke_access(
        self,
        organization_id: str,
        module_key: ModuleKey,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        """Suspend the entitlement for a pair."""
        actor = actor or self.default_actor
        now = self._clock()

        async with self._connection("revoke_access") as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(_SELECT_FOR_UPDATE, organization_id, module_key.value)
                if existing is None:
                    raise NotFoundError(
                        f"No entitlement found for organization {organization_id} and module {module_key.value}",
                        details={"organization_id": organization_id, "module_key": module_key.value}
                    )

                previous = self._row_to_entitlement(existing)
                row = await conn.fetchrow("""
                    UPDATE entitlements
                    SET status = 'suspended', updated_by = $2, updated_at = $3
                    WHERE id = $1
                    RETURNING *
                """, existing["id"], actor, now)

                entitlement = self._row_to_entitlement(row)
                await self._insert_audit(
                    conn, row["id"], previous, entitlement, AuditAction.SUSPENDED, actor, now, reason
                )

        self.logger.info(
            "Entitlement revoked",
            organization_id=organization_id,
            module_key=module_key.value
        )
        return entitlement

    async def _insert_audit(
        self,
        conn,
        entitlement_id: Any,
        previous: Optional[Entitlement],
        current: Entitlement,
        action: AuditAction,
        actor: str,
        performed_at: datetime,
        reason: Optional[str],
    ) -> AuditRecord:
        """Append one audit row on the caller's transaction."""
        record = AuditRecord(
            id=str(uuid.uuid4()),
            entitlement_id=str(entitlement_id),
            organization_id=current.organization_id,
            module_key=current.module_key,
            action=action,
            previous_value=previous.snapshot() if previous else None,
            new_value=current.snapshot(),
            performed_by=actor,
            performed_at=performed_at,
            reason=reason or DEFAULT_AUDIT_REASONS[action],
        )

        await conn.execute(
            _INSERT_AUDIT,
            uuid.UUID(record.id),
            entitlement_id,
            record.organization_id,
            record.module_key.value,
            record.action.value,
            record.previous_value.model_dump(mode="json") if record.previous_value else None,
            record.new_value.model_dump(mode="json"),
            record.performed_by,
            record.performed_at,
            record.reason,
        )

        if self.metrics:
            self.metrics.record_audit(action.value)
        return record

    async def get_entitlement(self, organization_id: str, module_key: ModuleKey) -> Optional[Entitlement]:
        async with self._connection("get_entitlement") as conn:
            row = await conn.fetchrow("""
                SELECT * FROM entitlements
                WHERE organization_id = $1 AND module_key = $2
            """, organization_id, module_key.value)

        return self._row_to_entitlement(row) if row else None

    async def list_entitlements(self, organization_id: str) -> List[Entitlement]:
        """All entitlements of an organization, ordered by module key."""
        async with self._connection("list_entitlements") as conn:
            rows = await conn.fetch("""
                SELECT * FROM entitlements
                WHERE organization_id = $1
                ORDER BY module_key ASC
            """, organization_id)

        return [self._row_to_entitlement(row) for row in rows]

    async def get_all_entitlements(self) -> List[Entitlement]:
        """Every entitlement, ordered by organization then module key."""
        async with self._connection("get_all_entitlements") as conn:
            rows = await conn.fetch("""
                SELECT * FROM entitlements
                ORDER BY organization_id ASC, module_key ASC
            """)

        return [self._row_to_entitlement(row) for row in rows]

    async def get_audit_history(
        self,
        organization_id: str,
        module_key: Optional[ModuleKey] = None,
        limit: int = 50,
    ) -> List[AuditRecord]:
        """Audit records for an organization (optionally one module), newest first."""
        async with self._connection("get_audit_history") as conn:
            if module_key is None:
                rows = await conn.fetch("""
                    SELECT * FROM entitlement_audit
                    WHERE organization_id = $1
                    ORDER BY performed_at DESC, seq DESC
                    LIMIT $2
                """, organization_id, limit)
            else:
                rows = await conn.fetch("""
                    SELECT * FROM entitlement_audit
                    WHERE organization_id = $1 AND module_key = $2
                    ORDER BY performed_at DESC, seq DESC
                    LIMIT $3
                """, organization_id, module_key.value, limit)

        return [self._row_to_audit(row) for row in rows]

    def _row_to_entitlement(self, row) -> Entitlement:
        """Convert database row to Entitlement object."""
        return Entitlement(
            id=str(row["id"]),
            organization_id=row["organization_id"],
            module_key=ModuleKey(row["module_key"]),
            status=EntitlementStatus(row["status"]),
            valid_until=row["valid_until"],
            updated_by=row["updated_by"] or self.default_actor,
            updated_at=row["updated_at"],
        )

    def _row_to_audit(self, row) -> AuditRecord:
        """Convert database row to AuditRecord object."""
        previous = row["previous_value"]
        return AuditRecord(
            id=str(row["id"]),
            entitlement_id=str(row["entitlement_id"]),
            organization_id=row["organization_id"],
            module_key=ModuleKey(row["module_key"]),
            action=AuditAction(row["action"]),
            previous_value=EntitlementSnapshot.model_validate(previous) if previous else None,
            new_value=EntitlementSnapshot.model_validate(row["new_value"]),
            performed_by=row["performed_by"],
            performed_at=row["performed_at"],
            reason=row["reason"],
        )

    async def health_check(self) -> Dict[str, str]:
        """Check database health."""
        try:
            async with self._connection("health_check") as conn:
                await conn.fetchval("SELECT 1")
            return {"postgres": "ok"}
        except UnavailableError:
            return {"postgres": "error"}
