"""
In-process entitlement store.

Honours the same contract as the PostgreSQL store (one row per pair, one
audit record per mutation, deterministic ordering) without a database.
Used for local development and tests; state dies with the process.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from shared.errors import NotFoundError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..domain.decision import decide
from ..domain.models import (
    AuditAction,
    AuditRecord,
    DEFAULT_AUDIT_REASONS,
    Entitlement,
    EntitlementStatus,
    ModuleKey,
    grant_action,
    utcnow,
)


class InMemoryEntitlementStore:
    """Dictionary-backed store with per-pair write locks."""

    def __init__(
        self,
        *,
        default_actor: str = "system",
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.default_actor = default_actor
        self.metrics = metrics
        self._clock = clock or utcnow
        self.logger = get_logger("entitlements.persistence.memory")

        self._entitlements: Dict[Tuple[str, ModuleKey], Entitlement] = {}
        self._audit: List[AuditRecord] = []
        self._locks: Dict[Tuple[str, ModuleKey], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def start(self):
        self.logger.info("In-memory persistence started")

    async def stop(self):
        self.logger.info("In-memory persistence stopped", entitlements=len(self._entitlements))

    async def health_check(self) -> Dict[str, str]:
        return {"memory": "ok"}

    async def has_access(self, organization_id: str, module_key: ModuleKey) -> bool:
        return decide(self._entitlements.get((organization_id, module_key)), self._clock())

    async def grant_access(
        self,
        organization_id: str,
        module_key: ModuleKey,
        valid_until: Optional[datetime] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        actor = actor or self.default_actor
        key = (organization_id, module_key)

        async with self._locks[key]:
            now = self._clock()
            previous = self._entitlements.get(key)
            entitlement = Entitlement(
                id=previous.id if previous else str(uuid.uuid4()),
                organization_id=organization_id,
                module_key=module_key,
                status=EntitlementStatus.ACTIVE,
                valid_until=valid_until,
                updated_by=actor,
                updated_at=now,
            )
            action = grant_action(previous)
            record = self._audit_record(previous, entitlement, action, actor, now, reason)

            # Both writes happen with no await in between, so they land together.
            self._entitlements[key] = entitlement
            self._audit.append(record)

        if self.metrics:
            self.metrics.record_audit(action.value)
        self.logger.info(
            "Entitlement granted",
            organization_id=organization_id,
            module_key=module_key.value,
            action=action.value
        )
        return entitlement.model_copy()

    async def revoke_access(
        self,
        organization_id: str,
        module_key: ModuleKey,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        actor = actor or self.default_actor
        key = (organization_id, module_key)

        async with self._locks[key]:
            previous = self._entitlements.get(key)
            if previous is None:
                raise NotFoundError(
                    f"No entitlement found for organization {organization_id} and module {module_key.value}",
                    details={"organization_id": organization_id, "module_key": module_key.value}
                )

            now = self._clock()
            entitlement = previous.model_copy(update={
                "status": EntitlementStatus.SUSPENDED,
                "updated_by": actor,
                "updated_at": now,
            })
            record = self._audit_record(previous, entitlement, AuditAction.SUSPENDED, actor, now, reason)

            self._entitlements[key] = entitlement
            self._audit.append(record)

        if self.metrics:
            self.metrics.record_audit(AuditAction.SUSPENDED.value)
        self.logger.info("Entitlement revoked", organization_id=organization_id, module_key=module_key.value)
        return entitlement.model_copy()

    def _audit_record(
        self,
        previous: Optional[Entitlement],
        current: Entitlement,
        action: AuditAction,
        actor: str,
        performed_at: datetime,
        reason: Optional[str],
    ) -> AuditRecord:
        return AuditRecord(
            id=str(uuid.uuid4()),
            entitlement_id=current.id,
            organization_id=current.organization_id,
            module_key=current.module_key,
            action=action,
            previous_value=previous.snapshot() if previous else None,
            new_value=current.snapshot(),
            performed_by=actor,
            performed_at=performed_at,
            reason=reason or DEFAULT_AUDIT_REASONS[action],
        )

    async def get_entitlement(self, organization_id: str, module_key: ModuleKey) -> Optional[Entitlement]:
        entitlement = self._entitlements.get((organization_id, module_key))
        return entitlement.model_copy() if entitlement else None

    async def list_entitlements(self, organization_id: str) -> List[Entitlement]:
        rows = [e.model_copy() for (org, _), e in self._entitlements.items() if org == organization_id]
        return sorted(rows, key=lambda e: e.module_key.value)

    async def get_all_entitlements(self) -> List[Entitlement]:
        return sorted((e.model_copy() for e in self._entitlements.values()), key=lambda e: (e.organization_id, e.module_key.value))

    async def get_audit_history(
        self,
        organization_id: str,
        module_key: Optional[ModuleKey] = None,
        limit: int = 50,
    ) -> List[AuditRecord]:
        # Walk newest-appended first so equal timestamps keep write order.
        matching = [
            record for record in reversed(self._audit)
            if record.organization_id == organization_id
            and (module_key is None or record.module_key == module_key)
        ]
        matching.sort(key=lambda r: r.performed_at, reverse=True)
        return matching[:limit]
