"""
Backend contract shared by every entitlement store.
"""

from abc import abstractmethod
from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from ..domain.models import AuditRecord, Entitlement, ModuleKey


@runtime_checkable
class EntitlementBackend(Protocol):
    """Operations the service facade needs from its backend.

    Implemented by the PostgreSQL store, the in-memory store and the cached
    store that wraps either of them.
    """

    @abstractmethod
    async def start(self) -> None:
        """Acquire connections."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Release connections."""
        ...

    @abstractmethod
    async def health_check(self) -> dict:
        """Return dependency name -> "ok" | "error"."""
        ...

    @abstractmethod
    async def has_access(self, organization_id: str, module_key: ModuleKey) -> bool:
        ...

    @abstractmethod
    async def grant_access(
        self,
        organization_id: str,
        module_key: ModuleKey,
        valid_until: Optional[datetime] = None,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        ...

    @abstractmethod
    async def revoke_access(
        self,
        organization_id: str,
        module_key: ModuleKey,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Entitlement:
        ...

    @abstractmethod
    async def list_entitlements(self, organization_id: str) -> List[Entitlement]:
        ...

    @abstractmethod
    async def get_entitlement(self, organization_id: str, module_key: ModuleKey) -> Optional[Entitlement]:
        ...

    @abstractmethod
    async def get_all_entitlements(self) -> List[Entitlement]:
        ...

    @abstractmethod
    async def get_audit_history(
        self,
        organization_id: str,
        module_key: Optional[ModuleKey] = None,
        limit: int = 50,
    ) -> List[AuditRecord]:
        ...
