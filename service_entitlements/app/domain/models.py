"""
Entitlement data models.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.errors import InvalidInputError


class ModuleKey(str, Enum):
    """Product modules an organization can be entitled to."""
    ASSETS = "assets"
    WORK = "work"
    CAPACITY = "capacity"
    PLANNING = "planning"
    MONITORING = "monitoring"

    @classmethod
    def parse(cls, value) -> "ModuleKey":
        """Convert a boundary value into a module key."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidInputError(
                f"Unknown module key: {value!r}",
                details={"module_key": str(value), "valid": [m.value for m in cls]}
            ) from None


class EntitlementStatus(str, Enum):
    """Entitlement status values."""
    ACTIVE = "active"
    SUSPENDED = "suspended"


class AuditAction(str, Enum):
    """State transitions recorded in the audit trail."""
    CREATED = "created"
    UPDATED = "updated"
    REACTIVATED = "reactivated"
    SUSPENDED = "suspended"


DEFAULT_AUDIT_REASONS: Dict[AuditAction, str] = {
    AuditAction.CREATED: "Initial access granted",
    AuditAction.UPDATED: "Access period updated",
    AuditAction.REACTIVATED: "Access reactivated",
    AuditAction.SUSPENDED: "Access revoked",
}


@dataclass(frozen=True)
class ModuleInfo:
    """Catalogue entry for a module."""
    key: ModuleKey
    name: str
    description: str
    available: bool = True


MODULE_CATALOG: List[ModuleInfo] = [
    ModuleInfo(ModuleKey.ASSETS, "Assets Module",
               "Manage airport assets including stands, gates, and equipment"),
    ModuleInfo(ModuleKey.WORK, "Work Module",
               "Schedule and track maintenance work and operational tasks"),
    ModuleInfo(ModuleKey.CAPACITY, "Capacity Module",
               "Calculate and monitor airport capacity and constraints"),
    ModuleInfo(ModuleKey.PLANNING, "Planning Module",
               "Advanced planning tools for resource optimization"),
    ModuleInfo(ModuleKey.MONITORING, "Monitoring Module",
               "Real-time monitoring and alerting for operations"),
]


def get_available_modules() -> List[ModuleInfo]:
    """Modules that can currently be granted."""
    return [m for m in MODULE_CATALOG if m.available]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an instant to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EntitlementSnapshot(BaseModel):
    """Status and expiry captured before or after a mutation."""
    model_config = ConfigDict(frozen=True)

    status: EntitlementStatus
    valid_until: Optional[datetime] = None

    @field_validator("valid_until")
    @classmethod
    def normalize_valid_until(cls, value):
        return ensure_utc(value)


class Entitlement(BaseModel):
    """Access fact for one (organization, module) pair."""

    id: Optional[str] = Field(None, description="Store identity of the row")
    organization_id: str = Field(..., description="Tenant identifier")
    module_key: ModuleKey = Field(..., description="Module identifier")
    status: EntitlementStatus = Field(..., description="Current status")
    valid_until: Optional[datetime] = Field(None, description="Expiry instant; None means no expiry")
    updated_by: str = Field("system", description="Last writer")
    updated_at: datetime = Field(default_factory=utcnow, description="Last write instant")

    @field_validator("valid_until", "updated_at")
    @classmethod
    def normalize_instants(cls, value):
        return ensure_utc(value)

    def snapshot(self) -> EntitlementSnapshot:
        return EntitlementSnapshot(status=self.status, valid_until=self.valid_until)


class AuditRecord(BaseModel):
    """Immutable record of one entitlement mutation."""
    model_config = ConfigDict(frozen=True)

    id: str
    entitlement_id: str
    organization_id: str
    module_key: ModuleKey
    action: AuditAction
    previous_value: Optional[EntitlementSnapshot] = None
    new_value: EntitlementSnapshot
    performed_by: str
    performed_at: datetime
    reason: Optional[str] = None

    @field_validator("performed_at")
    @classmethod
    def normalize_performed_at(cls, value):
        return ensure_utc(value)


def grant_action(previous: Optional[Entitlement]) -> AuditAction:
    """Audit action for a grant given the row it found (if any)."""
    if previous is None:
        return AuditAction.CREATED
    if previous.status == EntitlementStatus.SUSPENDED:
        return AuditAction.REACTIVATED
    return AuditAction.UPDATED
