"""
Domain package.

Entitlement and audit models, the closed module catalogue, and the pure
access decision used by every backend.
"""

from .decision import decide
from .models import (
    AuditAction,
    AuditRecord,
    DEFAULT_AUDIT_REASONS,
    Entitlement,
    EntitlementSnapshot,
    EntitlementStatus,
    MODULE_CATALOG,
    ModuleInfo,
    ModuleKey,
    ensure_utc,
    get_available_modules,
    grant_action,
    utcnow,
)

__all__ = [
    "AuditAction",
    "AuditRecord",
    "DEFAULT_AUDIT_REASONS",
    "Entitlement",
    "EntitlementSnapshot",
    "EntitlementStatus",
    "MODULE_CATALOG",
    "ModuleInfo",
    "ModuleKey",
    "decide",
    "ensure_utc",
    "get_available_modules",
    "grant_action",
    "utcnow",
]
