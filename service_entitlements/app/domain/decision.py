"""
Access decision for a loaded entitlement.

Kept free of I/O so every store, the cache layer and any in-process caller
holding an ``Entitlement`` (or its snapshot) answer "has access" the same way.
"""

from datetime import datetime
from typing import Optional, Union

from .models import Entitlement, EntitlementSnapshot, EntitlementStatus, ensure_utc, utcnow


def decide(
    entitlement: Optional[Union[Entitlement, EntitlementSnapshot]],
    now: Optional[datetime] = None,
) -> bool:
    """Return whether ``entitlement`` grants access at ``now`` (default: current UTC time)."""
    if entitlement is None:
        return False

    if entitlement.status != EntitlementStatus.ACTIVE:
        return False

    if entitlement.valid_until is not None:
        moment = ensure_utc(now) if now is not None else utcnow()
        # Expiry is exclusive of the instant itself: valid_until == now still grants.
        if entitlement.valid_until < moment:
            return False

    return True
