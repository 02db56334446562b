"""
Maintenance window evaluation for the degraded directory-only tier.

A tenant auto-downgraded to the degraded tier keeps operating in a
maintenance window until its trial_ends_at boundary passes. After that it
is frozen (read-only). No boundary means the window never closes.
"""

from datetime import datetime
from typing import Optional

from tenant_access.entitlements.models import (
    DIRECTORY_ONLY_TIER,
    MaintenanceState,
    SubscriptionStatus,
)


def is_inactive(status: Optional[str]) -> bool:
    """True when the raw subscription status is canceled or expired."""
    return SubscriptionStatus.normalize(status) in (
        SubscriptionStatus.CANCELED.value,
        SubscriptionStatus.EXPIRED.value,
    )


def is_in_maintenance_window(
    tier: Optional[str],
    trial_ends_at: Optional[datetime],
    now: datetime,
    degraded_tier: str = DIRECTORY_ONLY_TIER,
) -> bool:
    if tier != degraded_tier:
        return False
    return trial_ends_at is None or now < trial_ends_at


def evaluate_maintenance(
    tier: Optional[str],
    status: Optional[str],
    trial_ends_at: Optional[datetime],
    now: datetime,
    degraded_tier: str = DIRECTORY_ONLY_TIER,
) -> Optional[MaintenanceState]:
    """
    Split the degraded tier into maintenance and freeze.

    Returns None for any other tier. The split depends only on the tier and
    the time boundary; ``status`` is accepted for callers that have it but
    does not change the result.
    """
    if tier != degraded_tier:
        return None

    if is_in_maintenance_window(tier, trial_ends_at, now, degraded_tier):
        return MaintenanceState.MAINTENANCE
    return MaintenanceState.FREEZE
