"""
Override Reconciliation for Caregiver Sync

Nightscout exposes the current override in three places:
1. DeviceStatus.overrideStatus: used by the Nightscout Loop plugin (pill view).
   It is only refreshed when Loop runs, so it can lag behind reality.
2. Profile.settings.scheduleOverride: carries the override content (name,
   targets, insulin needs) but is not cleared when the duration runs out.
3. Override treatment entries: used by the Nightscout ticker tape.

The device status decides whether an override is active and the profile
supplies what it is. Override entries are not consulted: an old indefinite
override can fall outside the treatment lookback window, so their absence
does not prove that nothing is active.
"""
from datetime import datetime, timezone
from typing import Optional

from models.schemas import ActiveOverride, DeviceStatusSnapshot, ProfileSnapshot


def reconcile(
    device_status: Optional[DeviceStatusSnapshot],
    profile: Optional[ProfileSnapshot],
    now: Optional[datetime] = None
) -> Optional[ActiveOverride]:
    """
    Return the active override, or None when the sources do not agree on one.

    Args:
        device_status: Latest device status from the automation system
        profile: Current profile snapshot
        now: Evaluation time (default: current UTC time)

    Returns:
        ActiveOverride pairing the profile override with the device status
    """
    now = now or datetime.now(timezone.utc)

    override_status = device_status.overrideStatus if device_status else None
    if override_status is None or not override_status.active:
        return None

    if override_status.duration is not None:
        if override_status.timestamp + override_status.duration <= now:
            return None

    override = profile.scheduleOverride if profile else None
    if override is None:
        return None

    return ActiveOverride(override=override, status=override_status)
