"""
Looper API Endpoints for Caregiver Sync
Exposes each looper's synchronized snapshot, derived state, timeline and
remote commands.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from config import get_settings
from models.schemas import ActiveOverride, GlucoseUnit, Looper, Snapshot, Timeline
from services.looper_service import (
    LooperNotFoundError, LooperRegistry, LooperService, get_looper_registry
)
from services.remote_data_provider import CommandError
from services.schedule_service import DateRange, normalized_target, target_ranges
from services.sync_service import SyncError
from services.timeline_service import TimelineService

logger = logging.getLogger(__name__)
router = APIRouter()


class BolusRequest(BaseModel):
    amount: float = Field(..., gt=0, le=30, description="Insulin units")


class CarbsRequest(BaseModel):
    amount: float = Field(..., gt=0, le=250, description="Carbs in grams")
    absorptionHours: float = Field(default=3.0, gt=0, le=8)
    consumedAt: Optional[datetime] = None


class OverrideRequest(BaseModel):
    name: str
    durationMinutes: Optional[float] = Field(None, gt=0, description="Omit for indefinite")


class ToggleRequest(BaseModel):
    active: bool


class CommandResponse(BaseModel):
    success: bool = True
    message: str


class ActiveOverrideResponse(BaseModel):
    activeOverride: Optional[ActiveOverride] = None
    remainingMinutes: Optional[float] = None


class TargetRangeResponse(BaseModel):
    start: datetime
    end: datetime
    low: float
    high: float


def get_timeline_service() -> TimelineService:
    from services.nightscout_service import NightscoutService
    return TimelineService(NightscoutService.for_looper)


def _looper_service(registry: LooperRegistry, looper_id: str) -> LooperService:
    try:
        return registry.get(looper_id)
    except LooperNotFoundError:
        raise HTTPException(status_code=404, detail=f"Looper {looper_id} not found")


async def _run_command(description: str, command) -> CommandResponse:
    try:
        await command
    except CommandError as e:
        logger.error(f"{description} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return CommandResponse(message=f"{description} sent")


@router.get("/loopers", response_model=List[Looper])
async def list_loopers(registry: LooperRegistry = Depends(get_looper_registry)):
    """List the configured loopers (secrets are never returned)."""
    return registry.loopers()


@router.get("/loopers/{looper_id}/snapshot", response_model=Snapshot)
async def get_snapshot(looper_id: str, registry: LooperRegistry = Depends(get_looper_registry)):
    """Latest published snapshot; may be stale if no sync has completed recently."""
    return _looper_service(registry, looper_id).synchronizer.current_snapshot()


@router.post("/loopers/{looper_id}/sync", response_model=Snapshot)
async def sync_looper(looper_id: str, registry: LooperRegistry = Depends(get_looper_registry)):
    """Run a synchronization pass now (joins a pass already in flight)."""
    synchronizer = _looper_service(registry, looper_id).synchronizer
    try:
        return await synchronizer.synchronize()
    except SyncError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/loopers/{looper_id}/override", response_model=ActiveOverrideResponse)
async def get_active_override(looper_id: str, registry: LooperRegistry = Depends(get_looper_registry)):
    """Currently active override and the time it has left."""
    active_override = _looper_service(registry, looper_id).synchronizer.active_override()
    if active_override is None:
        return ActiveOverrideResponse()

    remaining = active_override.remaining(datetime.now(timezone.utc))
    return ActiveOverrideResponse(
        activeOverride=active_override,
        remainingMinutes=remaining.total_seconds() / 60 if remaining is not None else None
    )


@router.get("/loopers/{looper_id}/targets", response_model=List[TargetRangeResponse])
async def get_target_ranges(
    looper_id: str,
    hours_back: int = Query(default=6, ge=0, le=72),
    hours_ahead: int = Query(default=3, ge=0, le=24),
    registry: LooperRegistry = Depends(get_looper_registry)
):
    """Correction target bands over the chart window."""
    snapshot = _looper_service(registry, looper_id).synchronizer.current_snapshot()
    profile = snapshot.currentProfile
    therapy = profile.get_default_profile() if profile else None
    if therapy is None:
        return []

    now = datetime.now(timezone.utc)
    window = DateRange(start=now - timedelta(hours=hours_back), end=now + timedelta(hours=hours_ahead))
    display_units = GlucoseUnit(get_settings().glucose_display_units)

    result = []
    for range_and_value in target_ranges(profile, window):
        low, high = normalized_target(range_and_value.value, therapy.units, display_units)
        result.append(TargetRangeResponse(
            start=range_and_value.range.start,
            end=range_and_value.range.end,
            low=round(low, 1),
            high=round(high, 1)
        ))
    return result


@router.get("/loopers/{looper_id}/timeline", response_model=Timeline)
async def get_timeline(
    looper_id: str,
    registry: LooperRegistry = Depends(get_looper_registry),
    timeline_service: TimelineService = Depends(get_timeline_service)
):
    """Ahead-of-time display entries plus the time to ask again."""
    return await timeline_service.timeline_for_id(looper_id, registry)


# ==================== Remote Commands ====================

@router.post("/loopers/{looper_id}/commands/bolus", response_model=CommandResponse)
async def deliver_bolus(
    looper_id: str,
    request: BolusRequest,
    registry: LooperRegistry = Depends(get_looper_registry)
):
    synchronizer = _looper_service(registry, looper_id).synchronizer
    return await _run_command(f"Bolus of {request.amount}U", synchronizer.deliver_bolus(request.amount))


@router.post("/loopers/{looper_id}/commands/carbs", response_model=CommandResponse)
async def deliver_carbs(
    looper_id: str,
    request: CarbsRequest,
    registry: LooperRegistry = Depends(get_looper_registry)
):
    synchronizer = _looper_service(registry, looper_id).synchronizer
    consumed_at = request.consumedAt or datetime.now(timezone.utc)
    return await _run_command(
        f"Carbs of {request.amount}g",
        synchronizer.deliver_carbs(request.amount, timedelta(hours=request.absorptionHours), consumed_at)
    )


@router.post("/loopers/{looper_id}/commands/override", response_model=CommandResponse)
async def start_override(
    looper_id: str,
    request: OverrideRequest,
    registry: LooperRegistry = Depends(get_looper_registry)
):
    synchronizer = _looper_service(registry, looper_id).synchronizer
    duration = timedelta(minutes=request.durationMinutes) if request.durationMinutes else None
    return await _run_command(f"Override {request.name}", synchronizer.start_override(request.name, duration))


@router.post("/loopers/{looper_id}/commands/override/cancel", response_model=CommandResponse)
async def cancel_override(looper_id: str, registry: LooperRegistry = Depends(get_looper_registry)):
    synchronizer = _looper_service(registry, looper_id).synchronizer
    return await _run_command("Override cancel", synchronizer.cancel_override())


@router.post("/loopers/{looper_id}/commands/autobolus", response_model=CommandResponse)
async def activate_autobolus(
    looper_id: str,
    request: ToggleRequest,
    registry: LooperRegistry = Depends(get_looper_registry)
):
    synchronizer = _looper_service(registry, looper_id).synchronizer
    return await _run_command(f"Autobolus {'on' if request.active else 'off'}", synchronizer.activate_autobolus(request.active))


@router.post("/loopers/{looper_id}/commands/closed-loop", response_model=CommandResponse)
async def activate_closed_loop(
    looper_id: str,
    request: ToggleRequest,
    registry: LooperRegistry = Depends(get_looper_registry)
):
    synchronizer = _looper_service(registry, looper_id).synchronizer
    return await _run_command(f"Closed loop {'on' if request.active else 'off'}", synchronizer.activate_closed_loop(request.active))


@router.delete("/loopers/{looper_id}/commands", response_model=CommandResponse)
async def delete_all_commands(looper_id: str, registry: LooperRegistry = Depends(get_looper_registry)):
    synchronizer = _looper_service(registry, looper_id).synchronizer
    return await _run_command("Delete all commands", synchronizer.delete_all_commands())
