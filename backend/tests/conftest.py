"""
Pytest configuration and fixtures for Caregiver Sync tests.
"""
import pytest
import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

# Add src to path
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from models.schemas import (
    BolusEntry, DeviceStatusSnapshot, GlucoseReading, LoopPrediction, LoopStatus,
    Looper, OverrideStatus, ProfileSnapshot, ScheduleItem, TemporaryScheduleOverride,
    TherapyProfile
)
from services.remote_data_provider import RemoteDataProvider


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _copy(value):
    """Fresh but equal objects, like a provider decoding the same payload twice."""
    if isinstance(value, list):
        return [item.model_copy() for item in value]
    if value is not None:
        return value.model_copy()
    return None


class FakeProvider(RemoteDataProvider):
    """In-memory provider with per-feed failures and delays."""

    def __init__(self):
        self.glucose = []
        self.carb_entries = []
        self.bolus_entries = []
        self.basal_entries = []
        self.override_presets = []
        self.device_status = None
        self.recent_commands = []
        self.profile = None

        self.failures = {}
        self.delays = {}
        self.calls = defaultdict(int)
        self.sent = []

    async def _feed(self, name, value):
        self.calls[name] += 1
        if name in self.delays:
            await asyncio.sleep(self.delays[name])
        if name in self.failures:
            raise self.failures[name]
        return _copy(value)

    async def fetch_glucose(self):
        return await self._feed("glucose", self.glucose)

    async def fetch_carb_entries(self):
        return await self._feed("carbEntries", self.carb_entries)

    async def fetch_bolus_entries(self):
        return await self._feed("bolusEntries", self.bolus_entries)

    async def fetch_basal_entries(self):
        return await self._feed("basalEntries", self.basal_entries)

    async def fetch_override_presets(self):
        return await self._feed("overridePresets", self.override_presets)

    async def fetch_latest_device_status(self):
        return await self._feed("latestDeviceStatus", self.device_status)

    async def fetch_recent_commands(self):
        return await self._feed("recentCommands", self.recent_commands)

    async def fetch_current_profile(self):
        return await self._feed("currentProfile", self.profile)

    async def _command(self, name, *args):
        if name in self.failures:
            raise self.failures[name]
        self.sent.append((name, args))

    async def deliver_bolus(self, amount_in_units):
        await self._command("deliver_bolus", amount_in_units)

    async def deliver_carbs(self, amount_in_grams, absorption_time, consumed_date):
        await self._command("deliver_carbs", amount_in_grams, absorption_time, consumed_date)

    async def start_override(self, override_name, duration):
        await self._command("start_override", override_name, duration)

    async def cancel_override(self):
        await self._command("cancel_override")

    async def activate_autobolus(self, activate):
        await self._command("activate_autobolus", activate)

    async def activate_closed_loop(self, activate):
        await self._command("activate_closed_loop", activate)

    async def delete_all_commands(self):
        await self._command("delete_all_commands")


def make_reading(minutes_ago: float, value: float, now: datetime = NOW) -> GlucoseReading:
    timestamp = now - timedelta(minutes=minutes_ago)
    return GlucoseReading(
        syncIdentifier=f"sgv-{int(timestamp.timestamp())}",
        timestamp=timestamp,
        value=value,
        trend="Flat"
    )


def make_bolus(minutes_ago: float, amount: float = 1.0, now: datetime = NOW) -> BolusEntry:
    timestamp = now - timedelta(minutes=minutes_ago)
    return BolusEntry(id=f"bolus-{int(timestamp.timestamp())}", timestamp=timestamp, amount=amount)


def make_device_status(
    minutes_ago: float,
    recommended_bolus: float = None,
    override_status: OverrideStatus = None,
    predicted=None,
    now: datetime = NOW
) -> DeviceStatusSnapshot:
    timestamp = now - timedelta(minutes=minutes_ago)
    return DeviceStatusSnapshot(
        id=f"ds-{int(timestamp.timestamp())}",
        timestamp=timestamp,
        loopStatus=LoopStatus(
            timestamp=timestamp,
            recommendedBolus=recommended_bolus,
            predicted=LoopPrediction(startDate=timestamp, values=predicted) if predicted else None
        ),
        overrideStatus=override_status
    )


def make_profile(schedule_override: TemporaryScheduleOverride = None, now: datetime = NOW) -> ProfileSnapshot:
    therapy = TherapyProfile(
        targetLow=[ScheduleItem(offset=0, value=100), ScheduleItem(offset=8 * 3600, value=90)],
        targetHigh=[ScheduleItem(offset=0, value=110), ScheduleItem(offset=8 * 3600, value=100)],
    )
    return ProfileSnapshot(
        timestamp=now - timedelta(days=1),
        defaultProfile="Default",
        store={"Default": therapy},
        scheduleOverride=schedule_override
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def looper():
    return Looper(id="looper-1", name="Jamie", url="https://ns.example.com", apiSecret="secret")


@pytest.fixture
def exercise_override():
    return TemporaryScheduleOverride(
        name="Exercise",
        symbol="🏃",
        duration=timedelta(hours=1),
        targetLow=140,
        targetHigh=160,
        insulinNeedsScaleFactor=0.5
    )


@pytest.fixture
def mock_settings():
    """Mock application settings."""
    settings = MagicMock()
    settings.fetch_timeout_seconds = 5.0
    settings.recommended_bolus_max_age_minutes = 7
    settings.glucose_interval_minutes = 5
    settings.timeline_entry_count = 60
    settings.timeline_step_minutes = 1
    settings.timeline_upload_buffer_minutes = 1
    settings.timeline_default_refresh_minutes = 5
    settings.timeline_append_sentinel = False
    settings.glucose_display_units = "mg/dL"
    settings.nightscout_lookback_hours = 24
    settings.nightscout_max_count = 1000
    settings.looper_configs = []
    with patch("services.sync_service.get_settings", return_value=settings), \
            patch("services.timeline_service.get_settings", return_value=settings), \
            patch("services.looper_service.get_settings", return_value=settings), \
            patch("services.nightscout_service.get_settings", return_value=settings):
        yield settings
