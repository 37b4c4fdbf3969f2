"""
Timeline Forecast Service for Caregiver Sync

Rendering targets such as widgets and watch complications cannot query on
demand; they are handed a batch of future-dated entries up front and a time
at which to ask again. Every entry of a batch shows the same synchronized
data, only its date (and so the displayed staleness) advances.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from config import get_settings
from models.schemas import (
    GlucoseUnit, Looper, Snapshot, Timeline, TimelineEntry,
    TimelineErrorKind, TimelineValue
)
from services.looper_service import LooperRegistry
from services.remote_data_provider import RemoteDataProvider
from services.sync_service import RemoteDataSynchronizer

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Looper], RemoteDataProvider]

ERROR_MESSAGES = {
    TimelineErrorKind.LOOPER_NOT_FOUND: "The looper for this display was not found.",
    TimelineErrorKind.LOOPER_NOT_CONFIGURED: "No looper is configured for this display.",
    TimelineErrorKind.NOT_READY: "The display is not ready. Wait a few minutes and try again.",
    TimelineErrorKind.MISSING_GLUCOSE: "Missing glucose",
    TimelineErrorKind.SYNC_FAILED: "Unable to load remote data",
    TimelineErrorKind.DATA_UNAVAILABLE: "Data unavailable",
}


class TimelineForecastGenerator:
    """Projects one synchronized snapshot into dated display entries."""

    def __init__(
        self,
        entry_count: int = 60,
        step: timedelta = timedelta(minutes=1),
        glucose_interval: timedelta = timedelta(minutes=5),
        upload_buffer: timedelta = timedelta(minutes=1),
        default_refresh: timedelta = timedelta(minutes=5),
        append_sentinel: bool = False,
        display_units: GlucoseUnit = GlucoseUnit.MG_DL
    ):
        """
        Args:
            entry_count: Entries per forecast (60 one-minute steps = one hour)
            step: Spacing between entry dates
            glucose_interval: Expected time between CGM readings
            upload_buffer: Slack added to the next expected reading for upload latency
            default_refresh: Refresh delay when no new reading is expected yet
            append_sentinel: Append a trailing "data unavailable" entry after the horizon
            display_units: Units used for the glucose change
        """
        self.entry_count = entry_count
        self.step = step
        self.glucose_interval = glucose_interval
        self.upload_buffer = upload_buffer
        self.default_refresh = default_refresh
        self.append_sentinel = append_sentinel
        self.display_units = display_units

    @classmethod
    def from_settings(cls) -> "TimelineForecastGenerator":
        """Create generator from application settings."""
        settings = get_settings()
        return cls(
            entry_count=settings.timeline_entry_count,
            step=timedelta(minutes=settings.timeline_step_minutes),
            glucose_interval=timedelta(minutes=settings.glucose_interval_minutes),
            upload_buffer=timedelta(minutes=settings.timeline_upload_buffer_minutes),
            default_refresh=timedelta(minutes=settings.timeline_default_refresh_minutes),
            append_sentinel=settings.timeline_append_sentinel,
            display_units=GlucoseUnit(settings.glucose_display_units)
        )

    def timeline_value(self, looper: Looper, snapshot: Snapshot, now: datetime) -> Optional[TimelineValue]:
        """Display value for the latest reading, or None without glucose."""
        latest = snapshot.latest_glucose
        if latest is None:
            return None
        return TimelineValue(
            looper=looper,
            glucoseSample=latest,
            lastGlucoseChange=snapshot.last_glucose_change(self.display_units),
            glucoseDisplayUnits=self.display_units,
            activeOverride=snapshot.activeOverride,
            recentSamples=snapshot.glucoseSamples,
            currentProfile=snapshot.currentProfile,
            date=now
        )

    def forecast(
        self,
        snapshot: Snapshot,
        now: datetime,
        count: Optional[int] = None,
        looper: Optional[Looper] = None
    ) -> List[TimelineEntry]:
        """
        Build `count` entries dated now, now + step, ...

        Without any glucose reading a single MISSING_GLUCOSE failure entry
        dated `now` is returned instead.
        """
        count = self.entry_count if count is None else count
        looper = looper or Looper(id=snapshot.looperId or "", name="", url="")

        value = self.timeline_value(looper, snapshot, now)
        if value is None:
            return [self.failure_entry(TimelineErrorKind.MISSING_GLUCOSE, now, looper.id)]

        entries = [
            TimelineEntry.success(value.with_date(now + index * self.step))
            for index in range(count)
        ]
        if self.append_sentinel:
            entries.append(
                self.failure_entry(TimelineErrorKind.DATA_UNAVAILABLE, now + count * self.step, looper.id)
            )
        return entries

    def next_refresh_hint(self, snapshot: Snapshot, now: datetime) -> datetime:
        """When the consumer should synchronize again."""
        latest = snapshot.latest_glucose
        if latest is not None:
            next_expected_reading = latest.timestamp + self.glucose_interval
            if next_expected_reading > now:
                return next_expected_reading + self.upload_buffer
        return now + self.default_refresh

    def build(self, snapshot: Snapshot, now: datetime, looper: Optional[Looper] = None) -> Timeline:
        return Timeline(
            entries=self.forecast(snapshot, now, looper=looper),
            refreshAt=self.next_refresh_hint(snapshot, now)
        )

    def failure_entry(
        self,
        kind: TimelineErrorKind,
        date: datetime,
        looper_id: Optional[str] = None,
        message: Optional[str] = None
    ) -> TimelineEntry:
        return TimelineEntry.failure(kind, message or ERROR_MESSAGES[kind], date, looper_id)

    def failure_timeline(
        self,
        kind: TimelineErrorKind,
        now: datetime,
        looper_id: Optional[str] = None,
        message: Optional[str] = None
    ) -> Timeline:
        return Timeline(
            entries=[self.failure_entry(kind, now, looper_id, message)],
            refreshAt=now + self.default_refresh
        )

    def placeholder(self, now: Optional[datetime] = None) -> TimelineEntry:
        return self.failure_entry(TimelineErrorKind.NOT_READY, now or datetime.now(timezone.utc))


class TimelineService:
    """Synchronizes a looper on demand and turns the result into a timeline."""

    def __init__(
        self,
        provider_factory: ProviderFactory,
        generator: Optional[TimelineForecastGenerator] = None,
        synchronizer_factory: Optional[Callable[[RemoteDataProvider, Looper], RemoteDataSynchronizer]] = None
    ):
        self.provider_factory = provider_factory
        self.generator = generator or TimelineForecastGenerator.from_settings()
        self.synchronizer_factory = synchronizer_factory or (
            lambda provider, looper: RemoteDataSynchronizer.from_settings(provider, looper.id)
        )

    async def _synchronized_snapshot(self, looper: Looper) -> Snapshot:
        synchronizer = self.synchronizer_factory(self.provider_factory(looper), looper)
        return await synchronizer.synchronize()

    async def timeline(self, looper: Optional[Looper], now: Optional[datetime] = None) -> Timeline:
        """Fresh timeline for `looper`; any failure yields a single error entry."""
        now = now or datetime.now(timezone.utc)
        if looper is None:
            return self.generator.failure_timeline(TimelineErrorKind.LOOPER_NOT_CONFIGURED, now)

        try:
            snapshot = await self._synchronized_snapshot(looper)
        except Exception as e:
            logger.error(f"Timeline sync failed for looper {looper.id}: {e}")
            return self.generator.failure_timeline(
                TimelineErrorKind.SYNC_FAILED, now, looper.id, message=str(e)
            )
        return self.generator.build(snapshot, now, looper=looper)

    async def timeline_for_id(
        self,
        looper_id: Optional[str],
        registry: LooperRegistry,
        now: Optional[datetime] = None
    ) -> Timeline:
        """Resolve a configured looper by id, then build its timeline."""
        now = now or datetime.now(timezone.utc)
        if looper_id is None:
            return self.generator.failure_timeline(TimelineErrorKind.LOOPER_NOT_CONFIGURED, now)

        looper = registry.find_looper(looper_id)
        if looper is None:
            message = f"The looper for this display was not found ({looper_id})."
            return self.generator.failure_timeline(TimelineErrorKind.LOOPER_NOT_FOUND, now, looper_id, message)
        return await self.timeline(looper, now)

    async def snapshot_entry(self, looper: Optional[Looper], now: Optional[datetime] = None) -> TimelineEntry:
        """Single current entry, for targets that render one frame."""
        now = now or datetime.now(timezone.utc)
        if looper is None:
            return self.generator.failure_entry(TimelineErrorKind.LOOPER_NOT_CONFIGURED, now)

        try:
            snapshot = await self._synchronized_snapshot(looper)
        except Exception as e:
            logger.error(f"Snapshot entry sync failed for looper {looper.id}: {e}")
            return self.generator.failure_entry(TimelineErrorKind.SYNC_FAILED, now, looper.id, message=str(e))

        entries = self.generator.forecast(snapshot, now, count=1, looper=looper)
        return entries[0]
