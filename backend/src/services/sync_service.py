"""
Remote Data Synchronization Service for Caregiver Sync

Polls a RemoteDataProvider for one looper and publishes an immutable Snapshot:
- Glucose is fetched first; failure of that fetch fails the pass
- The remaining feeds are fetched concurrently, each independently fallible
- A feed only replaces its published value when the fetched value differs
- Recommended bolus and active override are recomputed after every pass
- Subscribers are notified with (old, new) whenever a pass changed anything
"""
import asyncio
import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set

from config import get_settings
from models.schemas import (
    ActiveOverride, BolusEntry, DeviceStatusSnapshot, GlucoseReading, Snapshot
)
from services.override_service import reconcile
from services.remote_data_provider import RemoteDataProvider

logger = logging.getLogger(__name__)

SnapshotSubscriber = Callable[[Snapshot, Snapshot], Any]

# Snapshot fields backed by a list feed, fetched concurrently after glucose
LIST_FEEDS = (
    "carbEntries",
    "bolusEntries",
    "basalEntries",
    "overridePresets",
    "recentCommands",
)


class SyncError(Exception):
    """The mandatory glucose fetch failed; the previous snapshot is kept."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RemoteDataSynchronizer:
    """
    Keeps a single up-to-date Snapshot for one looper.

    At most one synchronization pass runs at a time: calling synchronize()
    while a pass is in flight awaits that pass instead of starting another.
    """

    def __init__(
        self,
        provider: RemoteDataProvider,
        looper_id: Optional[str] = None,
        fetch_timeout: Optional[float] = 30.0,
        recommended_bolus_max_age: timedelta = timedelta(minutes=7),
        glucose_interval: timedelta = timedelta(minutes=5),
        now: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the synchronizer.

        Args:
            provider: Source of the remote feeds and command sink
            looper_id: Looper the snapshot belongs to
            fetch_timeout: Per-fetch timeout in seconds (None disables it)
            recommended_bolus_max_age: Oldest device status whose recommendation is shown
            glucose_interval: Spacing of predicted glucose values
            now: Clock, injectable for tests
        """
        self.provider = provider
        self.looper_id = looper_id
        self.fetch_timeout = fetch_timeout
        self.recommended_bolus_max_age = recommended_bolus_max_age
        self.glucose_interval = glucose_interval
        self._now = now

        self._snapshot = Snapshot(looperId=looper_id, createdAt=now())
        self._inflight: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._subscribers: List[SnapshotSubscriber] = []
        self._notifications: Set[asyncio.Future] = set()

    @classmethod
    def from_settings(
        cls,
        provider: RemoteDataProvider,
        looper_id: Optional[str] = None
    ) -> "RemoteDataSynchronizer":
        """Create a synchronizer from application settings."""
        settings = get_settings()
        return cls(
            provider,
            looper_id=looper_id,
            fetch_timeout=settings.fetch_timeout_seconds,
            recommended_bolus_max_age=timedelta(minutes=settings.recommended_bolus_max_age_minutes),
            glucose_interval=timedelta(minutes=settings.glucose_interval_minutes)
        )

    # ==================== Published state ====================

    def current_snapshot(self) -> Snapshot:
        """Latest published snapshot; never blocks, may be stale."""
        return self._snapshot

    @property
    def recommended_bolus(self) -> Optional[float]:
        return self._snapshot.recommendedBolus

    def active_override(self) -> Optional[ActiveOverride]:
        return self._snapshot.activeOverride

    @property
    def updating(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def subscribe(self, callback: SnapshotSubscriber) -> Callable[[], None]:
        """
        Register a callback invoked with (old, new) after each changing pass.

        The callback may be a coroutine function; it then runs as a background
        task that synchronize() does not wait for. Returns an unsubscribe function.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ==================== Synchronization ====================

    async def synchronize(self) -> Snapshot:
        """
        Run one synchronization pass, or join the pass already in flight.

        Returns:
            The snapshot published by the pass

        Raises:
            SyncError: If the glucose fetch failed
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._run_pass())
        # Shielded so a cancelled caller does not abort a pass others are awaiting
        return await asyncio.shield(self._inflight)

    async def _run_pass(self) -> Snapshot:
        previous = self._snapshot
        now = self._now()
        logger.debug(f"Sync pass started for looper {self.looper_id}")

        try:
            glucose = await self._fetch(self.provider.fetch_glucose)
        except Exception as e:
            logger.error(f"Glucose fetch failed for looper {self.looper_id}: {e}")
            raise SyncError(f"Glucose fetch failed: {e}") from e

        updates = {}
        glucose_samples = tuple(sorted(glucose or [], key=lambda reading: reading.timestamp))
        if glucose_samples != previous.glucoseSamples:
            updates["glucoseSamples"] = glucose_samples

        # Future-dated readings (clock skew) never become the current reading
        current = next((r for r in reversed(glucose_samples) if r.timestamp <= now), None)
        if current is not None and current != previous.currentGlucose:
            updates["currentGlucose"] = current

        feeds = [
            ("carbEntries", self.provider.fetch_carb_entries),
            ("bolusEntries", self.provider.fetch_bolus_entries),
            ("basalEntries", self.provider.fetch_basal_entries),
            ("overridePresets", self.provider.fetch_override_presets),
            ("latestDeviceStatus", self.provider.fetch_latest_device_status),
            ("recentCommands", self.provider.fetch_recent_commands),
            ("currentProfile", self.provider.fetch_current_profile),
        ]
        results = await asyncio.gather(
            *(self._fetch(fetch) for _, fetch in feeds),
            return_exceptions=True
        )

        for (name, _), result in zip(feeds, results):
            if isinstance(result, Exception):
                logger.warning(f"Fetch of {name} failed for looper {self.looper_id}, keeping previous value: {result!r}")
                continue
            if isinstance(result, BaseException):
                raise result
            self._apply_feed(name, result, previous, updates)

        merged = previous.model_copy(update=updates)
        recommended_bolus = self.valid_recommended_bolus(
            merged.latestDeviceStatus, merged.bolusEntries, now
        )
        if recommended_bolus != previous.recommendedBolus:
            updates["recommendedBolus"] = recommended_bolus

        active_override = reconcile(merged.latestDeviceStatus, merged.currentProfile, now)
        if active_override != previous.activeOverride:
            updates["activeOverride"] = active_override

        if not updates:
            logger.debug(f"Sync pass for looper {self.looper_id}: no changes")
            return previous

        updates["createdAt"] = now
        snapshot = previous.model_copy(update=updates)
        self._snapshot = snapshot
        logger.debug(f"Sync pass for looper {self.looper_id} updated: {sorted(updates)}")
        self._notify(previous, snapshot)
        return snapshot

    async def _fetch(self, fetch: Callable[[], Awaitable[Any]]) -> Any:
        if self.fetch_timeout is None:
            return await fetch()
        return await asyncio.wait_for(fetch(), timeout=self.fetch_timeout)

    def _apply_feed(self, name: str, result: Any, previous: Snapshot, updates: dict) -> None:
        if name in LIST_FEEDS:
            value = tuple(result or ())
            if value != getattr(previous, name):
                updates[name] = value
        elif name == "currentProfile":
            if result != previous.currentProfile:
                updates["currentProfile"] = result
        elif name == "latestDeviceStatus":
            self._apply_device_status(result, previous, updates)

    def _apply_device_status(
        self,
        device_status: Optional[DeviceStatusSnapshot],
        previous: Snapshot,
        updates: dict
    ) -> None:
        if device_status is None:
            return

        latest = previous.latestDeviceStatus
        if latest is None or latest.timestamp != device_status.timestamp:
            updates["latestDeviceStatus"] = device_status

        loop_status = device_status.loopStatus
        if loop_status is not None:
            if loop_status.iob is not None and loop_status.iob != previous.currentIOB:
                updates["currentIOB"] = loop_status.iob
            if loop_status.cob is not None and loop_status.cob != previous.currentCOB:
                updates["currentCOB"] = loop_status.cob

        predicted = self.predicted_glucose(device_status)
        if predicted != previous.predictedGlucose:
            updates["predictedGlucose"] = predicted

    def _notify(self, old: Snapshot, new: Snapshot) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(old, new)
            except Exception as e:
                logger.error(f"Snapshot subscriber failed: {e}")
                continue
            if inspect.isawaitable(result):
                # Runs outside the pass; synchronize() never waits on subscribers
                task = asyncio.ensure_future(result)
                self._notifications.add(task)
                task.add_done_callback(self._notification_done)

    def _notification_done(self, task: asyncio.Future) -> None:
        self._notifications.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Snapshot subscriber failed: {error}")

    async def wait_for_subscribers(self) -> None:
        """Wait until every async subscriber call scheduled so far has finished."""
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    # ==================== Derived values ====================

    def valid_recommended_bolus(
        self,
        device_status: Optional[DeviceStatusSnapshot],
        bolus_entries: Sequence[BolusEntry],
        now: datetime
    ) -> Optional[float]:
        """
        The device status recommendation, if it is still actionable.

        Rejected when not positive, when the device status is older than the
        allowed age, or when a bolus was delivered at or after the status.
        """
        if device_status is None or device_status.loopStatus is None:
            return None

        recommended_bolus = device_status.loopStatus.recommendedBolus
        if recommended_bolus is None or recommended_bolus <= 0.0:
            return None

        if now - device_status.timestamp > self.recommended_bolus_max_age:
            return None

        past_boluses = [entry for entry in bolus_entries if entry.timestamp < now]
        if past_boluses:
            latest_bolus = max(past_boluses, key=lambda entry: entry.timestamp)
            if latest_bolus.timestamp >= device_status.timestamp:
                # A bolus after the recommendation already covers it
                return None

        return recommended_bolus

    def predicted_glucose(self, device_status: DeviceStatusSnapshot) -> tuple:
        """Expand the device status prediction into dated readings."""
        loop_status = device_status.loopStatus
        prediction = loop_status.predicted if loop_status else None
        if prediction is None:
            return ()

        samples = []
        for index, value in enumerate(prediction.values):
            date = prediction.startDate + index * self.glucose_interval
            samples.append(
                GlucoseReading(
                    syncIdentifier=f"{self.looper_id}:{int(date.timestamp())}",
                    timestamp=date,
                    value=float(value)
                )
            )
        return tuple(samples)

    async def fetch_active_override_status(self) -> Optional[ActiveOverride]:
        """Fetch device status and profile fresh and reconcile them, without publishing."""
        device_status, profile = await asyncio.gather(
            self._fetch(self.provider.fetch_latest_device_status),
            self._fetch(self.provider.fetch_current_profile)
        )
        return reconcile(device_status, profile, self._now())

    # ==================== Periodic polling ====================

    def start_periodic_sync(self, interval: float) -> None:
        """Poll in the background every `interval` seconds until stop()."""
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._periodic_task = asyncio.create_task(self._poll(interval))
        logger.info(f"Periodic sync started for looper {self.looper_id} every {interval}s")

    async def _poll(self, interval: float) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            try:
                await self.synchronize()
            except SyncError as e:
                logger.error(f"Periodic sync failed for looper {self.looper_id}: {e}")
            except Exception as e:
                logger.error(f"Unexpected periodic sync error for looper {self.looper_id}: {e}")

            # Ticks that elapsed while the pass ran are coalesced, not queued
            now = loop.time()
            next_tick += interval
            while next_tick <= now:
                next_tick += interval
            await asyncio.sleep(next_tick - now)

    async def stop(self) -> None:
        """Stop background polling."""
        task, self._periodic_task = self._periodic_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Periodic sync stopped for looper {self.looper_id}")

    # ==================== Remote commands ====================

    async def check_auth(self) -> None:
        await self.provider.check_auth()

    async def deliver_bolus(self, amount_in_units: float) -> None:
        await self.provider.deliver_bolus(amount_in_units)

    async def deliver_carbs(
        self,
        amount_in_grams: float,
        absorption_time: timedelta,
        consumed_date: datetime
    ) -> None:
        await self.provider.deliver_carbs(amount_in_grams, absorption_time, consumed_date)

    async def start_override(self, override_name: str, duration: Optional[timedelta]) -> None:
        await self.provider.start_override(override_name, duration)

    async def cancel_override(self) -> None:
        await self.provider.cancel_override()

    async def activate_autobolus(self, activate: bool) -> None:
        await self.provider.activate_autobolus(activate)

    async def activate_closed_loop(self, activate: bool) -> None:
        await self.provider.activate_closed_loop(activate)

    async def delete_all_commands(self) -> None:
        await self.provider.delete_all_commands()
