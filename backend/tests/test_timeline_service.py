"""
Tests for the timeline forecast generator and on-demand timeline service.
"""
import pytest
from datetime import timedelta

from conftest import NOW, make_reading


def _snapshot(*readings):
    from models.schemas import Snapshot
    return Snapshot(looperId="looper-1", createdAt=NOW, glucoseSamples=tuple(readings),
                    currentGlucose=readings[-1] if readings else None)


class TestForecast:
    """Dated entries built from one snapshot."""

    def test_sixty_entries_one_minute_apart(self, looper):
        from services.timeline_service import TimelineForecastGenerator

        generator = TimelineForecastGenerator()
        entries = generator.forecast(_snapshot(make_reading(10, 100), make_reading(3, 105)), NOW, looper=looper)

        assert len(entries) == 60
        assert all(entry.is_success for entry in entries)
        assert [entry.date for entry in entries[:3]] == [NOW, NOW + timedelta(minutes=1), NOW + timedelta(minutes=2)]
        assert entries[-1].date == NOW + timedelta(minutes=59)

    def test_staleness_increases(self, looper):
        from services.timeline_service import TimelineForecastGenerator

        latest = make_reading(3, 105)
        entries = TimelineForecastGenerator().forecast(_snapshot(make_reading(10, 100), latest), NOW, 60, looper)

        assert entries[0].age == NOW - latest.timestamp
        ages = [entry.age for entry in entries]
        assert all(earlier < later for earlier, later in zip(ages, ages[1:]))

    def test_entries_share_snapshot_values(self, looper):
        from services.timeline_service import TimelineForecastGenerator

        entries = TimelineForecastGenerator().forecast(
            _snapshot(make_reading(10, 100), make_reading(3, 105)), NOW, 5, looper
        )

        assert {entry.value.glucoseSample.value for entry in entries} == {105}
        assert {entry.value.lastGlucoseChange for entry in entries} == {5}
        assert entries[0].value.looper.id == "looper-1"

    def test_glucose_change_in_display_units(self, looper):
        from models.schemas import GlucoseUnit
        from services.timeline_service import TimelineForecastGenerator

        generator = TimelineForecastGenerator(display_units=GlucoseUnit.MMOL_L)
        entries = generator.forecast(_snapshot(make_reading(10, 100), make_reading(5, 118.0182)), NOW, 1, looper)

        assert entries[0].value.lastGlucoseChange == pytest.approx(1.0)
        assert entries[0].value.glucoseDisplayUnits == GlucoseUnit.MMOL_L

    def test_missing_glucose_single_error_entry(self, looper):
        from models.schemas import TimelineErrorKind
        from services.timeline_service import TimelineForecastGenerator

        entries = TimelineForecastGenerator().forecast(_snapshot(), NOW, 60, looper)

        assert len(entries) == 1
        assert not entries[0].is_success
        assert entries[0].error.kind == TimelineErrorKind.MISSING_GLUCOSE
        assert entries[0].date == NOW

    def test_sentinel_appended_after_horizon(self, looper):
        from models.schemas import TimelineErrorKind
        from services.timeline_service import TimelineForecastGenerator

        generator = TimelineForecastGenerator(append_sentinel=True)
        entries = generator.forecast(_snapshot(make_reading(3, 105)), NOW, 60, looper)

        assert len(entries) == 61
        assert entries[-1].error.kind == TimelineErrorKind.DATA_UNAVAILABLE
        assert entries[-1].date == NOW + timedelta(minutes=60)
        assert all(entry.is_success for entry in entries[:-1])

    def test_looper_defaults_from_snapshot(self):
        from services.timeline_service import TimelineForecastGenerator

        entries = TimelineForecastGenerator().forecast(_snapshot(make_reading(3, 105)), NOW, 1)
        assert entries[0].value.looper.id == "looper-1"


class TestRefreshHint:
    """When the consumer should ask again."""

    def test_next_reading_expected(self):
        from services.timeline_service import TimelineForecastGenerator

        snapshot = _snapshot(make_reading(3, 105))
        hint = TimelineForecastGenerator().next_refresh_hint(snapshot, NOW)

        # reading at t-3m, next expected at t+2m, plus one minute upload buffer
        assert hint == NOW + timedelta(minutes=3)

    def test_reading_overdue(self):
        from services.timeline_service import TimelineForecastGenerator

        snapshot = _snapshot(make_reading(12, 105))
        assert TimelineForecastGenerator().next_refresh_hint(snapshot, NOW) == NOW + timedelta(minutes=5)

    def test_no_glucose(self):
        from services.timeline_service import TimelineForecastGenerator

        assert TimelineForecastGenerator().next_refresh_hint(_snapshot(), NOW) == NOW + timedelta(minutes=5)

    def test_build(self, looper):
        from services.timeline_service import TimelineForecastGenerator

        timeline = TimelineForecastGenerator().build(_snapshot(make_reading(3, 105)), NOW, looper)

        assert len(timeline.entries) == 60
        assert timeline.refreshAt == NOW + timedelta(minutes=3)

    def test_placeholder(self):
        from models.schemas import TimelineErrorKind
        from services.timeline_service import TimelineForecastGenerator

        entry = TimelineForecastGenerator().placeholder(NOW)
        assert entry.error.kind == TimelineErrorKind.NOT_READY


class TestFromSettings:

    def test_uses_settings(self, mock_settings):
        from services.timeline_service import TimelineForecastGenerator

        mock_settings.timeline_entry_count = 30
        mock_settings.timeline_append_sentinel = True
        generator = TimelineForecastGenerator.from_settings()

        assert generator.entry_count == 30
        assert generator.append_sentinel is True
        assert generator.step == timedelta(minutes=1)


class TestTimelineService:
    """On-demand synchronization wrapped into a timeline."""

    def _service(self, provider):
        from services.sync_service import RemoteDataSynchronizer
        from services.timeline_service import TimelineForecastGenerator, TimelineService

        return TimelineService(
            provider_factory=lambda looper: provider,
            generator=TimelineForecastGenerator(),
            synchronizer_factory=lambda p, looper: RemoteDataSynchronizer(p, looper.id, now=lambda: NOW)
        )

    @pytest.mark.asyncio
    async def test_timeline(self, provider, looper):
        provider.glucose = [make_reading(10, 100), make_reading(3, 105)]

        timeline = await self._service(provider).timeline(looper, NOW)

        assert len(timeline.entries) == 60
        assert timeline.entries[0].value.glucoseSample.value == 105
        assert timeline.refreshAt == NOW + timedelta(minutes=3)

    @pytest.mark.asyncio
    async def test_sync_failure(self, provider, looper):
        from models.schemas import TimelineErrorKind

        provider.failures["glucose"] = RuntimeError("offline")

        timeline = await self._service(provider).timeline(looper, NOW)

        assert len(timeline.entries) == 1
        assert timeline.entries[0].error.kind == TimelineErrorKind.SYNC_FAILED
        assert timeline.entries[0].error.looperId == "looper-1"
        assert timeline.refreshAt == NOW + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_no_looper_configured(self, provider):
        from models.schemas import TimelineErrorKind

        timeline = await self._service(provider).timeline(None, NOW)
        assert timeline.entries[0].error.kind == TimelineErrorKind.LOOPER_NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_unknown_looper_id(self, provider, looper):
        from models.schemas import TimelineErrorKind
        from services.looper_service import LooperRegistry
        from services.sync_service import RemoteDataSynchronizer

        registry = LooperRegistry(
            [looper],
            provider_factory=lambda looper: provider,
            synchronizer_factory=lambda p, looper: RemoteDataSynchronizer(p, looper.id, now=lambda: NOW)
        )

        timeline = await self._service(provider).timeline_for_id("missing", registry, NOW)

        assert timeline.entries[0].error.kind == TimelineErrorKind.LOOPER_NOT_FOUND
        assert "missing" in timeline.entries[0].error.message

    @pytest.mark.asyncio
    async def test_known_looper_id(self, provider, looper):
        from services.looper_service import LooperRegistry
        from services.sync_service import RemoteDataSynchronizer

        provider.glucose = [make_reading(3, 105)]
        registry = LooperRegistry(
            [looper],
            provider_factory=lambda looper: provider,
            synchronizer_factory=lambda p, looper: RemoteDataSynchronizer(p, looper.id, now=lambda: NOW)
        )

        timeline = await self._service(provider).timeline_for_id(looper.id, registry, NOW)

        assert timeline.entries[0].is_success

    @pytest.mark.asyncio
    async def test_snapshot_entry(self, provider, looper):
        provider.glucose = [make_reading(3, 105)]

        entry = await self._service(provider).snapshot_entry(looper, NOW)

        assert entry.is_success
        assert entry.date == NOW
