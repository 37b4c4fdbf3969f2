# Caregiver Sync Models Package
from models.schemas import (
    GlucoseUnit,
    TrendDirection,
    TreatmentType,
    RemoteActionType,
    RemoteCommandState,
    TimelineErrorKind,
    convert_glucose,
    GlucoseReading,
    TreatmentEvent,
    CarbEntry,
    BolusEntry,
    BasalEntry,
    OverridePreset,
    TemporaryScheduleOverride,
    OverrideStatus,
    ActiveOverride,
    IOBStatus,
    COBStatus,
    LoopPrediction,
    LoopStatus,
    DeviceStatusSnapshot,
    ScheduleItem,
    TherapyProfile,
    ProfileSnapshot,
    RemoteAction,
    RemoteCommandStatus,
    RemoteCommand,
    Looper,
    Snapshot,
    TimelineValue,
    TimelineEntryError,
    TimelineEntry,
    Timeline,
)

__all__ = [
    "GlucoseUnit",
    "TrendDirection",
    "TreatmentType",
    "RemoteActionType",
    "RemoteCommandState",
    "TimelineErrorKind",
    "convert_glucose",
    "GlucoseReading",
    "TreatmentEvent",
    "CarbEntry",
    "BolusEntry",
    "BasalEntry",
    "OverridePreset",
    "TemporaryScheduleOverride",
    "OverrideStatus",
    "ActiveOverride",
    "IOBStatus",
    "COBStatus",
    "LoopPrediction",
    "LoopStatus",
    "DeviceStatusSnapshot",
    "ScheduleItem",
    "TherapyProfile",
    "ProfileSnapshot",
    "RemoteAction",
    "RemoteCommandStatus",
    "RemoteCommand",
    "Looper",
    "Snapshot",
    "TimelineValue",
    "TimelineEntryError",
    "TimelineEntry",
    "Timeline",
]
