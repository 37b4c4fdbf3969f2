"""
Pydantic Models/Schemas for Caregiver Sync
Defines data structures for glucose readings, treatments, device status,
profiles, remote commands and the published snapshot.
"""
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Tuple
from pydantic import BaseModel, Field
from enum import Enum


MG_DL_PER_MMOL_L = 18.0182


# ==================== Enums ====================

class GlucoseUnit(str, Enum):
    MG_DL = "mg/dL"
    MMOL_L = "mmol/L"


class TrendDirection(str, Enum):
    DOUBLE_UP = "DoubleUp"
    SINGLE_UP = "SingleUp"
    FORTY_FIVE_UP = "FortyFiveUp"
    FLAT = "Flat"
    FORTY_FIVE_DOWN = "FortyFiveDown"
    SINGLE_DOWN = "SingleDown"
    DOUBLE_DOWN = "DoubleDown"
    NOT_COMPUTABLE = "NotComputable"
    RATE_OUT_OF_RANGE = "RateOutOfRange"


class TreatmentType(str, Enum):
    BOLUS = "bolus"
    CARBS = "carbs"
    TEMP_BASAL = "temp_basal"


class RemoteActionType(str, Enum):
    BOLUS = "bolus"
    CARBS = "carbs"
    OVERRIDE = "override"
    CANCEL_OVERRIDE = "cancel_override"
    AUTOBOLUS = "autobolus"
    CLOSED_LOOP = "closed_loop"


class RemoteCommandState(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESS = "Success"
    ERROR = "Error"


class TimelineErrorKind(str, Enum):
    LOOPER_NOT_FOUND = "looper_not_found"
    LOOPER_NOT_CONFIGURED = "looper_not_configured"
    NOT_READY = "not_ready"
    MISSING_GLUCOSE = "missing_glucose"
    SYNC_FAILED = "sync_failed"
    DATA_UNAVAILABLE = "data_unavailable"


def convert_glucose(value: float, from_unit: GlucoseUnit, to_unit: GlucoseUnit) -> float:
    """Convert a glucose quantity between mg/dL and mmol/L."""
    from_unit = GlucoseUnit(from_unit)
    to_unit = GlucoseUnit(to_unit)
    if from_unit == to_unit:
        return value
    if to_unit == GlucoseUnit.MMOL_L:
        return value / MG_DL_PER_MMOL_L
    return value * MG_DL_PER_MMOL_L


# ==================== Glucose Models ====================

class GlucoseReading(BaseModel):
    """A single glucose sample from the CGM (or a predicted value)."""
    syncIdentifier: str = Field(..., description="Provider identifier or deterministic key")
    timestamp: datetime = Field(..., description="Reading timestamp")
    value: float = Field(..., description="Glucose quantity in `unit`")
    unit: GlucoseUnit = Field(default=GlucoseUnit.MG_DL)
    trend: Optional[TrendDirection] = Field(None, description="Trend direction")
    trendRate: Optional[float] = Field(None, description="Rate of change per minute")
    isDisplayOnly: bool = Field(default=False)
    wasUserEntered: bool = Field(default=False, description="Meter (fingerstick) entry")
    isCalibration: bool = Field(default=False)

    class Config:
        frozen = True

    def value_in(self, unit: GlucoseUnit) -> float:
        return convert_glucose(self.value, self.unit, unit)


# ==================== Treatment Models ====================

class TreatmentEvent(BaseModel):
    """Base for bolus, carb and basal treatments."""
    id: str = Field(..., description="Provider identifier")
    timestamp: datetime = Field(..., description="Treatment timestamp")
    type: TreatmentType
    notes: Optional[str] = None

    class Config:
        frozen = True


class CarbEntry(TreatmentEvent):
    """Carbohydrates consumed."""
    type: TreatmentType = TreatmentType.CARBS
    amount: float = Field(..., ge=0, description="Carbs in grams")
    foodType: Optional[str] = None
    absorptionMinutes: Optional[float] = Field(None, ge=0)


class BolusEntry(TreatmentEvent):
    """Insulin bolus delivered."""
    type: TreatmentType = TreatmentType.BOLUS
    amount: float = Field(..., ge=0, description="Insulin units")
    programmed: Optional[float] = Field(None, ge=0)
    automatic: bool = False


class BasalEntry(TreatmentEvent):
    """Temporary basal rate."""
    type: TreatmentType = TreatmentType.TEMP_BASAL
    rate: float = Field(..., ge=0, description="Units per hour")
    durationMinutes: float = Field(..., ge=0)
    amount: Optional[float] = Field(None, ge=0)


# ==================== Override Models ====================

class OverridePreset(BaseModel):
    """A named dosing adjustment."""
    name: str
    symbol: Optional[str] = None
    duration: Optional[timedelta] = Field(None, description="None means indefinite")
    targetLow: Optional[float] = None
    targetHigh: Optional[float] = None
    insulinNeedsScaleFactor: Optional[float] = None

    class Config:
        frozen = True


class TemporaryScheduleOverride(OverridePreset):
    """Override content as published in the profile."""
    timestamp: Optional[datetime] = None


class OverrideStatus(BaseModel):
    """Override activity as reported by the automation system."""
    timestamp: datetime
    active: bool = False
    name: Optional[str] = None
    duration: Optional[timedelta] = None
    multiplier: Optional[float] = None

    class Config:
        frozen = True


class ActiveOverride(BaseModel):
    """Reconciled override: content from the profile, activity from device status."""
    override: TemporaryScheduleOverride
    status: OverrideStatus

    class Config:
        frozen = True

    @property
    def end_date(self) -> Optional[datetime]:
        if self.status.duration is None:
            return None
        return self.status.timestamp + self.status.duration

    def remaining(self, now: datetime) -> Optional[timedelta]:
        """Time left before the override ends; None for indefinite overrides."""
        end_date = self.end_date
        if end_date is None:
            return None
        return max(end_date - now, timedelta(0))


# ==================== Device Status Models ====================

class IOBStatus(BaseModel):
    timestamp: datetime
    iob: Optional[float] = None
    basalIob: Optional[float] = None

    class Config:
        frozen = True


class COBStatus(BaseModel):
    timestamp: datetime
    cob: float = 0.0

    class Config:
        frozen = True


class LoopPrediction(BaseModel):
    """Predicted glucose curve: values spaced at the CGM interval from startDate."""
    startDate: datetime
    values: Tuple[float, ...] = ()

    class Config:
        frozen = True


class LoopStatus(BaseModel):
    name: str = "Loop"
    timestamp: datetime
    iob: Optional[IOBStatus] = None
    cob: Optional[COBStatus] = None
    predicted: Optional[LoopPrediction] = None
    recommendedBolus: Optional[float] = None
    failureReason: Optional[str] = None

    class Config:
        frozen = True


class DeviceStatusSnapshot(BaseModel):
    """Point-in-time report from the automation system."""
    id: Optional[str] = None
    device: Optional[str] = None
    timestamp: datetime
    loopStatus: Optional[LoopStatus] = None
    overrideStatus: Optional[OverrideStatus] = None

    class Config:
        frozen = True


# ==================== Profile Models ====================

class ScheduleItem(BaseModel):
    """Value of a daily schedule starting `offset` seconds after midnight."""
    offset: float = Field(..., ge=0, lt=86_400)
    value: float

    class Config:
        frozen = True


class TherapyProfile(BaseModel):
    timezone: Optional[str] = None
    units: GlucoseUnit = GlucoseUnit.MG_DL
    dia: Optional[float] = None
    basal: Tuple[ScheduleItem, ...] = ()
    carbratio: Tuple[ScheduleItem, ...] = ()
    sensitivity: Tuple[ScheduleItem, ...] = ()
    targetLow: Tuple[ScheduleItem, ...] = ()
    targetHigh: Tuple[ScheduleItem, ...] = ()

    class Config:
        frozen = True


class ProfileSnapshot(BaseModel):
    """Current profile set of the looper."""
    id: Optional[str] = None
    timestamp: datetime
    defaultProfile: str = "Default"
    store: Dict[str, TherapyProfile] = Field(default_factory=dict)
    scheduleOverride: Optional[TemporaryScheduleOverride] = None

    class Config:
        frozen = True

    def get_default_profile(self) -> Optional[TherapyProfile]:
        return self.store.get(self.defaultProfile)


# ==================== Remote Command Models ====================

class RemoteAction(BaseModel):
    """An action requested of the automation system."""
    type: RemoteActionType
    amount: Optional[float] = Field(None, description="Units for bolus, grams for carbs")
    absorptionTime: Optional[timedelta] = None
    startDate: Optional[datetime] = None
    overrideName: Optional[str] = None
    duration: Optional[timedelta] = None
    active: Optional[bool] = None
    remoteAddress: Optional[str] = None

    class Config:
        frozen = True


class RemoteCommandStatus(BaseModel):
    state: RemoteCommandState = RemoteCommandState.PENDING
    message: str = ""

    class Config:
        frozen = True


class RemoteCommand(BaseModel):
    id: str
    action: RemoteAction
    status: RemoteCommandStatus
    createdDate: datetime

    class Config:
        frozen = True


# ==================== Looper Models ====================

class Looper(BaseModel):
    """A monitored subject and the Nightscout site publishing its data."""
    id: str
    name: str
    url: str
    apiSecret: str = Field(default="", exclude=True, repr=False)

    class Config:
        frozen = True


# ==================== Snapshot ====================

class Snapshot(BaseModel):
    """Published, immutable state of one looper's remote data."""
    looperId: Optional[str] = None
    createdAt: datetime
    currentGlucose: Optional[GlucoseReading] = None
    glucoseSamples: Tuple[GlucoseReading, ...] = ()
    predictedGlucose: Tuple[GlucoseReading, ...] = ()
    carbEntries: Tuple[CarbEntry, ...] = ()
    bolusEntries: Tuple[BolusEntry, ...] = ()
    basalEntries: Tuple[BasalEntry, ...] = ()
    overridePresets: Tuple[OverridePreset, ...] = ()
    latestDeviceStatus: Optional[DeviceStatusSnapshot] = None
    currentIOB: Optional[IOBStatus] = None
    currentCOB: Optional[COBStatus] = None
    currentProfile: Optional[ProfileSnapshot] = None
    recentCommands: Tuple[RemoteCommand, ...] = ()
    recommendedBolus: Optional[float] = None
    activeOverride: Optional[ActiveOverride] = None

    class Config:
        frozen = True

    @property
    def latest_glucose(self) -> Optional[GlucoseReading]:
        return self.glucoseSamples[-1] if self.glucoseSamples else None

    def last_glucose_change(self, unit: GlucoseUnit = GlucoseUnit.MG_DL) -> Optional[float]:
        """Difference between the last two readings, in display units."""
        if len(self.glucoseSamples) < 2:
            return None
        return self.glucoseSamples[-1].value_in(unit) - self.glucoseSamples[-2].value_in(unit)


# ==================== Timeline Models ====================

class TimelineValue(BaseModel):
    """Everything an ahead-of-time rendering target needs for one entry."""
    looper: Looper
    glucoseSample: GlucoseReading
    lastGlucoseChange: Optional[float] = None
    glucoseDisplayUnits: GlucoseUnit = GlucoseUnit.MG_DL
    activeOverride: Optional[ActiveOverride] = None
    recentSamples: Tuple[GlucoseReading, ...] = ()
    currentProfile: Optional[ProfileSnapshot] = None
    date: datetime

    class Config:
        frozen = True

    def next_expected_glucose_date(self, interval: timedelta = timedelta(minutes=5)) -> datetime:
        return self.glucoseSample.timestamp + interval

    def with_date(self, date: datetime) -> "TimelineValue":
        return self.model_copy(update={"date": date})


class TimelineEntryError(BaseModel):
    kind: TimelineErrorKind
    message: str
    date: datetime
    looperId: Optional[str] = None

    class Config:
        frozen = True


class TimelineEntry(BaseModel):
    """A dated display entry: either a value or an error, never both."""
    value: Optional[TimelineValue] = None
    error: Optional[TimelineEntryError] = None

    class Config:
        frozen = True

    @classmethod
    def success(cls, value: TimelineValue) -> "TimelineEntry":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        kind: TimelineErrorKind,
        message: str,
        date: datetime,
        looper_id: Optional[str] = None
    ) -> "TimelineEntry":
        return cls(error=TimelineEntryError(kind=kind, message=message, date=date, looperId=looper_id))

    @property
    def date(self) -> datetime:
        if self.value is not None:
            return self.value.date
        return self.error.date

    @property
    def is_success(self) -> bool:
        return self.value is not None

    @property
    def age(self) -> Optional[timedelta]:
        """How old the displayed glucose is at this entry's date."""
        if self.value is None:
            return None
        return self.value.date - self.value.glucoseSample.timestamp


class Timeline(BaseModel):
    entries: List[TimelineEntry]
    refreshAt: datetime
