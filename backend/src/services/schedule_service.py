"""
Schedule Expansion Service for Caregiver Sync

Turns a recurring daily schedule (time-of-day offsets with values, e.g. the
correction target range) into absolute date ranges clipped to a query window.
The window may span any number of calendar days; each day is anchored at its
own midnight in the requested timezone.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from models.schemas import GlucoseUnit, ProfileSnapshot, ScheduleItem, convert_glucose

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400

# Target bands narrower than this are widened so they stay visible on a chart
MINIMUM_TARGET_RANGE_MG_DL = 20.0


class ValueAlignment(str, Enum):
    """Which offset a schedule item's value is anchored to."""
    OWN_OFFSET = "own_offset"            # value applies from its own offset to the next one
    PREVIOUS_OFFSET = "previous_offset"  # value applies from the previous item's offset up to its own


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class DateRangeAndValue:
    range: DateRange
    value: Any


@dataclass(frozen=True)
class OffsetDurationAndValue:
    """One slice of a day: starts `offset` seconds after midnight."""
    offset: float
    duration: float
    value: Any

    @property
    def end_offset(self) -> float:
        return self.offset + self.duration


@dataclass(frozen=True)
class LowHighTarget:
    """Paired low/high target schedule items, keyed by the low item's offset."""
    low: ScheduleItem
    high: ScheduleItem

    @property
    def offset(self) -> float:
        return self.low.offset


def daily_periods(
    items: Sequence[Any],
    alignment: ValueAlignment = ValueAlignment.PREVIOUS_OFFSET
) -> List[OffsetDurationAndValue]:
    """
    Derive one day's worth of (offset, duration, value) slices.

    Items only need an `offset` attribute (seconds after midnight). The result
    partitions [0, 24h). With PREVIOUS_OFFSET each item's value covers the
    slice that ends at its own offset, and the last item also covers the rest
    of the day. The period before the first offset takes the first item
    (PREVIOUS_OFFSET) or wraps in the previous day's last item (OWN_OFFSET).
    """
    items = sorted(items, key=lambda item: item.offset)
    if not items:
        return []
    if len(items) == 1:
        return [OffsetDurationAndValue(offset=0.0, duration=SECONDS_PER_DAY, value=items[0])]

    periods = []
    first, last = items[0], items[-1]
    if first.offset > 0:
        wrap_value = last if alignment == ValueAlignment.OWN_OFFSET else first
        periods.append(OffsetDurationAndValue(offset=0.0, duration=first.offset, value=wrap_value))

    for index in range(1, len(items)):
        previous, current = items[index - 1], items[index]
        value = previous if alignment == ValueAlignment.OWN_OFFSET else current
        periods.append(
            OffsetDurationAndValue(
                offset=previous.offset,
                duration=current.offset - previous.offset,
                value=value
            )
        )

    periods.append(
        OffsetDurationAndValue(
            offset=last.offset,
            duration=SECONDS_PER_DAY - last.offset,
            value=last
        )
    )
    return periods


def _midnight(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min, tzinfo=moment.tzinfo)


def _next_midnight(midnight: datetime) -> datetime:
    return datetime.combine(midnight.date() + timedelta(days=1), time.min, tzinfo=midnight.tzinfo)


def split_into_days(window: DateRange) -> List[DateRange]:
    """Break a window into calendar-day sub-ranges clipped to its bounds."""
    days = []
    current = window.start
    while current < window.end:
        next_midnight = _next_midnight(_midnight(current))
        days.append(DateRange(start=current, end=min(window.end, next_midnight)))
        current = next_midnight
    return days


def expand(
    schedule: Sequence[Any],
    window: DateRange,
    alignment: ValueAlignment = ValueAlignment.PREVIOUS_OFFSET,
    tz: Optional[tzinfo] = None
) -> List[DateRangeAndValue]:
    """
    Expand a daily schedule into absolute ranges covering `window`.

    Ranges come back in chronological order, never overlap and cover the
    window exactly once: for adjacent results, previous.end == next.start.

    Args:
        schedule: Items with an `offset` attribute (seconds after midnight)
        window: Query window; may span several days
        alignment: How item values map onto the periods between offsets
        tz: Timezone whose midnights anchor the schedule (default: the window's)

    Returns:
        List of DateRangeAndValue
    """
    if window.end < window.start:
        raise ValueError("window end precedes its start")

    if tz is not None:
        window = DateRange(start=window.start.astimezone(tz), end=window.end.astimezone(tz))

    periods = daily_periods(schedule, alignment)
    result = []
    for day in split_into_days(window):
        midnight = _midnight(day.start)
        next_midnight = _next_midnight(midnight)
        for period in periods:
            value_start = midnight + timedelta(seconds=period.offset)
            if period.end_offset >= SECONDS_PER_DAY:
                value_end = next_midnight
            else:
                value_end = midnight + timedelta(seconds=period.end_offset)

            start = max(value_start, day.start)
            end = min(value_end, day.end)
            if start >= end:
                continue
            result.append(DateRangeAndValue(range=DateRange(start=start, end=end), value=period.value))

    return result


def target_ranges(
    profile: Optional[ProfileSnapshot],
    window: DateRange,
    alignment: ValueAlignment = ValueAlignment.PREVIOUS_OFFSET
) -> List[DateRangeAndValue]:
    """Correction target bands of the default profile over `window`."""
    if profile is None:
        return []
    therapy = profile.get_default_profile()
    if therapy is None:
        return []

    targets = [
        LowHighTarget(low=low, high=high)
        for low, high in zip(therapy.targetLow, therapy.targetHigh)
    ]
    return expand(targets, window, alignment=alignment, tz=profile_timezone(therapy.timezone))


def profile_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """Resolve a profile's timezone name; None when missing or unknown."""
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        logger.warning(f"Unknown profile timezone {name!r}, using the window's: {e}")
        return None


def normalized_target(
    target: LowHighTarget,
    profile_units: GlucoseUnit = GlucoseUnit.MG_DL,
    display_units: GlucoseUnit = GlucoseUnit.MG_DL
) -> Tuple[float, float]:
    """Low/high of a target in display units, widened to the minimum visible band."""
    minimum_range = convert_glucose(MINIMUM_TARGET_RANGE_MG_DL, GlucoseUnit.MG_DL, display_units)
    low = convert_glucose(target.low.value, profile_units, display_units)
    high = convert_glucose(target.high.value, profile_units, display_units)
    target_range = high - low
    if target_range < minimum_range:
        difference = minimum_range - target_range
        return low - difference / 2.0, high + difference / 2.0
    return low, high
