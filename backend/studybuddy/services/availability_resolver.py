# backend/studybuddy/services/availability_resolver.py
"""
Availability Resolver.

Turns a tutor's recurring weekly availability plus already-booked sessions
into bookable slots over a bounded window. Everything here is pure: callers
supply the rows, the window and "today", so results are deterministic.

Open ranges are wall-clock times in the tutor's timezone; booked sessions are
absolute (UTC) datetimes. Candidates are localized with pytz before the
half-open overlap test so DST days resolve correctly.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import pytz

from ..core.config import settings
from ..core.exceptions import ValidationException
from ..utils.time import as_utc


@dataclass(frozen=True)
class TimeRange:
    """An open range on one weekday, in local wall time."""

    start: time
    end: time

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValidationException(
                "Availability range must end after it starts",
                code="INVALID_TIME_RANGE",
                details={"start": self.start.isoformat(), "end": self.end.isoformat()},
            )


@dataclass(frozen=True)
class BookedInterval:
    """An existing non-cancelled session occupying ``[start, end)``."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return as_utc(self.start) < as_utc(end) and as_utc(start) < as_utc(self.end)


@dataclass(frozen=True)
class BookingSlot:
    day: date
    start: time
    end: time
    duration_minutes: int
    available: bool
    start_utc: datetime
    end_utc: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "start_time": self.start.strftime("%H:%M"),
            "end_time": self.end.strftime("%H:%M"),
            "duration_minutes": self.duration_minutes,
            "available": self.available,
            "start_utc": self.start_utc.isoformat(),
            "end_utc": self.end_utc.isoformat(),
        }


@dataclass(frozen=True)
class AvailabilityResult:
    slots: List[BookingSlot] = field(default_factory=list)
    has_availability: bool = False

    @property
    def available_slots(self) -> List[BookingSlot]:
        return [slot for slot in self.slots if slot.available]


def get_timezone(tz: Union[str, Any, None]) -> Any:
    """Resolve a timezone name (or tzinfo) with the configured default as fallback."""
    if tz is None or tz == "":
        return pytz.timezone(settings.default_timezone)
    if isinstance(tz, str):
        try:
            return pytz.timezone(tz)
        except pytz.UnknownTimeZoneError:
            return pytz.timezone(settings.default_timezone)
    return tz


def _localize(tz: Any, value: datetime) -> datetime:
    if hasattr(tz, "localize"):
        return tz.localize(value)
    return value.replace(tzinfo=tz)


def _ranges_for(availability: Mapping[int, Sequence[Any]], weekday: int) -> List[TimeRange]:
    ranges = []
    for item in availability.get(weekday, ()) or ():
        if isinstance(item, TimeRange):
            ranges.append(item)
        else:
            # ORM rows and simple tuples both carry start/end
            start, end = (item.start_time, item.end_time) if hasattr(item, "start_time") else item
            ranges.append(TimeRange(start, end))
    return sorted(ranges, key=lambda r: r.start)


def validate_slot_duration(duration_minutes: int) -> None:
    if duration_minutes not in settings.allowed_session_durations:
        raise ValidationException(
            f"Session duration must be one of {settings.allowed_session_durations} minutes",
            code="INVALID_DURATION",
            details={"duration_minutes": duration_minutes},
        )


def resolve_slots(
    tutor_availability: Mapping[int, Sequence[Any]],
    booked_sessions: Iterable[BookedInterval],
    window_start: date,
    window_days: int,
    slot_duration_minutes: int,
    *,
    today: Optional[date] = None,
    tz: Union[str, Any, None] = None,
    horizon_days: Optional[int] = None,
    step_minutes: Optional[int] = None,
) -> AvailabilityResult:
    """
    Enumerate candidate slots for each day in ``[window_start, window_start + window_days)``.

    Args:
        tutor_availability: weekday (0=Monday) -> open ranges
        booked_sessions: existing sessions of the tutor
        window_start: first day to resolve
        window_days: number of days (>= 1)
        slot_duration_minutes: one of the allowed session durations
        today: anchor for the horizon; defaults to ``window_start``
        tz: tutor timezone (name or tzinfo)

    Returns:
        AvailabilityResult with slots sorted by day then start time. A tutor
        with no configured ranges yields no slots and ``has_availability=False``.
    """
    validate_slot_duration(slot_duration_minutes)
    if window_days < 1:
        raise ValidationException(
            "window_days must be at least 1",
            code="INVALID_WINDOW",
            details={"window_days": window_days},
        )

    if not any(tutor_availability.get(day) for day in range(7)):
        return AvailabilityResult(slots=[], has_availability=False)

    horizon = settings.availability_horizon_days if horizon_days is None else horizon_days
    step = timedelta(minutes=step_minutes or settings.slot_step_minutes)
    duration = timedelta(minutes=slot_duration_minutes)
    anchor = today or window_start
    last_day = min(window_start + timedelta(days=window_days), anchor + timedelta(days=horizon))

    zone = get_timezone(tz)
    booked = list(booked_sessions)
    slots: List[BookingSlot] = []

    day = max(window_start, anchor)
    while day < last_day:
        for open_range in _ranges_for(tutor_availability, day.weekday()):
            candidate = datetime.combine(day, open_range.start)
            range_end = datetime.combine(day, open_range.end)
            while candidate + duration <= range_end:
                start_utc = as_utc(_localize(zone, candidate))
                end_utc = as_utc(_localize(zone, candidate + duration))
                available = not any(b.overlaps(start_utc, end_utc) for b in booked)
                slots.append(
                    BookingSlot(
                        day=day,
                        start=candidate.time(),
                        end=(candidate + duration).time(),
                        duration_minutes=slot_duration_minutes,
                        available=available,
                        start_utc=start_utc,
                        end_utc=end_utc,
                    )
                )
                candidate += step
        day += timedelta(days=1)

    slots.sort(key=lambda s: (s.day, s.start))
    return AvailabilityResult(slots=slots, has_availability=True)


def fits_availability(
    tutor_availability: Mapping[int, Sequence[Any]],
    start: datetime,
    end: datetime,
    tz: Union[str, Any, None] = None,
) -> bool:
    """True when ``[start, end)`` lies inside one open range on its local day."""
    zone = get_timezone(tz)
    local_start = as_utc(start).astimezone(zone)
    local_end = as_utc(end).astimezone(zone)
    if local_start.date() != local_end.date():
        return False
    return any(
        open_range.start <= local_start.time() and local_end.time() <= open_range.end
        for open_range in _ranges_for(tutor_availability, local_start.weekday())
    )
