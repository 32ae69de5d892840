"""Candidate slot generation.

Slots are produced day by day from a set of working windows read in the
owner's timezone, then filtered against busy intervals and labelled in the
caller's timezone. Intervals are half-open, so a slot that ends exactly when a
busy interval starts is still free.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Iterable, Iterator, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from booking.core.errors import ValidationError


@dataclass(frozen=True, order=True)
class Interval:
    start: datetime
    end: datetime

    def overlaps(self, other: 'Interval') -> bool:
        return overlaps(self.start, self.end, other.start, other.end)


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    timezone: str

    def as_dict(self) -> dict:
        return {
            'start': self.start.astimezone(timezone.utc).isoformat(),
            'end': self.end.astimezone(timezone.utc).isoformat(),
            'timezone': self.timezone,
        }

    def matches(self, start: datetime, end: datetime) -> bool:
        return self.start == start and self.end == end


WorkingWindows = Callable[[date], Sequence[tuple[time, time]]]


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f'Unknown timezone: {name}') from exc


def sunday_based_weekday(day: date) -> int:
    """0 for Sunday through 6 for Saturday."""
    return (day.weekday() + 1) % 7


def day_bounds(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start, end


def range_bounds(start_day: date, end_day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    return day_bounds(start_day, tz)[0], day_bounds(end_day, tz)[1]


def covering_days(start_day: date, end_day: date, tz: tzinfo, hours_tz: tzinfo) -> tuple[date, date]:
    """Owner-local days that can hold a slot starting inside the caller's range.

    UTC offsets differ by at most 26 hours, so two extra days on each side
    are enough.
    """
    if tz == hours_tz:
        return start_day, end_day
    return start_day - timedelta(days=2), end_day + timedelta(days=2)


def iterate_days(start_day: date, end_day: date) -> Iterator[date]:
    current = start_day
    while current <= end_day:
        yield current
        current += timedelta(days=1)


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    merged: list[Interval] = []
    for interval in sorted(intervals):
        if interval.start >= interval.end:
            continue
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, interval.end))
        else:
            merged.append(interval)
    return merged


class SlotSequence:
    """Lazy, restartable sequence of free slots.

    Every iteration recomputes the slots from the inputs it was built with.
    Working windows are read in ``hours_timezone_name`` (the caller's zone when
    omitted); the day range and the slot labels use ``timezone_name``.
    """

    def __init__(
        self,
        start_day: date,
        end_day: date,
        timezone_name: str,
        working_windows: WorkingWindows,
        busy: Iterable[Interval],
        duration_minutes: int,
        step_minutes: int | None = None,
        not_before: datetime | None = None,
        hours_timezone_name: str | None = None,
    ):
        if duration_minutes <= 0:
            raise ValidationError('Slot duration must be positive.')
        self.start_day = start_day
        self.end_day = end_day
        self.timezone_name = timezone_name
        self.tz = resolve_timezone(timezone_name)
        self.hours_tz = resolve_timezone(hours_timezone_name or timezone_name)
        self.working_windows = working_windows
        self.busy = merge_intervals(busy)
        self.duration = timedelta(minutes=duration_minutes)
        self.step = timedelta(minutes=step_minutes or duration_minutes)
        self.not_before = not_before

    def __iter__(self) -> Iterator[Slot]:
        first_day, last_day = covering_days(self.start_day, self.end_day, self.tz, self.hours_tz)
        for day in iterate_days(first_day, last_day):
            for slot in self._slots_for_day(day):
                if self.start_day <= slot.start.date() <= self.end_day:
                    yield slot

    def _slots_for_day(self, day: date) -> list[Slot]:
        starts: set[datetime] = set()
        for window_start, window_end in self.working_windows(day):
            current = datetime.combine(day, window_start, tzinfo=self.hours_tz)
            close = datetime.combine(day, window_end, tzinfo=self.hours_tz)
            while current + self.duration <= close:
                starts.add(current)
                current += self.step

        slots = []
        for start in sorted(starts):
            end = start + self.duration
            if self.not_before is not None and start < self.not_before:
                continue
            if self._is_busy(start, end):
                continue
            slots.append(Slot(start=start.astimezone(self.tz), end=end.astimezone(self.tz), timezone=self.timezone_name))
        return slots

    def _is_busy(self, start: datetime, end: datetime) -> bool:
        for interval in self.busy:
            if interval.start >= end:
                break
            if overlaps(start, end, interval.start, interval.end):
                return True
        return False
