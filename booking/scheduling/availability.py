"""Availability sources.

Two interchangeable sources answer "what is busy" and "when is the owner
working": the connected Google Calendar, or the local weekly rule table. The
source is picked once per operation by ``select_source``. Working hours are
always read in ``OWNER_TIMEZONE``; the caller's timezone only labels output.
"""

import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from booking.calendar.google_client import (
    CalendarClientFactory,
    CalendarCredential,
    default_client_factory,
    event_busy_interval,
)
from booking.core import config
from booking.core.errors import ExternalServiceError, ValidationError
from booking.models.appointment import STATUS_CANCELLED, Appointment
from booking.models.availability import AvailabilityRule
from booking.models.user import ADMIN_ROLE, User
from booking.scheduling.slots import (
    Interval,
    Slot,
    SlotSequence,
    covering_days,
    overlaps,
    range_bounds,
    resolve_timezone,
    sunday_based_weekday,
)

logger = logging.getLogger(__name__)


def get_calendar_credential(db: Session) -> Optional[CalendarCredential]:
    admin = db.query(User).filter(
        User.role == ADMIN_ROLE,
        User.google_refresh_token.is_not(None),
        User.google_refresh_token != '',
    ).order_by(User.id.asc()).first()

    if admin is None:
        return None
    return CalendarCredential(
        refresh_token=admin.google_refresh_token,
        owner_user_id=admin.id,
        owner_email=admin.email,
    )


def local_busy_intervals(
    db: Session,
    start: datetime,
    end: datetime,
    ignore: Optional[Appointment] = None,
) -> list[Interval]:
    query = db.query(Appointment.start_time, Appointment.end_time).filter(
        Appointment.status != STATUS_CANCELLED,
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if ignore is not None:
        query = query.filter(Appointment.id != ignore.id)
    rows = query.order_by(Appointment.start_time.asc()).all()
    return [Interval(row_start, row_end) for row_start, row_end in rows]


def owner_timezone() -> ZoneInfo:
    return resolve_timezone(config.OWNER_TIMEZONE)


class AvailabilitySource:
    kind = 'base'
    slot_minutes = 60

    def __init__(self, db: Session):
        self.db = db

    async def busy_intervals(
        self,
        start: datetime,
        end: datetime,
        ignore: Optional[Appointment] = None,
    ) -> list[Interval]:
        raise NotImplementedError

    def working_windows(self, day: date) -> list[tuple[time, time]]:
        raise NotImplementedError

    async def slots(
        self,
        start_day: date,
        end_day: date,
        timezone_name: str,
        not_before: Optional[datetime] = None,
        ignore: Optional[Appointment] = None,
    ) -> SlotSequence:
        """Free slots whose start falls on ``start_day``..``end_day`` in ``timezone_name``.

        ``ignore`` is an appointment being rescheduled; its own time does not
        count as busy.
        """
        hours_tz = owner_timezone()
        first_day, last_day = covering_days(start_day, end_day, resolve_timezone(timezone_name), hours_tz)
        range_start, range_end = range_bounds(first_day, last_day, hours_tz)
        busy = await self.busy_intervals(range_start, range_end, ignore)
        return SlotSequence(
            start_day=start_day,
            end_day=end_day,
            timezone_name=timezone_name,
            working_windows=self.working_windows,
            busy=busy,
            duration_minutes=self.slot_minutes,
            not_before=not_before,
            hours_timezone_name=config.OWNER_TIMEZONE,
        )


class LocalRuleSource(AvailabilitySource):
    kind = 'local'
    slot_minutes = config.LOCAL_SLOT_MINUTES

    def __init__(self, db: Session):
        super().__init__(db)
        self._rules: Optional[dict[int, list[tuple[time, time]]]] = None

    def _load_rules(self) -> dict[int, list[tuple[time, time]]]:
        if self._rules is None:
            rules = self.db.query(AvailabilityRule).filter(
                AvailabilityRule.is_available.is_(True),
            ).order_by(AvailabilityRule.day_of_week.asc(), AvailabilityRule.start_time.asc()).all()

            grouped: dict[int, list[tuple[time, time]]] = {}
            for rule in rules:
                if rule.start_time < rule.end_time:
                    grouped.setdefault(rule.day_of_week, []).append((rule.start_time, rule.end_time))
            self._rules = grouped
        return self._rules

    def rule_windows(self, day_of_week: int) -> list[tuple[time, time]]:
        return list(self._load_rules().get(day_of_week, []))

    def working_windows(self, day: date) -> list[tuple[time, time]]:
        return self.rule_windows(sunday_based_weekday(day))

    async def busy_intervals(
        self,
        start: datetime,
        end: datetime,
        ignore: Optional[Appointment] = None,
    ) -> list[Interval]:
        return local_busy_intervals(self.db, start, end, ignore)

    def is_bookable(
        self,
        start: datetime,
        end: datetime,
        tz: Optional[tzinfo] = None,
        ignore: Optional[Appointment] = None,
    ) -> bool:
        """Direct check used when the calendar cannot be reached while booking.

        The range must sit inside one available window of its local day and
        must not overlap a live appointment.
        """
        tz = tz or owner_timezone()
        local_start = start.astimezone(tz)
        local_end = end.astimezone(tz)
        day = local_start.date()
        if local_end.date() != day:
            return False

        contained = False
        for window_start, window_end in self.working_windows(day):
            open_at = datetime.combine(day, window_start, tzinfo=tz)
            close_at = datetime.combine(day, window_end, tzinfo=tz)
            if open_at <= local_start and local_end <= close_at:
                contained = True
                break
        if not contained:
            return False

        return not any(
            overlaps(start, end, interval.start, interval.end)
            for interval in local_busy_intervals(self.db, start, end, ignore)
        )


class ExternalCalendarSource(AvailabilitySource):
    kind = 'external'
    slot_minutes = config.EXTERNAL_SLOT_MINUTES

    def __init__(
        self,
        db: Session,
        credential: CalendarCredential,
        client_factory: CalendarClientFactory = default_client_factory,
    ):
        super().__init__(db)
        self.credential = credential
        self.client_factory = client_factory

    def working_windows(self, day: date) -> list[tuple[time, time]]:
        if day.weekday() >= 5:
            return []
        return [(time(config.WORKDAY_START_HOUR, 0), time(config.WORKDAY_END_HOUR, 0))]

    async def busy_intervals(
        self,
        start: datetime,
        end: datetime,
        ignore: Optional[Appointment] = None,
    ) -> list[Interval]:
        client = self.client_factory(self.credential)
        events = await client.list_events(start, end, time_zone=config.OWNER_TIMEZONE)
        ignored_event_id = ignore.external_event_id if ignore is not None else None

        busy = []
        for event in events:
            if ignored_event_id and event.get('id') == ignored_event_id:
                continue
            interval = event_busy_interval(event, owner_timezone())
            if interval is not None:
                busy.append(Interval(*interval))

        # Local bookings whose mirroring failed are not on the calendar.
        busy.extend(local_busy_intervals(self.db, start, end, ignore))
        return sorted(busy)


def select_source(
    db: Session,
    client_factory: CalendarClientFactory = default_client_factory,
) -> AvailabilitySource:
    credential = get_calendar_credential(db)
    if credential is not None:
        return ExternalCalendarSource(db, credential, client_factory)
    return LocalRuleSource(db)


def validate_date_range(start_day: date, end_day: date) -> None:
    if end_day < start_day:
        raise ValidationError('endDate must not be before startDate.')
    if (end_day - start_day).days + 1 > config.MAX_AVAILABILITY_DAYS:
        raise ValidationError(f'Date range cannot exceed {config.MAX_AVAILABILITY_DAYS} days.')


async def list_available_slots(
    db: Session,
    start_day: date,
    end_day: date,
    timezone_name: str,
    not_before: Optional[datetime] = None,
    client_factory: CalendarClientFactory = default_client_factory,
) -> list[Slot]:
    """Read path: calendar first, local rules when the calendar fails."""
    validate_date_range(start_day, end_day)
    resolve_timezone(timezone_name)

    source = select_source(db, client_factory)
    if isinstance(source, ExternalCalendarSource):
        try:
            return list(await source.slots(start_day, end_day, timezone_name, not_before))
        except ExternalServiceError as exc:
            logger.warning('Google Calendar availability failed, falling back to local rules: %s', exc)
            source = LocalRuleSource(db)

    return list(await source.slots(start_day, end_day, timezone_name, not_before))


def default_range(today: date, start_day: Optional[date], end_day: Optional[date]) -> tuple[date, date]:
    start_day = start_day or today
    end_day = end_day or start_day + timedelta(days=config.DEFAULT_AVAILABILITY_DAYS)
    return start_day, end_day
