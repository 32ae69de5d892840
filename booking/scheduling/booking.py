"""Booking, rescheduling, cancellation and admin status changes.

The availability check and the insert run under one process-wide lock so two
requests for the same slot cannot both pass validation. The partial unique
index on live ``start_time`` values catches anything that slips past it.
Booking weeks and working days are the owner's, in ``OWNER_TIMEZONE``.
"""

import asyncio
import logging
from datetime import datetime, timedelta, tzinfo
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from booking.calendar.google_client import CalendarClientFactory, CalendarCredential, default_client_factory
from booking.core import config
from booking.core.errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from booking.database import utcnow
from booking.models.appointment import (
    APPOINTMENT_STATUSES,
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    Appointment,
)
from booking.models.user import User
from booking.notifications.notifier import (
    BOOKING_CONFIRMATION,
    CANCELLATION,
    STATUS_UPDATE,
    Notifier,
    notify,
)
from booking.scheduling.availability import (
    AvailabilitySource,
    ExternalCalendarSource,
    LocalRuleSource,
    get_calendar_credential,
    local_busy_intervals,
    owner_timezone,
    select_source,
)
from booking.scheduling.reminders import ReminderScheduler
from booking.scheduling.results import CancellationResult
from booking.scheduling.slots import day_bounds, resolve_timezone, sunday_based_weekday

logger = logging.getLogger(__name__)

STATUS_LINE_PREFIX = 'Status: '
SLOT_TAKEN = 'Selected time is not available.'
HELD_BY_ANOTHER = 'Another appointment already holds this time.'

_booking_lock = asyncio.Lock()


def week_bounds(moment: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    """Sunday 00:00 to the following Sunday 00:00, local to ``tz``."""
    local_day = moment.astimezone(tz).date()
    sunday = local_day - timedelta(days=sunday_based_weekday(local_day))
    return day_bounds(sunday, tz)[0], day_bounds(sunday + timedelta(days=6), tz)[1]


def remote_description(description: Optional[str], status: str) -> str:
    return f"{description or ''}\n{STATUS_LINE_PREFIX}{status}"


def strip_status_line(description: Optional[str]) -> str:
    """Drop the status line appended by ``remote_description``."""
    description = description or ''
    head, sep, tail = description.rpartition('\n')
    if sep and tail.startswith(STATUS_LINE_PREFIX) and tail[len(STATUS_LINE_PREFIX):] in APPOINTMENT_STATUSES:
        return head
    return description


def remote_times(appointment: Appointment) -> dict:
    tz = owner_timezone()
    return {
        'start': {'dateTime': appointment.start_time.astimezone(tz).isoformat(), 'timeZone': config.OWNER_TIMEZONE},
        'end': {'dateTime': appointment.end_time.astimezone(tz).isoformat(), 'timeZone': config.OWNER_TIMEZONE},
    }


class BookingService:
    def __init__(
        self,
        db: Session,
        notifier: Notifier,
        client_factory: CalendarClientFactory = default_client_factory,
    ):
        self.db = db
        self.notifier = notifier
        self.client_factory = client_factory
        self.reminders = ReminderScheduler(db, notifier)

    async def book(
        self,
        user: User,
        title: str,
        description: Optional[str],
        start: datetime,
        end: datetime,
        timezone_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        title, start, end = self._normalize(title, start, end, timezone_name)
        now = now or utcnow()
        self._check_lead_time(start, now)

        async with _booking_lock:
            self._check_weekly_limit(user, start)

            source = select_source(self.db, self.client_factory)
            if not await self._is_available(source, start, end):
                raise ConflictError(SLOT_TAKEN)

            appointment = Appointment(
                user_id=user.id,
                title=title,
                description=description or '',
                start_time=start,
                end_time=end,
                status=STATUS_CONFIRMED,
            )
            self.db.add(appointment)
            self._commit(SLOT_TAKEN)
            self.db.refresh(appointment)

        logger.info('Appointment #%s booked for user %s at %s', appointment.id, user.id, start.isoformat())

        if isinstance(source, ExternalCalendarSource):
            await self._mirror(source.credential, appointment, user)

        self.reminders.arm(appointment, now)
        await notify(self.notifier, BOOKING_CONFIRMATION, user, appointment)
        return appointment

    async def update(
        self,
        appointment_id: int,
        acting_user: User,
        title: str,
        description: Optional[str],
        start: datetime,
        end: datetime,
        timezone_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """Edit an appointment. New times go through the same checks as a booking."""
        appointment = self.get(appointment_id)
        if appointment.user_id != acting_user.id and not acting_user.is_admin:
            raise UnauthorizedError('Unauthorized')

        title, start, end = self._normalize(title, start, end, timezone_name)
        now = now or utcnow()
        rescheduled = start != appointment.start_time or end != appointment.end_time

        async with _booking_lock:
            if rescheduled:
                self._check_lead_time(start, now)
                self._check_weekly_limit(appointment.user, start, ignore=appointment)
                source = select_source(self.db, self.client_factory)
                if not await self._is_available(source, start, end, ignore=appointment):
                    raise ConflictError(SLOT_TAKEN)

                appointment.start_time = start
                appointment.end_time = end
                appointment.reminder_sent = False
                appointment.confirmation_sent = False
                appointment.attendance_confirmed = False

            appointment.title = title
            appointment.description = description or ''
            self._commit(SLOT_TAKEN)
            self.db.refresh(appointment)

        logger.info('Appointment #%s updated by user %s', appointment.id, acting_user.id)

        if rescheduled:
            self.reminders.arm(appointment, now)

        if appointment.external_event_id:
            description = appointment.description
            if appointment.status != STATUS_CONFIRMED:
                description = remote_description(description, appointment.status)
            await self._update_remote(appointment, {
                'summary': appointment.title,
                'description': description,
                **remote_times(appointment),
            })
        return appointment

    def _normalize(
        self,
        title: str,
        start: datetime,
        end: datetime,
        timezone_name: Optional[str],
    ) -> tuple[str, datetime, datetime]:
        tz = resolve_timezone(timezone_name or config.DEFAULT_TIMEZONE)
        title = (title or '').strip()
        if not title:
            raise ValidationError('Title is required.')

        # Naive times are read as wall-clock times in the request timezone.
        if start.tzinfo is None:
            start = start.replace(tzinfo=tz)
        if end.tzinfo is None:
            end = end.replace(tzinfo=tz)

        if start >= end:
            raise ValidationError('End time must be after start time.')
        return title, start, end

    def _check_lead_time(self, start: datetime, now: datetime) -> None:
        if start < now + timedelta(hours=config.BOOKING_LEAD_TIME_HOURS):
            raise ConflictError(
                f'Appointments must be booked at least {config.BOOKING_LEAD_TIME_HOURS} hours in advance.'
            )

    def _commit(self, conflict_message: str) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError(conflict_message) from exc

    def _check_weekly_limit(self, user: User, start: datetime, ignore: Optional[Appointment] = None) -> None:
        week_start, week_end = week_bounds(start, owner_timezone())
        query = self.db.query(Appointment).filter(
            Appointment.user_id == user.id,
            Appointment.status != STATUS_CANCELLED,
            Appointment.start_time >= week_start,
            Appointment.start_time < week_end,
        )
        if ignore is not None:
            query = query.filter(Appointment.id != ignore.id)
        if query.first() is not None:
            raise ConflictError(
                'You can only book one appointment per week. '
                'Please wait until next week or cancel your existing appointment.'
            )

    async def _is_available(
        self,
        source: AvailabilitySource,
        start: datetime,
        end: datetime,
        ignore: Optional[Appointment] = None,
    ) -> bool:
        day = start.astimezone(owner_timezone()).date()
        try:
            slots = await source.slots(day, day, config.OWNER_TIMEZONE, ignore=ignore)
        except ExternalServiceError as exc:
            logger.warning('Google Calendar check failed while booking, rechecking local availability: %s', exc)
            return LocalRuleSource(self.db).is_bookable(start, end, ignore=ignore)
        return any(slot.matches(start, end) for slot in slots)

    async def _mirror(self, credential: CalendarCredential, appointment: Appointment, user: User) -> None:
        tz = owner_timezone()
        try:
            event = await self.client_factory(credential).create_event(
                summary=appointment.title,
                description=appointment.description,
                start=appointment.start_time.astimezone(tz),
                end=appointment.end_time.astimezone(tz),
                attendee_emails=[user.email],
                time_zone=config.OWNER_TIMEZONE,
            )
        except ExternalServiceError as exc:
            logger.warning('Could not mirror appointment #%s to Google Calendar: %s', appointment.id, exc)
            return

        appointment.external_event_id = event.get('id')
        self.db.commit()

    def get(self, appointment_id: int) -> Appointment:
        appointment = self.db.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFoundError('Appointment not found.')
        return appointment

    def list_all(self) -> list[Appointment]:
        return self.db.query(Appointment).order_by(Appointment.start_time.desc()).all()

    def list_for_user(self, user: User) -> list[Appointment]:
        return self.db.query(Appointment).filter(
            Appointment.user_id == user.id,
        ).order_by(Appointment.start_time.desc()).all()

    async def cancel(self, appointment_id: int, acting_user: User, reason: Optional[str] = None) -> CancellationResult:
        appointment = self.get(appointment_id)
        if appointment.user_id != acting_user.id and not acting_user.is_admin:
            raise UnauthorizedError('Unauthorized')

        if appointment.external_event_id:
            await self._delete_remote(appointment)

        await notify(self.notifier, CANCELLATION, appointment.user, appointment, {'reason': reason})

        self.db.delete(appointment)
        self.db.commit()
        logger.info(
            'Appointment #%s cancelled and deleted (reason: %s)',
            appointment_id,
            reason or 'No reason provided',
        )
        return CancellationResult(appointment_id=appointment_id, reason=reason)

    async def set_status(self, appointment_id: int, status: str, acting_user: User) -> Appointment:
        if not acting_user.is_admin:
            raise UnauthorizedError('Only admins can change appointment status.')

        status = (status or '').strip().lower()
        if status not in APPOINTMENT_STATUSES:
            raise ValidationError('Invalid status')

        appointment = self.get(appointment_id)
        async with _booking_lock:
            if appointment.status == STATUS_CANCELLED and status != STATUS_CANCELLED:
                if local_busy_intervals(self.db, appointment.start_time, appointment.end_time, ignore=appointment):
                    raise ConflictError(HELD_BY_ANOTHER)
            appointment.status = status
            self._commit(HELD_BY_ANOTHER)
            self.db.refresh(appointment)

        if appointment.external_event_id:
            if status == STATUS_CANCELLED:
                await self._delete_remote(appointment)
            else:
                await self._update_remote(appointment, {'description': remote_description(appointment.description, status)})

        await notify(self.notifier, STATUS_UPDATE, appointment.user, appointment, {'status': status})
        return appointment

    async def _delete_remote(self, appointment: Appointment) -> None:
        credential = get_calendar_credential(self.db)
        if credential is None:
            logger.info('Google Calendar not connected; leaving event %s alone', appointment.external_event_id)
            return
        try:
            await self.client_factory(credential).delete_event(appointment.external_event_id)
        except ExternalServiceError as exc:
            logger.warning('Could not delete Google Calendar event %s: %s', appointment.external_event_id, exc)

    async def _update_remote(self, appointment: Appointment, fields: dict) -> None:
        credential = get_calendar_credential(self.db)
        if credential is None:
            return
        try:
            await self.client_factory(credential).update_event(appointment.external_event_id, fields)
        except ExternalServiceError as exc:
            logger.warning('Could not update Google Calendar event %s: %s', appointment.external_event_id, exc)
