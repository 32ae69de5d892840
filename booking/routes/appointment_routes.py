from datetime import date, datetime, timedelta

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking.auth.dependencies import get_current_user, require_admin
from booking.calendar.google_client import CalendarClientFactory, default_client_factory
from booking.core import config
from booking.core.errors import ValidationError
from booking.database import ensure_appointment_schema, ensure_availability_schema, get_db, utcnow
from booking.models.appointment import APPOINTMENT_STATUSES
from booking.models.user import User
from booking.notifications import notifier as notifications
from booking.scheduling.attendance import AttendanceConfirmationFlow
from booking.scheduling.availability import (
    ExternalCalendarSource,
    default_range,
    get_calendar_credential,
    list_available_slots,
)
from booking.scheduling.booking import BookingService
from booking.scheduling.reminders import ReminderScheduler
from booking.scheduling.slots import resolve_timezone
from booking.scheduling.sync import CalendarSyncReconciler

router = APIRouter(tags=['appointments'])

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
DATABASE_UNAVAILABLE = 'Database unavailable. Verify DATABASE_URL and database credentials.'


class CreateAppointmentRequest(BaseModel):
    title: str
    start_time: datetime
    end_time: datetime
    description: str | None = None
    timezone: str | None = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Title is required.')
        if len(normalized) > MAX_TITLE_LENGTH:
            raise ValueError(f'Title must be {MAX_TITLE_LENGTH} characters or fewer.')
        return normalized

    @field_validator('description')
    @classmethod
    def validate_description(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if len(normalized) > MAX_DESCRIPTION_LENGTH:
            raise ValueError(f'Description must be {MAX_DESCRIPTION_LENGTH} characters or fewer.')

        return normalized


class UpdateAppointmentRequest(CreateAppointmentRequest):
    pass


class CancelAppointmentRequest(BaseModel):
    cancellationReason: str | None = None
    reasonLabel: str | None = None


class UpdateStatusRequest(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_STATUSES:
            raise ValueError('Invalid status')
        return normalized


class AppointmentResponse(BaseModel):
    id: int
    user_id: int
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime
    status: str
    external_event_id: str | None = None
    reminder_sent: bool
    confirmation_sent: bool
    attendance_confirmed: bool

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    start: str
    end: str
    timezone: str


class CancellationResponse(BaseModel):
    msg: str
    cancellationReason: str | None = None


class ConfirmedAppointmentSummary(BaseModel):
    title: str
    date: datetime
    confirmed: bool


class ConfirmationResponse(BaseModel):
    msg: str
    appointment: ConfirmedAppointmentSummary


class BatchResponse(BaseModel):
    processed: int
    sent: int
    skipped: int
    failed: int


class SyncResponse(BaseModel):
    processed: int
    created: int
    updated: int
    skipped: int
    failed: int


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=DATABASE_UNAVAILABLE,
        ) from exc


def provide_notifier() -> notifications.Notifier:
    return notifications.get_notifier()


def provide_calendar_client_factory() -> CalendarClientFactory:
    return default_client_factory


def database_unavailable(db: Session, exc: SQLAlchemyError) -> HTTPException:
    db.rollback()
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=DATABASE_UNAVAILABLE)


@router.get('/availability', response_model=list[SlotResponse])
async def get_availability(
    start_date: date | None = Query(default=None, alias='startDate'),
    end_date: date | None = Query(default=None, alias='endDate'),
    timezone: str = Query(default=config.DEFAULT_TIMEZONE),
    db: Session = Depends(get_db),
    client_factory: CalendarClientFactory = Depends(provide_calendar_client_factory),
):
    ensure_database_ready()

    tz = resolve_timezone(timezone)
    start_day, end_day = default_range(utcnow().astimezone(tz).date(), start_date, end_date)

    try:
        slots = await list_available_slots(
            db,
            start_day,
            end_day,
            timezone,
            not_before=utcnow(),
            client_factory=client_factory,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    return [SlotResponse(**slot.as_dict()) for slot in slots]


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    return BookingService(db, notifications.LoggingNotifier()).list_all()


@router.get('/me', response_model=list[AppointmentResponse])
def list_my_appointments(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()
    return BookingService(db, notifications.LoggingNotifier()).list_for_user(current_user)


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    data: CreateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: notifications.Notifier = Depends(provide_notifier),
    client_factory: CalendarClientFactory = Depends(provide_calendar_client_factory),
):
    ensure_database_ready()

    service = BookingService(db, notifier, client_factory)
    try:
        return await service.book(
            current_user,
            title=data.title,
            description=data.description,
            start=data.start_time,
            end=data.end_time,
            timezone_name=data.timezone,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc


@router.delete('/{appointment_id}', response_model=CancellationResponse)
async def cancel_appointment(
    appointment_id: int,
    data: CancelAppointmentRequest | None = Body(default=None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: notifications.Notifier = Depends(provide_notifier),
    client_factory: CalendarClientFactory = Depends(provide_calendar_client_factory),
):
    ensure_database_ready()

    reason = None
    if data is not None:
        reason = data.reasonLabel or data.cancellationReason

    try:
        result = await BookingService(db, notifier, client_factory).cancel(appointment_id, current_user, reason)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    return CancellationResponse(msg='Appointment cancelled successfully', cancellationReason=result.reason)


@router.put('/{appointment_id}', response_model=AppointmentResponse)
async def update_appointment(
    appointment_id: int,
    data: UpdateAppointmentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: notifications.Notifier = Depends(provide_notifier),
    client_factory: CalendarClientFactory = Depends(provide_calendar_client_factory),
):
    ensure_database_ready()

    try:
        return await BookingService(db, notifier, client_factory).update(
            appointment_id,
            current_user,
            title=data.title,
            description=data.description,
            start=data.start_time,
            end=data.end_time,
            timezone_name=data.timezone,
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc


@router.put('/{appointment_id}/status', response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: int,
    data: UpdateStatusRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: notifications.Notifier = Depends(provide_notifier),
    client_factory: CalendarClientFactory = Depends(provide_calendar_client_factory),
):
    ensure_database_ready()

    try:
        return await BookingService(db, notifier, client_factory).set_status(appointment_id, data.status, admin)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc


@router.get('/confirm-attendance/{token}', response_model=ConfirmationResponse)
def confirm_attendance(token: str, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        result = AttendanceConfirmationFlow(db, notifications.LoggingNotifier()).confirm(token)
    except SQLAlchemyError as exc:
        raise database_unavailable(db, exc) from exc

    return ConfirmationResponse(
        msg=result.message,
        appointment=ConfirmedAppointmentSummary(title=result.title, date=result.start_time, confirmed=True),
    )


@router.post('/send-reminders', response_model=BatchResponse)
async def send_reminders(
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: notifications.Notifier = Depends(provide_notifier),
):
    ensure_database_ready()
    summary = await ReminderScheduler(db, notifier).send_due_reminders()
    return BatchResponse(**summary.as_dict())


@router.post('/send-attendance-confirmations', response_model=BatchResponse)
async def send_attendance_confirmations(
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    notifier: notifications.Notifier = Depends(provide_notifier),
):
    ensure_database_ready()
    summary = await AttendanceConfirmationFlow(db, notifier).send_due_confirmations()
    return BatchResponse(**summary.as_dict())


@router.get('/sync-google-calendar', response_model=SyncResponse)
async def sync_google_calendar(
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    client_factory: CalendarClientFactory = Depends(provide_calendar_client_factory),
):
    ensure_database_ready()
    summary = await CalendarSyncReconciler(db, client_factory).sync()
    return SyncResponse(**summary.as_dict())


@router.get('/test-google-calendar')
async def test_google_calendar(
    _admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    client_factory: CalendarClientFactory = Depends(provide_calendar_client_factory),
):
    credential = get_calendar_credential(db)
    if credential is None:
        raise ValidationError('Google Calendar not connected')

    now = utcnow()
    tz = resolve_timezone(config.OWNER_TIMEZONE)
    today = now.astimezone(tz).date()

    events = await client_factory(credential).list_events(now, max_results=5)
    source = ExternalCalendarSource(db, credential, client_factory)
    slots = list(await source.slots(today, today + timedelta(days=1), config.OWNER_TIMEZONE, not_before=now))

    return {
        'success': True,
        'message': 'Google Calendar connection working',
        'adminEmail': credential.owner_email,
        'eventsCount': len(events),
        'availableSlotsCount': len(slots),
        'testTimezone': config.OWNER_TIMEZONE,
        'events': [
            {
                'summary': event.get('summary'),
                'start': (event.get('start') or {}).get('dateTime') or (event.get('start') or {}).get('date'),
                'end': (event.get('end') or {}).get('dateTime') or (event.get('end') or {}).get('date'),
            }
            for event in events[:3]
        ],
        'availableSlots': [slot.as_dict() for slot in slots[:5]],
    }
