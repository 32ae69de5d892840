import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from booking.core.errors import ValidationError
from booking.models.appointment import Appointment
from booking.scheduling.sync import CalendarSyncReconciler, looks_like_booking
from conftest import NOW

UTC = timezone.utc
THURSDAY_TEN = datetime(2026, 3, 5, 10, 0, tzinfo=UTC)


def run_sync(db, calendar):
    return asyncio.run(CalendarSyncReconciler(db, calendar.factory).sync(NOW))


@pytest.mark.parametrize(
    ('event', 'expected'),
    [
        ({'summary': 'Initial Consultation'}, True),
        ({'summary': 'Call', 'description': 'Booking via website'}, True),
        ({'summary': 'APPOINTMENT with Sam'}, True),
        ({'summary': 'Lunch'}, False),
        ({}, False),
    ],
)
def test_looks_like_booking_matches_keywords(event, expected) -> None:
    assert looks_like_booking(event) is expected


def test_sync_requires_connected_calendar(db, admin, calendar) -> None:
    with pytest.raises(ValidationError) as exception_info:
        run_sync(db, calendar)

    assert exception_info.value.message == 'Google Calendar not connected'


def test_sync_creates_appointments_for_booking_events(db, connected_admin, user, calendar) -> None:
    calendar.add_event(
        'evt-1',
        'Consultation',
        THURSDAY_TEN,
        THURSDAY_TEN + timedelta(hours=1),
        description='Intro call',
        attendees=[{'email': connected_admin.email}, {'email': 'CLIENT@example.com'}],
    )
    calendar.add_event('evt-2', 'Lunch', THURSDAY_TEN + timedelta(hours=2), THURSDAY_TEN + timedelta(hours=3))

    summary = run_sync(db, calendar)

    assert summary.as_dict() == {'processed': 2, 'created': 1, 'updated': 0, 'skipped': 1, 'failed': 0}
    appointment = db.query(Appointment).filter(Appointment.external_event_id == 'evt-1').one()
    assert appointment.user_id == user.id
    assert appointment.title == 'Consultation'
    assert appointment.description == 'Intro call'
    assert appointment.status == 'confirmed'
    assert appointment.start_time == THURSDAY_TEN


def test_sync_attributes_unknown_attendees_to_calendar_owner(db, connected_admin, calendar) -> None:
    calendar.add_event(
        'evt-1',
        'Booking request',
        THURSDAY_TEN,
        THURSDAY_TEN + timedelta(hours=1),
        attendees=[{'email': 'stranger@example.com'}],
    )

    run_sync(db, calendar)

    appointment = db.query(Appointment).one()
    assert appointment.user_id == connected_admin.id


def test_second_sync_of_unchanged_calendar_changes_nothing(db, connected_admin, user, calendar) -> None:
    calendar.add_event('evt-1', 'Consultation', THURSDAY_TEN, THURSDAY_TEN + timedelta(hours=1))

    run_sync(db, calendar)
    second = run_sync(db, calendar)

    assert second.as_dict() == {'processed': 1, 'created': 0, 'updated': 0, 'skipped': 1, 'failed': 0}
    assert db.query(Appointment).count() == 1


def test_sync_updates_moved_events(db, connected_admin, user, calendar, make_appointment) -> None:
    appointment = make_appointment(user, THURSDAY_TEN, title='Consultation', external_event_id='evt-1')
    calendar.add_event(
        'evt-1',
        'Consultation (moved)',
        THURSDAY_TEN + timedelta(hours=2),
        THURSDAY_TEN + timedelta(hours=3),
        description='Intro call\nStatus: confirmed',
    )

    summary = run_sync(db, calendar)

    stored = db.get(Appointment, appointment.id)
    assert summary.updated == 1
    assert stored.title == 'Consultation (moved)'
    assert stored.start_time == THURSDAY_TEN + timedelta(hours=2)
    assert stored.description == 'Intro call'


def test_sync_updates_linked_events_without_keywords(db, connected_admin, user, calendar, make_appointment) -> None:
    appointment = make_appointment(user, THURSDAY_TEN, title='Consultation', external_event_id='evt-1')
    calendar.add_event('evt-1', 'Catch up', THURSDAY_TEN, THURSDAY_TEN + timedelta(hours=1))

    run_sync(db, calendar)

    assert db.get(Appointment, appointment.id).title == 'Catch up'


def test_sync_never_deletes_appointments_missing_from_calendar(
    db,
    connected_admin,
    user,
    calendar,
    make_appointment,
) -> None:
    appointment = make_appointment(user, THURSDAY_TEN, external_event_id='evt-gone')

    summary = run_sync(db, calendar)

    assert summary.processed == 0
    stored = db.get(Appointment, appointment.id)
    assert stored is not None
    assert stored.status == 'confirmed'


def test_sync_ignores_all_day_events(db, connected_admin, calendar) -> None:
    calendar.events.append({
        'id': 'holiday',
        'summary': 'Booking freeze',
        'start': {'date': '2026-03-05'},
        'end': {'date': '2026-03-06'},
    })

    summary = run_sync(db, calendar)

    assert summary.processed == 0
    assert db.query(Appointment).count() == 0


def test_sync_counts_events_that_collide_with_local_bookings(
    db,
    connected_admin,
    user,
    calendar,
    make_appointment,
) -> None:
    make_appointment(user, THURSDAY_TEN)
    calendar.add_event('evt-1', 'Consultation', THURSDAY_TEN, THURSDAY_TEN + timedelta(hours=1))

    summary = run_sync(db, calendar)

    assert summary.failed == 1
    assert db.query(Appointment).count() == 1
