from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from booking.auth.jwt_handler import create_access_token
from booking.database import get_db
from booking.main import app
from booking.models.appointment import Appointment
from booking.routes import appointment_routes
from conftest import NOW

UTC = timezone.utc
THURSDAY_TEN = datetime(2026, 3, 5, 10, 0, tzinfo=UTC)


@pytest.fixture
def client(db, notifier, calendar, monkeypatch: pytest.MonkeyPatch):
    for target in (
        'booking.routes.appointment_routes.utcnow',
        'booking.scheduling.booking.utcnow',
        'booking.scheduling.reminders.utcnow',
        'booking.scheduling.attendance.utcnow',
    ):
        monkeypatch.setattr(target, lambda: NOW)

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[appointment_routes.provide_notifier] = lambda: notifier
    app.dependency_overrides[appointment_routes.provide_calendar_client_factory] = lambda: calendar.factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user) -> dict:
    return {'Authorization': f'Bearer {create_access_token(subject=user.email)}'}


def booking_payload(start=THURSDAY_TEN, minutes=30, **fields) -> dict:
    return {
        'title': 'Consultation',
        'description': 'Intro call',
        'start_time': start.isoformat(),
        'end_time': (start + timedelta(minutes=minutes)).isoformat(),
        'timezone': 'UTC',
        **fields,
    }


def test_availability_is_public_and_lists_local_slots(client, weekday_rules) -> None:
    response = client.get(
        '/appointments/availability',
        params={'startDate': '2026-03-09', 'endDate': '2026-03-09', 'timezone': 'UTC'},
    )

    assert response.status_code == 200
    slots = response.json()
    assert len(slots) == 16
    assert slots[0] == {'start': '2026-03-09T09:00:00+00:00', 'end': '2026-03-09T09:30:00+00:00', 'timezone': 'UTC'}


def test_availability_rejects_unknown_timezone(client) -> None:
    response = client.get('/appointments/availability', params={'timezone': 'Nowhere/City'})

    assert response.status_code == 400
    assert response.json() == {'detail': 'Unknown timezone: Nowhere/City'}


def test_availability_rejects_reversed_range(client) -> None:
    response = client.get(
        '/appointments/availability',
        params={'startDate': '2026-03-10', 'endDate': '2026-03-09', 'timezone': 'UTC'},
    )

    assert response.status_code == 400


def test_create_appointment_books_slot(client, weekday_rules, user, notifier) -> None:
    response = client.post('/appointments', json=booking_payload(), headers=auth_headers(user))

    assert response.status_code == 201
    body = response.json()
    assert body['title'] == 'Consultation'
    assert body['status'] == 'confirmed'
    assert body['user_id'] == user.id
    assert 'confirmation_token' not in body
    assert notifier.kinds() == ['booking_confirmation']


def test_create_appointment_requires_authentication(client, weekday_rules) -> None:
    response = client.post('/appointments', json=booking_payload())

    assert response.status_code in (401, 403)


def test_create_appointment_rejects_invalid_token(client, weekday_rules) -> None:
    response = client.post('/appointments', json=booking_payload(), headers={'Authorization': 'Bearer nope'})

    assert response.status_code == 401


def test_create_appointment_rejects_blank_title(client, weekday_rules, user) -> None:
    response = client.post('/appointments', json=booking_payload(title='  '), headers=auth_headers(user))

    assert response.status_code == 422


def test_create_appointment_inside_lead_time_conflicts(client, weekday_rules, user) -> None:
    response = client.post(
        '/appointments',
        json=booking_payload(start=NOW + timedelta(hours=26)),
        headers=auth_headers(user),
    )

    assert response.status_code == 400
    assert 'at least 48 hours' in response.json()['detail']


def test_create_appointment_for_taken_slot_conflicts(client, weekday_rules, user, other_user) -> None:
    client.post('/appointments', json=booking_payload(), headers=auth_headers(user))

    response = client.post('/appointments', json=booking_payload(), headers=auth_headers(other_user))

    assert response.status_code == 400
    assert response.json() == {'detail': 'Selected time is not available.'}


def test_list_appointments_is_admin_only(client, user, admin, make_appointment) -> None:
    make_appointment(user, THURSDAY_TEN)

    assert client.get('/appointments', headers=auth_headers(user)).status_code == 403

    response = client.get('/appointments', headers=auth_headers(admin))
    assert response.status_code == 200
    assert len(response.json()) == 1


def test_list_my_appointments_returns_only_own(client, user, other_user, make_appointment) -> None:
    mine = make_appointment(user, THURSDAY_TEN)
    make_appointment(other_user, THURSDAY_TEN + timedelta(hours=2))

    response = client.get('/appointments/me', headers=auth_headers(user))

    assert response.status_code == 200
    assert [item['id'] for item in response.json()] == [mine.id]


def test_cancel_appointment_returns_reason(client, user, make_appointment, db) -> None:
    appointment = make_appointment(user, THURSDAY_TEN)
    appointment_id = appointment.id

    response = client.request(
        'DELETE',
        f'/appointments/{appointment_id}',
        json={'cancellationReason': 'other', 'reasonLabel': 'Feeling better'},
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    assert response.json() == {'msg': 'Appointment cancelled successfully', 'cancellationReason': 'Feeling better'}
    assert db.get(Appointment, appointment_id) is None


def test_cancel_appointment_without_body(client, user, make_appointment) -> None:
    appointment = make_appointment(user, THURSDAY_TEN)

    response = client.delete(f'/appointments/{appointment.id}', headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()['cancellationReason'] is None


def test_cancel_someone_elses_appointment_is_forbidden(client, user, other_user, make_appointment) -> None:
    appointment = make_appointment(user, THURSDAY_TEN)

    response = client.delete(f'/appointments/{appointment.id}', headers=auth_headers(other_user))

    assert response.status_code == 403


def test_cancel_missing_appointment_is_not_found(client, user) -> None:
    response = client.delete('/appointments/999', headers=auth_headers(user))

    assert response.status_code == 404


def test_update_status_as_admin(client, admin, user, make_appointment, notifier) -> None:
    appointment = make_appointment(user, THURSDAY_TEN)

    response = client.put(
        f'/appointments/{appointment.id}/status',
        json={'status': 'completed'},
        headers=auth_headers(admin),
    )

    assert response.status_code == 200
    assert response.json()['status'] == 'completed'
    assert notifier.kinds() == ['status_update']


def test_update_status_rejects_invalid_value(client, admin, user, make_appointment) -> None:
    appointment = make_appointment(user, THURSDAY_TEN)

    response = client.put(
        f'/appointments/{appointment.id}/status',
        json={'status': 'postponed'},
        headers=auth_headers(admin),
    )

    assert response.status_code == 422


def test_confirm_attendance_by_token(client, user, make_appointment) -> None:
    make_appointment(user, THURSDAY_TEN, confirmation_token='c' * 64)

    response = client.get(f"/appointments/confirm-attendance/{'c' * 64}")

    assert response.status_code == 200
    body = response.json()
    assert body['msg'].startswith('Thank you for confirming')
    assert body['appointment']['title'] == 'Consultation'
    assert body['appointment']['confirmed'] is True


def test_confirm_attendance_with_unknown_token(client) -> None:
    response = client.get('/appointments/confirm-attendance/unknown')

    assert response.status_code == 404
    assert response.json() == {'detail': 'Invalid confirmation link or appointment not found.'}


def test_send_reminders_returns_batch_summary(client, admin, user, make_appointment) -> None:
    make_appointment(user, NOW + timedelta(minutes=61))

    response = client.post('/appointments/send-reminders', headers=auth_headers(admin))

    assert response.status_code == 200
    assert response.json() == {'processed': 1, 'sent': 1, 'skipped': 0, 'failed': 0}


def test_send_attendance_confirmations_returns_batch_summary(client, admin, user, make_appointment) -> None:
    make_appointment(user, NOW + timedelta(hours=24, minutes=15))

    response = client.post('/appointments/send-attendance-confirmations', headers=auth_headers(admin))

    assert response.status_code == 200
    assert response.json()['sent'] == 1


def test_sync_without_connected_calendar_is_rejected(client, admin) -> None:
    response = client.get('/appointments/sync-google-calendar', headers=auth_headers(admin))

    assert response.status_code == 400
    assert response.json() == {'detail': 'Google Calendar not connected'}


def test_sync_reports_counts(client, connected_admin, calendar) -> None:
    calendar.add_event('evt-1', 'Consultation', THURSDAY_TEN, THURSDAY_TEN + timedelta(hours=1))

    response = client.get('/appointments/sync-google-calendar', headers=auth_headers(connected_admin))

    assert response.status_code == 200
    assert response.json() == {'processed': 1, 'created': 1, 'updated': 0, 'skipped': 0, 'failed': 0}


def test_calendar_connection_check(client, connected_admin, calendar) -> None:
    calendar.add_event('evt-1', 'Dentist', THURSDAY_TEN, THURSDAY_TEN + timedelta(hours=1))

    response = client.get('/appointments/test-google-calendar', headers=auth_headers(connected_admin))

    assert response.status_code == 200
    body = response.json()
    assert body['success'] is True
    assert body['eventsCount'] == 1
    assert body['events'][0]['summary'] == 'Dentist'


def test_calendar_connection_check_reports_provider_failure(client, connected_admin, calendar) -> None:
    calendar.fail_list = True

    response = client.get('/appointments/test-google-calendar', headers=auth_headers(connected_admin))

    assert response.status_code == 502


def test_oauth_state_token_is_not_a_login_token(client, admin) -> None:
    state = create_access_token(subject=admin.email, expires_minutes=10, purpose='google_calendar_connect')

    response = client.get('/appointments', headers={'Authorization': f'Bearer {state}'})

    assert response.status_code == 401


def test_update_appointment_moves_it_to_a_free_slot(client, weekday_rules, user, make_appointment) -> None:
    appointment = make_appointment(user, THURSDAY_TEN, minutes=30)

    response = client.put(
        f'/appointments/{appointment.id}',
        json=booking_payload(start=THURSDAY_TEN + timedelta(hours=2), title='Follow-up'),
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    body = response.json()
    assert body['title'] == 'Follow-up'
    assert body['start_time'].startswith('2026-03-05T12:00:00')


def test_update_someone_elses_appointment_is_forbidden(client, weekday_rules, user, other_user, make_appointment) -> None:
    appointment = make_appointment(user, THURSDAY_TEN, minutes=30)

    response = client.put(
        f'/appointments/{appointment.id}',
        json=booking_payload(),
        headers=auth_headers(other_user),
    )

    assert response.status_code == 403


def test_update_into_a_taken_slot_conflicts(client, weekday_rules, user, other_user, make_appointment) -> None:
    appointment = make_appointment(user, THURSDAY_TEN, minutes=30)
    make_appointment(other_user, THURSDAY_TEN + timedelta(hours=1), minutes=30)

    response = client.put(
        f'/appointments/{appointment.id}',
        json=booking_payload(start=THURSDAY_TEN + timedelta(hours=1)),
        headers=auth_headers(user),
    )

    assert response.status_code == 400
    assert response.json() == {'detail': 'Selected time is not available.'}
