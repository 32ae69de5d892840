import asyncio
import os
from datetime import datetime, time, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///:memory:')
os.environ.setdefault('JOB_POLLER_ENABLED', 'false')
os.environ.setdefault('OWNER_TIMEZONE', 'UTC')

from booking.core.errors import ExternalServiceError  # noqa: E402
from booking.database import Base  # noqa: E402
from booking.models.appointment import STATUS_CONFIRMED, Appointment  # noqa: E402
from booking.models.availability import AvailabilityRule  # noqa: E402
from booking.models.scheduled_job import ScheduledJob  # noqa: E402,F401
from booking.models.user import ADMIN_ROLE, USER_ROLE, User  # noqa: E402
from booking.notifications.notifier import Notifier  # noqa: E402

# Monday 2 March 2026, 08:00 UTC.
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class RecordingNotifier(Notifier):
    def __init__(self, fail_kinds=()):
        self.sent = []
        self.fail_kinds = set(fail_kinds)

    async def send(self, kind, user, appointment, extra=None):
        if kind in self.fail_kinds:
            raise RuntimeError('mail server unavailable')
        self.sent.append((kind, user.email, appointment.id, extra or {}))

    def kinds(self):
        return [kind for kind, *_ in self.sent]


class FakeCalendar:
    """Shared state behind every client the factory hands out."""

    def __init__(self):
        self.events = []
        self.created = []
        self.updated = []
        self.deleted = []
        self.credentials = []
        self.fail_list = False
        self.fail_create = False
        self.fail_update = False
        self.fail_delete = False

    def factory(self, credential):
        self.credentials.append(credential)
        return FakeCalendarClient(self)

    def add_event(self, event_id, summary, start, end, **fields):
        event = {
            'id': event_id,
            'summary': summary,
            'start': {'dateTime': start.isoformat()},
            'end': {'dateTime': end.isoformat()},
            **fields,
        }
        self.events.append(event)
        return event


class FakeCalendarClient:
    def __init__(self, calendar):
        self.calendar = calendar

    async def list_events(self, time_min, time_max=None, max_results=None, time_zone=None):
        await asyncio.sleep(0)
        if self.calendar.fail_list:
            raise ExternalServiceError('Google Calendar returned HTTP 500.')
        return [dict(event) for event in self.calendar.events]

    async def create_event(self, summary, description, start, end, attendee_emails=None, time_zone='UTC'):
        if self.calendar.fail_create:
            raise ExternalServiceError('Google Calendar returned HTTP 500.')
        event = self.calendar.add_event(
            f'evt-{len(self.calendar.created) + 1}',
            summary,
            start,
            end,
            description=description,
            attendees=[{'email': email} for email in attendee_emails or []],
        )
        self.calendar.created.append(event)
        return event

    async def update_event(self, event_id, fields):
        if self.calendar.fail_update:
            raise ExternalServiceError('Google Calendar returned HTTP 500.')
        self.calendar.updated.append((event_id, fields))
        return {'id': event_id, **fields}

    async def delete_event(self, event_id):
        if self.calendar.fail_delete:
            raise ExternalServiceError('Google Calendar returned HTTP 500.')
        self.calendar.deleted.append(event_id)
        self.calendar.events = [event for event in self.calendar.events if event['id'] != event_id]


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield testing_session_local
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _add_user(db, email, role=USER_ROLE, **fields):
    user = User(email=email, name=email.split('@')[0].title(), hashed_password='', role=role, **fields)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _add_user(db, 'client@example.com')


@pytest.fixture
def other_user(db):
    return _add_user(db, 'second@example.com')


@pytest.fixture
def admin(db):
    return _add_user(db, 'owner@example.com', role=ADMIN_ROLE)


@pytest.fixture
def connected_admin(db):
    return _add_user(db, 'owner@example.com', role=ADMIN_ROLE, google_refresh_token='refresh-token')


@pytest.fixture
def weekday_rules(db):
    rules = [
        AvailabilityRule(day_of_week=day, start_time=time(9, 0), end_time=time(17, 0), is_available=True)
        for day in range(1, 6)
    ]
    db.add_all(rules)
    db.commit()
    return rules


@pytest.fixture
def make_appointment(db):
    def _make(owner, start, minutes=60, **fields):
        appointment = Appointment(
            user_id=owner.id,
            title=fields.pop('title', 'Consultation'),
            description=fields.pop('description', ''),
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            status=fields.pop('status', STATUS_CONFIRMED),
            **fields,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def calendar():
    return FakeCalendar()
