"""Pull Google Calendar events into local appointments.

The merge only ever creates or overwrites. Appointments whose event is missing
from the listing are left as they are, so an event deleted directly in Google
Calendar does not cancel the local booking.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from booking.calendar.google_client import (
    CalendarClientFactory,
    CalendarCredential,
    default_client_factory,
    is_timed_event,
    parse_event_time,
)
from booking.core import config
from booking.core.errors import ValidationError
from booking.database import utcnow
from booking.models.appointment import STATUS_CONFIRMED, Appointment
from booking.models.user import User
from booking.scheduling.availability import get_calendar_credential
from booking.scheduling.booking import strip_status_line
from booking.scheduling.results import SyncSummary

logger = logging.getLogger(__name__)

BOOKING_KEYWORDS = ('consultation', 'appointment', 'booking')


def looks_like_booking(event: dict) -> bool:
    text = f"{event.get('summary') or ''}\n{event.get('description') or ''}".lower()
    return any(keyword in text for keyword in BOOKING_KEYWORDS)


class CalendarSyncReconciler:
    def __init__(
        self,
        db: Session,
        client_factory: CalendarClientFactory = default_client_factory,
    ):
        self.db = db
        self.client_factory = client_factory

    async def sync(self, now: Optional[datetime] = None) -> SyncSummary:
        credential = get_calendar_credential(self.db)
        if credential is None:
            raise ValidationError('Google Calendar not connected')

        now = now or utcnow()
        time_min = now - timedelta(days=config.SYNC_LOOKBACK_DAYS)
        events = await self.client_factory(credential).list_events(time_min, max_results=config.SYNC_MAX_RESULTS)

        summary = SyncSummary()
        for event in events:
            if not event.get('id') or not is_timed_event(event):
                continue
            summary.processed += 1
            try:
                outcome = self._merge_event(event, credential)
            except Exception:
                logger.exception('Failed to merge Google Calendar event %s', event.get('id'))
                self.db.rollback()
                summary.failed += 1
                continue

            if outcome == 'created':
                summary.created += 1
            elif outcome == 'updated':
                summary.updated += 1
            else:
                summary.skipped += 1

        logger.info('Google Calendar sync completed: %s', summary.as_dict())
        return summary

    def _merge_event(self, event: dict, credential: CalendarCredential) -> str:
        start = parse_event_time(event['start'])
        end = parse_event_time(event['end'])
        title = event.get('summary') or 'Untitled event'
        description = strip_status_line(event.get('description'))

        appointment = self.db.query(Appointment).filter(
            Appointment.external_event_id == event['id'],
        ).first()

        if appointment is not None:
            changes = {
                'title': title,
                'description': description,
                'start_time': start,
                'end_time': end,
                'status': STATUS_CONFIRMED,
            }
            changed = False
            for field, value in changes.items():
                if getattr(appointment, field) != value:
                    setattr(appointment, field, value)
                    changed = True
            if not changed:
                return 'unchanged'
            self.db.commit()
            return 'updated'

        if not looks_like_booking(event):
            return 'ignored'

        appointment = Appointment(
            user_id=self._attribute_owner(event, credential),
            title=title,
            description=description,
            start_time=start,
            end_time=end,
            status=STATUS_CONFIRMED,
            external_event_id=event['id'],
        )
        self.db.add(appointment)
        self.db.commit()
        logger.info('Created appointment #%s from Google Calendar event %s', appointment.id, event['id'])
        return 'created'

    def _attribute_owner(self, event: dict, credential: CalendarCredential) -> int:
        for attendee in event.get('attendees') or []:
            email = (attendee.get('email') or '').strip().lower()
            if not email:
                continue
            user = self.db.query(User).filter(func.lower(User.email) == email).first()
            if user is not None and user.id != credential.owner_user_id:
                return user.id
        return credential.owner_user_id
