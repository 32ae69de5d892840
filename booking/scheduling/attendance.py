"""Attendance confirmation requests and their single-use tokens."""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from booking.core import config
from booking.core.errors import NotFoundError
from booking.database import utcnow
from booking.models.appointment import STATUS_CANCELLED, STATUS_CONFIRMED, Appointment
from booking.notifications.notifier import ATTENDANCE_CONFIRMATION, Notifier, notify
from booking.scheduling.results import BatchSummary, ConfirmationResult

logger = logging.getLogger(__name__)


def generate_confirmation_token() -> str:
    return secrets.token_hex(32)


def confirmation_url(token: str) -> str:
    return f"{config.CLIENT_URL.rstrip('/')}/confirm-attendance/{token}"


class AttendanceConfirmationFlow:
    def __init__(self, db: Session, notifier: Notifier):
        self.db = db
        self.notifier = notifier

    async def send_due_confirmations(self, now: Optional[datetime] = None) -> BatchSummary:
        now = now or utcnow()
        window_start = now + timedelta(hours=config.CONFIRMATION_LEAD_HOURS)
        window_end = window_start + timedelta(hours=config.CONFIRMATION_WINDOW_HOURS)

        appointments = self.db.query(Appointment).filter(
            Appointment.start_time >= window_start,
            Appointment.start_time <= window_end,
            Appointment.status != STATUS_CANCELLED,
            Appointment.confirmation_sent.is_(False),
        ).order_by(Appointment.start_time.asc()).all()

        logger.info('Found %s appointments needing attendance confirmation', len(appointments))
        summary = BatchSummary(processed=len(appointments))

        for appointment in appointments:
            try:
                token = generate_confirmation_token()
                appointment.confirmation_token = token
                appointment.confirmation_sent = True
                self.db.commit()
            except Exception:
                logger.exception('Failed to store confirmation token for appointment #%s', appointment.id)
                self.db.rollback()
                summary.failed += 1
                continue

            delivered = await notify(
                self.notifier,
                ATTENDANCE_CONFIRMATION,
                appointment.user,
                appointment,
                {'confirmation_url': confirmation_url(token)},
            )
            if delivered:
                summary.sent += 1
            else:
                summary.failed += 1

        logger.info('Attendance confirmation batch completed: %s', summary.as_dict())
        return summary

    def confirm(self, token: str) -> ConfirmationResult:
        appointment = None
        if token:
            appointment = self.db.query(Appointment).filter(
                Appointment.confirmation_token == token,
                Appointment.status == STATUS_CONFIRMED,
            ).first()

        if appointment is None:
            raise NotFoundError('Invalid confirmation link or appointment not found.')

        if appointment.attendance_confirmed:
            return ConfirmationResult(
                appointment_id=appointment.id,
                title=appointment.title,
                start_time=appointment.start_time,
                already_confirmed=True,
            )

        appointment.attendance_confirmed = True
        self.db.commit()
        logger.info('Attendance confirmed for appointment #%s', appointment.id)

        return ConfirmationResult(
            appointment_id=appointment.id,
            title=appointment.title,
            start_time=appointment.start_time,
            already_confirmed=False,
        )
