"""Appointment reminders.

Each booking arms a persisted ``reminder`` job due one hour before the start.
The job poller fires due jobs; ``send_due_reminders`` is the catch-up scan for
appointments whose job never got armed.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from booking.core import config
from booking.database import utcnow
from booking.models.appointment import STATUS_CANCELLED, Appointment
from booking.models.scheduled_job import (
    JOB_DONE,
    JOB_FAILED,
    JOB_KIND_REMINDER,
    JOB_PENDING,
    JOB_SKIPPED,
    ScheduledJob,
)
from booking.notifications.notifier import REMINDER, Notifier, notify
from booking.scheduling.results import BatchSummary

logger = logging.getLogger(__name__)


class ReminderScheduler:
    def __init__(self, db: Session, notifier: Notifier):
        self.db = db
        self.notifier = notifier

    def arm(self, appointment: Appointment, now: Optional[datetime] = None) -> Optional[ScheduledJob]:
        now = now or utcnow()
        reminder_at = appointment.start_time - timedelta(minutes=config.REMINDER_LEAD_MINUTES)
        if reminder_at <= now:
            logger.debug('Reminder time has passed for appointment #%s, not arming', appointment.id)
            return None

        job = self.db.query(ScheduledJob).filter(
            ScheduledJob.kind == JOB_KIND_REMINDER,
            ScheduledJob.appointment_id == appointment.id,
        ).first()
        if job is None:
            job = ScheduledJob(kind=JOB_KIND_REMINDER, appointment_id=appointment.id)
            self.db.add(job)

        job.due_at = reminder_at
        job.status = JOB_PENDING
        job.attempts = 0
        job.last_error = None
        job.completed_at = None
        self.db.commit()
        self.db.refresh(job)

        logger.info('Reminder for appointment #%s armed at %s', appointment.id, reminder_at.isoformat())
        return job

    async def run_due_jobs(self, now: Optional[datetime] = None) -> BatchSummary:
        now = now or utcnow()
        summary = BatchSummary()
        jobs = self.db.query(ScheduledJob).filter(
            ScheduledJob.kind == JOB_KIND_REMINDER,
            ScheduledJob.status == JOB_PENDING,
            ScheduledJob.due_at <= now,
        ).order_by(ScheduledJob.due_at.asc()).all()

        for job in jobs:
            summary.processed += 1
            try:
                sent = await self._fire(job, now)
            except Exception as exc:
                logger.exception('Reminder job #%s failed', job.id)
                self.db.rollback()
                self._record_failure(job, str(exc))
                summary.failed += 1
                continue

            if sent:
                summary.sent += 1
            else:
                summary.skipped += 1

        return summary

    async def _fire(self, job: ScheduledJob, now: datetime) -> bool:
        appointment = self.db.get(Appointment, job.appointment_id, populate_existing=True)

        if (
            appointment is None
            or appointment.status == STATUS_CANCELLED
            or appointment.reminder_sent
            or appointment.start_time <= now
        ):
            logger.info('Skipping reminder for appointment #%s (gone, cancelled, started or already sent)', job.appointment_id)
            self._finish(job, JOB_SKIPPED, now)
            return False

        if not await notify(self.notifier, REMINDER, appointment.user, appointment):
            raise RuntimeError('Reminder notification was not delivered.')

        appointment.reminder_sent = True
        self._finish(job, JOB_DONE, now)
        logger.info('Scheduled reminder sent for appointment #%s', appointment.id)
        return True

    def _finish(self, job: ScheduledJob, status: str, now: datetime) -> None:
        job.status = status
        job.completed_at = now
        job.attempts += 1
        self.db.commit()

    def _record_failure(self, job: ScheduledJob, error: str) -> None:
        job = self.db.get(ScheduledJob, job.id, populate_existing=True)
        if job is None:
            return
        job.attempts += 1
        job.last_error = error
        if job.attempts >= config.JOB_MAX_ATTEMPTS:
            job.status = JOB_FAILED
        self.db.commit()

    async def send_due_reminders(self, now: Optional[datetime] = None) -> BatchSummary:
        now = now or utcnow()
        window_start = now + timedelta(minutes=config.REMINDER_LEAD_MINUTES)
        window_end = window_start + timedelta(minutes=config.REMINDER_WINDOW_MINUTES)

        appointments = self.db.query(Appointment).filter(
            Appointment.start_time >= window_start,
            Appointment.start_time <= window_end,
            Appointment.status != STATUS_CANCELLED,
            Appointment.reminder_sent.is_(False),
        ).order_by(Appointment.start_time.asc()).all()

        logger.info('Found %s appointments needing reminders', len(appointments))
        summary = BatchSummary(processed=len(appointments))

        for appointment in appointments:
            try:
                if not await notify(self.notifier, REMINDER, appointment.user, appointment):
                    summary.failed += 1
                    continue
                appointment.reminder_sent = True
                self.db.commit()
                summary.sent += 1
            except Exception:
                logger.exception('Failed to record reminder for appointment #%s', appointment.id)
                self.db.rollback()
                summary.failed += 1

        logger.info('Reminder batch completed: %s', summary.as_dict())
        return summary
