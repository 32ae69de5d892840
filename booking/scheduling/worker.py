"""In-process poller for due reminder jobs and the catch-up scans."""

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from booking.core import config
from booking.database import SessionLocal
from booking.notifications.notifier import Notifier, get_notifier
from booking.scheduling.attendance import AttendanceConfirmationFlow
from booking.scheduling.reminders import ReminderScheduler

logger = logging.getLogger(__name__)


async def run_scheduled_work(db: Session, notifier: Notifier) -> dict:
    reminders = ReminderScheduler(db, notifier)
    confirmations = AttendanceConfirmationFlow(db, notifier)
    return {
        'reminder_jobs': (await reminders.run_due_jobs()).as_dict(),
        'reminders': (await reminders.send_due_reminders()).as_dict(),
        'attendance_confirmations': (await confirmations.send_due_confirmations()).as_dict(),
    }


class JobPoller:
    def __init__(
        self,
        interval_seconds: int = config.JOB_POLL_INTERVAL_SECONDS,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Optional[Notifier] = None,
    ):
        self.interval_seconds = interval_seconds
        self.session_factory = session_factory
        self.notifier = notifier or get_notifier()
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> dict:
        db = self.session_factory()
        try:
            return await run_scheduled_work(db, self.notifier)
        finally:
            db.close()

    async def _loop(self) -> None:
        while True:
            try:
                result = await self.run_once()
                logger.debug('Scheduled work pass finished: %s', result)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception('Scheduled work pass failed')
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())
            logger.info('Job poller started (every %ss)', self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info('Job poller stopped')
