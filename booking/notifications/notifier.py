"""
Notification delivery
Renders plain-text messages for appointment events and hands them to a transport
"""

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from booking.core import config
from booking.models.appointment import Appointment
from booking.models.user import User

logger = logging.getLogger(__name__)

BOOKING_CONFIRMATION = "booking_confirmation"
CANCELLATION = "cancellation"
REMINDER = "reminder"
ATTENDANCE_CONFIRMATION = "attendance_confirmation"
STATUS_UPDATE = "status_update"


def _format_when(appointment: Appointment) -> str:
    start = appointment.start_time
    end = appointment.end_time
    return f"{start:%A, %B %d %Y %H:%M} - {end:%H:%M} UTC"


def render_message(kind: str, user: User, appointment: Appointment, extra: Optional[dict] = None) -> tuple[str, str]:
    """Return (subject, body) for a notification kind."""
    extra = extra or {}
    greeting = f"Hello {user.name or user.email},"
    when = _format_when(appointment)

    if kind == BOOKING_CONFIRMATION:
        subject = f"Appointment confirmed: {appointment.title}"
        lines = [f"Your appointment is booked for {when}."]
    elif kind == CANCELLATION:
        subject = f"Appointment cancelled: {appointment.title}"
        lines = [f"Your appointment on {when} has been cancelled."]
        if extra.get("reason"):
            lines.append(f"Reason: {extra['reason']}")
    elif kind == REMINDER:
        subject = f"Reminder: {appointment.title} starts soon"
        lines = [f"This is a reminder that your appointment starts at {when}."]
    elif kind == ATTENDANCE_CONFIRMATION:
        subject = f"Please confirm your attendance: {appointment.title}"
        lines = [
            f"Your appointment is scheduled for {when}.",
            f"Please confirm you will attend: {extra.get('confirmation_url', '')}",
        ]
    elif kind == STATUS_UPDATE:
        subject = f"Appointment {extra.get('status', appointment.status)}: {appointment.title}"
        lines = [f"The status of your appointment on {when} is now {extra.get('status', appointment.status)}."]
    else:
        raise ValueError(f"Unknown notification kind: {kind}")

    body = "\n\n".join([greeting, *lines])
    return subject, body


class Notifier:
    """Delivers a notification about an appointment to a user."""

    async def send(self, kind: str, user: User, appointment: Appointment, extra: Optional[dict] = None) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes notifications to the log; used when no mail transport is configured."""

    async def send(self, kind: str, user: User, appointment: Appointment, extra: Optional[dict] = None) -> None:
        subject, _ = render_message(kind, user, appointment, extra)
        logger.info("Notification %s for %s (appointment #%s): %s", kind, user.email, appointment.id, subject)


class SmtpNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_address: str = config.EMAIL_FROM_ADDRESS,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_address = from_address

    def _deliver(self, to_address: str, subject: str, body: str) -> None:
        msg = MIMEMultipart()
        msg["From"] = self.from_address
        msg["To"] = to_address
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username:
                server.login(self.username, self.password)
            server.sendmail(self.from_address, [to_address], msg.as_string())

    async def send(self, kind: str, user: User, appointment: Appointment, extra: Optional[dict] = None) -> None:
        subject, body = render_message(kind, user, appointment, extra)
        await asyncio.to_thread(self._deliver, user.email, subject, body)
        logger.info("Sent %s email to %s", kind, user.email)


def get_notifier() -> Notifier:
    if config.SMTP_HOST:
        return SmtpNotifier(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.SMTP_USERNAME,
            password=config.SMTP_PASSWORD,
            use_tls=config.SMTP_USE_TLS,
        )
    return LoggingNotifier()


async def notify(
    notifier: Notifier,
    kind: str,
    user: Optional[User],
    appointment: Appointment,
    extra: Optional[dict] = None,
) -> bool:
    """Send without ever raising; returns whether delivery succeeded."""
    if user is None:
        logger.warning("No recipient for %s notification (appointment #%s)", kind, appointment.id)
        return False
    try:
        await notifier.send(kind, user, appointment, extra)
        return True
    except Exception as exc:
        logger.warning("Failed to send %s notification to %s: %s", kind, user.email, exc)
        return False
