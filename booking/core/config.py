import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")

CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS"), ["http://localhost:3000"])
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# Google Calendar OAuth. The refresh token lives on the admin user row.
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI", "http://localhost:8000/auth/google/callback")
GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
GOOGLE_HTTP_TIMEOUT_SECONDS = float(os.getenv("GOOGLE_HTTP_TIMEOUT_SECONDS", "10"))

DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "America/New_York")
# Working hours, rule windows and booking weeks are read in the owner's zone.
OWNER_TIMEZONE = os.getenv("OWNER_TIMEZONE", DEFAULT_TIMEZONE)

BOOKING_LEAD_TIME_HOURS = int(os.getenv("BOOKING_LEAD_TIME_HOURS", "48"))
EXTERNAL_SLOT_MINUTES = int(os.getenv("EXTERNAL_SLOT_MINUTES", "60"))
LOCAL_SLOT_MINUTES = int(os.getenv("LOCAL_SLOT_MINUTES", "30"))
WORKDAY_START_HOUR = int(os.getenv("WORKDAY_START_HOUR", "9"))
WORKDAY_END_HOUR = int(os.getenv("WORKDAY_END_HOUR", "17"))
DEFAULT_AVAILABILITY_DAYS = int(os.getenv("DEFAULT_AVAILABILITY_DAYS", "7"))
MAX_AVAILABILITY_DAYS = int(os.getenv("MAX_AVAILABILITY_DAYS", "31"))

REMINDER_LEAD_MINUTES = int(os.getenv("REMINDER_LEAD_MINUTES", "60"))
REMINDER_WINDOW_MINUTES = int(os.getenv("REMINDER_WINDOW_MINUTES", "5"))
CONFIRMATION_LEAD_HOURS = int(os.getenv("CONFIRMATION_LEAD_HOURS", "24"))
CONFIRMATION_WINDOW_HOURS = int(os.getenv("CONFIRMATION_WINDOW_HOURS", "1"))

SYNC_LOOKBACK_DAYS = int(os.getenv("SYNC_LOOKBACK_DAYS", "0"))
SYNC_MAX_RESULTS = int(os.getenv("SYNC_MAX_RESULTS", "100"))

JOB_POLLER_ENABLED = _get_bool(os.getenv("JOB_POLLER_ENABLED"), default=True)
JOB_POLL_INTERVAL_SECONDS = int(os.getenv("JOB_POLL_INTERVAL_SECONDS", "120"))
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "3"))

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = _get_bool(os.getenv("SMTP_USE_TLS"), default=True)
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Bookings <noreply@localhost>")


def google_calendar_configured() -> bool:
    return bool(GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET)


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if WORKDAY_START_HOUR >= WORKDAY_END_HOUR:
        raise RuntimeError("WORKDAY_START_HOUR must be earlier than WORKDAY_END_HOUR.")
