"""
Google Calendar client
Talks to the Calendar REST API with a short-lived client built per operation
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any, Callable, Optional
from urllib.parse import quote, urlencode

import httpx

from booking.core import config
from booking.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]


@dataclass(frozen=True)
class CalendarCredential:
    """Refresh token of the calendar owner, acting for the whole site."""

    refresh_token: str
    owner_user_id: int
    owner_email: str


def build_authorization_url(state: str) -> str:
    params = {
        "client_id": config.GOOGLE_CLIENT_ID,
        "redirect_uri": config.GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        # Force the consent screen so Google hands back a refresh token.
        "prompt": "consent",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code(code: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    """Exchange an authorization code for tokens."""
    data = {
        "code": code,
        "client_id": config.GOOGLE_CLIENT_ID,
        "client_secret": config.GOOGLE_CLIENT_SECRET,
        "redirect_uri": config.GOOGLE_REDIRECT_URI,
        "grant_type": "authorization_code",
    }
    try:
        async with httpx.AsyncClient(timeout=config.GOOGLE_HTTP_TIMEOUT_SECONDS, transport=transport) as client:
            response = await client.post(GOOGLE_TOKEN_URL, data=data)
    except httpx.HTTPError as exc:
        raise ExternalServiceError(f"Google token exchange failed: {exc}") from exc

    if response.status_code != 200:
        logger.error("Google token exchange failed: %s", response.text)
        raise ExternalServiceError("Google token exchange failed.")
    return response.json()


def parse_event_time(value: dict, tz: tzinfo = timezone.utc) -> Optional[datetime]:
    """Parse an event ``start``/``end`` object.

    Timed events carry ``dateTime``; all-day events carry ``date`` and are
    anchored at local midnight in ``tz``.
    """
    if not value:
        return None
    if value.get("dateTime"):
        parsed = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    if value.get("date"):
        return datetime.combine(date.fromisoformat(value["date"]), time.min, tzinfo=tz)
    return None


def is_timed_event(event: dict) -> bool:
    return bool((event.get("start") or {}).get("dateTime") and (event.get("end") or {}).get("dateTime"))


class GoogleCalendarClient:
    """One instance per operation; the access token never outlives it."""

    def __init__(
        self,
        credential: CalendarCredential,
        calendar_id: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credential = credential
        self.calendar_id = calendar_id or config.GOOGLE_CALENDAR_ID
        self.timeout = timeout if timeout is not None else config.GOOGLE_HTTP_TIMEOUT_SECONDS
        self._transport = transport
        self._access_token: Optional[str] = None

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @property
    def _events_url(self) -> str:
        return f"{GOOGLE_CALENDAR_API}/calendars/{quote(self.calendar_id, safe='')}/events"

    async def _get_access_token(self) -> str:
        if self._access_token:
            return self._access_token

        data = {
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "refresh_token": self.credential.refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with self._http() as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Google token refresh failed: {exc}") from exc

        if response.status_code != 200:
            logger.error("Google token refresh failed: %s", response.text)
            raise ExternalServiceError("Google token refresh failed.")

        access_token = response.json().get("access_token")
        if not access_token:
            raise ExternalServiceError("Google token refresh returned no access token.")
        self._access_token = access_token
        return access_token

    async def _request(self, method: str, url: str, ok_statuses: tuple[int, ...] = (200,), **kwargs) -> httpx.Response:
        token = await self._get_access_token()
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with self._http() as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Google Calendar request failed: {exc}") from exc

        if response.status_code not in ok_statuses:
            logger.error("Google Calendar %s %s returned %s: %s", method, url, response.status_code, response.text)
            raise ExternalServiceError(f"Google Calendar returned HTTP {response.status_code}.")
        return response

    async def list_events(
        self,
        time_min: datetime,
        time_max: Optional[datetime] = None,
        max_results: Optional[int] = None,
        time_zone: Optional[str] = None,
    ) -> list[dict]:
        """List single (expanded) events ordered by start time.

        Follows ``nextPageToken`` until ``max_results`` events were collected
        or the listing ends.
        """
        params: dict[str, Any] = {
            "timeMin": time_min.astimezone(timezone.utc).isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": min(max_results or 250, 250),
        }
        if time_max is not None:
            params["timeMax"] = time_max.astimezone(timezone.utc).isoformat()
        if time_zone:
            params["timeZone"] = time_zone

        events: list[dict] = []
        while True:
            response = await self._request("GET", self._events_url, params=params)
            payload = response.json()
            events.extend(payload.get("items") or [])
            page_token = payload.get("nextPageToken")
            if not page_token or (max_results and len(events) >= max_results):
                break
            params["pageToken"] = page_token

        if max_results:
            events = events[:max_results]
        return events

    async def create_event(
        self,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        attendee_emails: Optional[list[str]] = None,
        time_zone: str = "UTC",
    ) -> dict:
        event = {
            "summary": summary,
            "description": description or "Appointment booking",
            "start": {"dateTime": start.isoformat(), "timeZone": time_zone},
            "end": {"dateTime": end.isoformat(), "timeZone": time_zone},
            "attendees": [{"email": email} for email in attendee_emails or []],
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 60},
                    {"method": "popup", "minutes": 15},
                ],
            },
        }
        response = await self._request(
            "POST",
            self._events_url,
            ok_statuses=(200, 201),
            params={"sendUpdates": "all"},
            json=event,
        )
        created = response.json()
        logger.info("Google Calendar event created: %s", created.get("id"))
        return created

    async def update_event(self, event_id: str, fields: dict) -> dict:
        """Patch only the given event fields."""
        response = await self._request(
            "PATCH",
            f"{self._events_url}/{quote(event_id, safe='')}",
            json=fields,
        )
        logger.info("Google Calendar event updated: %s", event_id)
        return response.json()

    async def delete_event(self, event_id: str) -> None:
        # 410 means the event is already gone, which is what we want.
        await self._request(
            "DELETE",
            f"{self._events_url}/{quote(event_id, safe='')}",
            ok_statuses=(200, 204, 410),
        )
        logger.info("Google Calendar event deleted: %s", event_id)


CalendarClientFactory = Callable[[CalendarCredential], GoogleCalendarClient]


def default_client_factory(credential: CalendarCredential) -> GoogleCalendarClient:
    return GoogleCalendarClient(credential)


def event_busy_interval(event: dict, tz: tzinfo) -> Optional[tuple[datetime, datetime]]:
    """Busy range of an event; all-day events block their whole local days."""
    if event.get("status") == "cancelled" or event.get("transparency") == "transparent":
        return None
    start = parse_event_time(event.get("start") or {}, tz)
    end = parse_event_time(event.get("end") or {}, tz)
    if start is None or end is None or end <= start:
        return None
    return start, end
