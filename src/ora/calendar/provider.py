"""Google Calendar HTTP client.

Wraps the four provider calls the availability core needs (free/busy query,
events list, event insert, ACL insert) plus the calendar-list profile probe
used to confirm a fresh connection.

Bearer tokens come from a :class:`TokenSource`.  On a 401 the client retries
once with a forced refresh when the source can refresh server-side; otherwise,
or when the retry is also rejected, the source's ``handle_unauthorized`` is
the single place that invalidates the token and produces the error raised to
the caller.  429 / 503 responses are retried with exponential backoff,
honouring ``Retry-After``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ora.calendar.models import (
    BusyInterval,
    CalendarEvent,
    CalendarEventCreate,
    CalendarProfile,
    EventStatus,
    EventVisibility,
    Transparency,
    format_rfc3339,
    parse_rfc3339,
)
from ora.errors import OraError, ProviderError

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
PRIMARY_CALENDAR_ID = "primary"

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

EVENTS_PAGE_LIMIT = 250
ERROR_MESSAGE_MAX_LENGTH = 200


class TokenSource(Protocol):
    """Supplies bearer tokens to :class:`GoogleCalendarClient`."""

    refreshable: bool

    async def get_access_token(self, *, force_refresh: bool = False) -> str: ...

    def handle_unauthorized(self) -> OraError: ...


# ---------------------------------------------------------------------------
# Error sanitizing
# ---------------------------------------------------------------------------


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*:\s*([^\s,;'\"]+)",
        r"\1: [REDACTED]",
        redacted,
    )
    return redacted


def _clip(message: str) -> str:
    return " ".join(redact_credential_values(message).split())[:ERROR_MESSAGE_MAX_LENGTH]


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, credential-free message from a provider error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return _clip(message)
        if isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            if isinstance(description, str) and description.strip():
                return _clip(f"{error_payload}: {description}")
            return _clip(error_payload)

    raw_text = response.text.strip()
    if raw_text:
        return _clip(raw_text)
    return "Request failed without an error payload"


def _is_duplicate_response(response: httpx.Response) -> bool:
    if response.status_code == 409:
        return True
    try:
        payload = response.json()
    except ValueError:
        return False
    if not isinstance(payload, dict):
        return False
    if payload.get("reason") == "duplicate":
        return True
    error_payload = payload.get("error")
    if isinstance(error_payload, dict):
        for item in error_payload.get("errors") or []:
            if isinstance(item, dict) and item.get("reason") == "duplicate":
                return True
    return False


# ---------------------------------------------------------------------------
# Payload mapping
# ---------------------------------------------------------------------------


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_enum(enum_cls: type, value: Any) -> Any:
    if not isinstance(value, str):
        return None
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        return None


def _parse_boundary(payload: Any) -> datetime | date | None:
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_rfc3339(date_time)
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            return date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
    return None


def google_event_to_calendar_event(payload: dict[str, Any]) -> CalendarEvent | None:
    """Map a provider event payload onto :class:`CalendarEvent`.

    Returns ``None`` for cancelled events and for events without a start.
    """
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    start = _parse_boundary(payload.get("start"))
    if start is None:
        return None
    end = _parse_boundary(payload.get("end"))
    is_all_day = not isinstance(start, datetime)
    if end is not None and isinstance(end, datetime) == is_all_day:
        end = None

    summary = _optional_text(payload.get("summary"))
    event_id = (
        _optional_text(payload.get("id"))
        or _optional_text(payload.get("iCalUID"))
        or f"{start.isoformat()}-{summary or 'event'}"
    )
    return CalendarEvent(
        event_id=event_id,
        title=summary or "Untitled event",
        start=start,
        end=end,
        is_all_day=is_all_day,
        location=_optional_text(payload.get("location")),
        html_link=_optional_text(payload.get("htmlLink")),
        status=_parse_enum(EventStatus, status_raw),
        visibility=_parse_enum(EventVisibility, payload.get("visibility")),
        transparency=_parse_enum(Transparency, payload.get("transparency")),
    )


def build_event_body(payload: CalendarEventCreate, *, defaults_minutes: int) -> dict[str, Any]:
    """Build the provider insert body for *payload*.

    All-day ends are sent exclusive (the day after the last covered day).
    """
    if payload.is_all_day:
        last_day = payload.end if payload.end is not None else payload.start
        start_body: dict[str, Any] = {"date": payload.start.isoformat()}
        end_body: dict[str, Any] = {"date": (last_day + timedelta(days=1)).isoformat()}
    else:
        end = payload.end
        if end is None or end <= payload.start:
            end = payload.start + timedelta(minutes=defaults_minutes)
        start_body = {"dateTime": format_rfc3339(payload.start)}
        end_body = {"dateTime": format_rfc3339(end)}

    body: dict[str, Any] = {"summary": payload.title, "start": start_body, "end": end_body}
    if payload.location:
        body["location"] = payload.location
    if payload.description:
        body["description"] = payload.description
    return body


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Authenticated Google Calendar API client."""

    def __init__(
        self,
        token_source: TokenSource,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        default_event_minutes: int = 60,
    ) -> None:
        self._tokens = token_source
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._base_url = base_url.rstrip("/")
        self._default_event_minutes = default_event_minutes

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._tokens.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            message = _clip(str(exc) or type(exc).__name__)
            raise ProviderError(status_code=None, message=message) from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._base_url}{normalized_path}"

        response = await self._request_once(
            method, url, params=params, json_body=json_body, force_refresh=False
        )

        if response.status_code == 401 and self._tokens.refreshable:
            response = await self._request_once(
                method, url, params=params, json_body=json_body, force_refresh=True
            )
        if response.status_code == 401:
            raise self._tokens.handle_unauthorized()

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method, url, params=params, json_body=json_body, force_refresh=False
            )
            retry += 1

        if response.status_code == 401:
            raise self._tokens.handle_unauthorized()
        return response

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request(method, path, params=params, json_body=json_body)
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(
                status_code=response.status_code,
                message=safe_error_message(response),
                body=response.text,
            )
        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def get_profile(self) -> CalendarProfile:
        """Return the primary calendar's id (the account email) and summary."""
        payload = await self._request_json(
            "GET", "/users/me/calendarList", params={"maxResults": 5}
        )
        items = [item for item in payload.get("items") or [] if isinstance(item, dict)]
        primary = next((item for item in items if item.get("primary")), items[0] if items else None)
        if primary is None:
            return CalendarProfile()
        return CalendarProfile(
            email=_optional_text(primary.get("id")),
            summary=_optional_text(primary.get("summary")),
        )

    async def free_busy(
        self,
        time_min: datetime,
        time_max: datetime,
        *,
        calendar_id: str = PRIMARY_CALENDAR_ID,
    ) -> list[BusyInterval]:
        """Return the busy blocks of *calendar_id* within ``[time_min, time_max)``."""
        if time_max <= time_min:
            raise ValueError("time_max must be after time_min")

        payload = await self._request_json(
            "POST",
            "/freeBusy",
            json_body={
                "timeMin": format_rfc3339(time_min),
                "timeMax": format_rfc3339(time_max),
                "items": [{"id": calendar_id}],
            },
        )
        calendars = payload.get("calendars")
        if not isinstance(calendars, dict):
            raise ProviderError(
                status_code=200, message="freeBusy response missing calendars object"
            )
        calendar_payload = calendars.get(calendar_id)
        if not isinstance(calendar_payload, dict):
            if len(calendars) != 1:
                raise ProviderError(
                    status_code=200,
                    message="freeBusy response missing calendar entry for requested id",
                )
            calendar_payload = next(iter(calendars.values()))

        errors = calendar_payload.get("errors") if isinstance(calendar_payload, dict) else None
        if errors:
            reason = errors[0].get("reason") if isinstance(errors[0], dict) else errors[0]
            raise ProviderError(status_code=200, message=f"freeBusy calendar error: {reason}")

        busy: list[BusyInterval] = []
        for window in calendar_payload.get("busy") or []:
            if not isinstance(window, dict):
                continue
            start_raw = window.get("start")
            end_raw = window.get("end")
            if not isinstance(start_raw, str) or not isinstance(end_raw, str):
                continue
            busy.append(BusyInterval(start=parse_rfc3339(start_raw), end=parse_rfc3339(end_raw)))
        return busy

    async def list_events(
        self,
        time_min: datetime,
        time_max: datetime,
        *,
        calendar_id: str = PRIMARY_CALENDAR_ID,
        limit: int = EVENTS_PAGE_LIMIT,
        time_zone: str | None = None,
    ) -> list[CalendarEvent]:
        """Return non-cancelled events overlapping ``[time_min, time_max)``."""
        if limit < 1:
            raise ValueError("limit must be at least 1")

        params: dict[str, Any] = {
            "timeMin": format_rfc3339(time_min),
            "timeMax": format_rfc3339(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": min(limit, EVENTS_PAGE_LIMIT),
        }
        if time_zone:
            params["timeZone"] = time_zone

        payload = await self._request_json(
            "GET",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            params=params,
        )
        events: list[CalendarEvent] = []
        for item in payload.get("items") or []:
            if not isinstance(item, dict):
                continue
            event = google_event_to_calendar_event(item)
            if event is not None:
                events.append(event)
        return events

    async def create_event(
        self,
        payload: CalendarEventCreate,
        *,
        calendar_id: str = PRIMARY_CALENDAR_ID,
    ) -> CalendarEvent:
        body = build_event_body(payload, defaults_minutes=self._default_event_minutes)
        response_payload = await self._request_json(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/events",
            json_body=body,
        )
        event = google_event_to_calendar_event(response_payload)
        if event is None:
            raise ProviderError(
                status_code=200,
                message="Google Calendar returned a cancelled event after create",
            )
        return event

    async def grant_reader_access(
        self,
        email: str,
        *,
        calendar_id: str = PRIMARY_CALENDAR_ID,
    ) -> bool:
        """Grant *email* read access to *calendar_id*.

        Returns ``True`` when a rule was created and ``False`` when the
        provider reports it already exists.
        """
        normalized = email.strip()
        if not normalized:
            raise ValueError("email must be a non-empty string")

        response = await self._request(
            "POST",
            f"/calendars/{quote(calendar_id, safe='')}/acl",
            json_body={"role": "reader", "scope": {"type": "user", "value": normalized}},
        )
        if 200 <= response.status_code < 300:
            return True
        if _is_duplicate_response(response):
            logger.info("Calendar ACL rule already present; treating as granted")
            return False
        raise ProviderError(
            status_code=response.status_code,
            message=safe_error_message(response),
            body=response.text,
        )
