"""Google Calendar REST client.

``GoogleCalendarClient`` translates between local ``Event`` records and the
Google Calendar v3 event resource and performs the three network operations
the sync engine needs: fetch a window, create, and patch. The client keeps
no session state; the bearer token is supplied on every call.

Errors:
- ``TokenExpiredError`` when Google answers 401 (expired or revoked token)
- ``SyncError`` for every other failure (non-2xx status, transport error,
  timeout, malformed response)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from verve_calendar.core.telemetry import remote_span
from verve_calendar.errors import SyncError, TokenExpiredError
from verve_calendar.models import Event, new_event_id, validate_progress

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_TIMEZONE = "UTC"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
UNTITLED_EVENT_TITLE = "Untitled Event"

# Keys under extendedProperties.private; values are always strings.
PROGRESS_PRIVATE_KEY = "progress"
COMPLETED_PRIVATE_KEY = "completed"
LOCAL_EVENT_ID_PRIVATE_KEY = "localEventId"

# All-day events carry no time of day; they map onto the whole local day.
ALL_DAY_START_TIME = "00:00"
ALL_DAY_END_TIME = "23:59"

MAX_RESULTS_PER_PAGE = 250

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime value: {value}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown timezone %r; falling back to UTC", timezone)
        return UTC


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_private_progress(value: Any, *, event_id: str) -> int | None:
    if value is None:
        return None
    try:
        return validate_progress(int(str(value).strip()))
    except ValueError:
        logger.warning("Ignoring malformed progress %r on Google event %s", value, event_id)
        return None


def _parse_private_completed(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        return value.strip().lower() == "true"
    return None


def _extract_private_metadata(
    payload: Any, *, event_id: str
) -> tuple[int | None, bool | None, str | None]:
    """Return ``(progress, completed, local_event_id)`` from extendedProperties."""
    if not isinstance(payload, dict):
        return None, None, None
    private_payload = payload.get("private")
    if not isinstance(private_payload, dict):
        return None, None, None

    progress = _parse_private_progress(private_payload.get(PROGRESS_PRIVATE_KEY), event_id=event_id)
    completed = _parse_private_completed(private_payload.get(COMPLETED_PRIVATE_KEY))
    local_event_id = _normalize_optional_text(private_payload.get(LOCAL_EVENT_ID_PRIVATE_KEY))
    return progress, completed, local_event_id


def _parse_google_event_boundary(
    payload: Any,
    *,
    tz: ZoneInfo | tzinfo,
) -> datetime | date:
    """Return a local ``datetime`` for timed boundaries, a ``date`` for all-day ones."""
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event is missing start/end payloads")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time).astimezone(tz)

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            return date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def google_event_to_event(payload: dict[str, Any], *, timezone: str) -> Event | None:
    """Map a Google event resource onto a local ``Event``.

    Returns None for cancelled events. Raises ValueError for payloads that
    cannot be represented locally.
    """
    status_raw = payload.get("status")
    if isinstance(status_raw, str) and status_raw.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    tz = _coerce_zoneinfo(timezone)
    start = _parse_google_event_boundary(payload.get("start"), tz=tz)
    end = _parse_google_event_boundary(payload.get("end"), tz=tz)

    # datetime is a date subclass; test for it first.
    if isinstance(start, datetime):
        day = start.date()
        start_time = start.strftime("%H:%M")
        end_time = end.strftime("%H:%M") if isinstance(end, datetime) else start_time
    else:
        day = start
        start_time, end_time = ALL_DAY_START_TIME, ALL_DAY_END_TIME

    progress, completed, local_event_id = _extract_private_metadata(
        payload.get("extendedProperties"), event_id=event_id
    )
    fields: dict[str, Any] = {
        "id": local_event_id or new_event_id(),
        "title": _normalize_optional_text(payload.get("summary")) or UNTITLED_EVENT_TITLE,
        "description": _normalize_optional_text(payload.get("description")),
        "date": day,
        "start_time": start_time,
        "end_time": end_time,
        "google_event_id": event_id,
    }
    if progress is not None:
        fields["progress"] = progress
    if completed is not None:
        fields["completed"] = completed
    return Event(**fields)


def build_google_event_body(event: Event, *, timezone: str) -> dict[str, Any]:
    """Translate a local ``Event`` into a Google Calendar API event body.

    The local date is combined with ``start_time``/``end_time`` in *timezone*.
    An end earlier than the start is taken to fall on the following day.
    """
    tz = _coerce_zoneinfo(timezone)
    start_at = datetime.combine(event.date, time.fromisoformat(event.start_time), tzinfo=tz)
    end_at = datetime.combine(event.date, time.fromisoformat(event.end_time), tzinfo=tz)
    if end_at < start_at:
        end_at += timedelta(days=1)

    body: dict[str, Any] = {
        "summary": event.title,
        "start": {"dateTime": start_at.isoformat(), "timeZone": timezone},
        "end": {"dateTime": end_at.isoformat(), "timeZone": timezone},
        "extendedProperties": {
            "private": {
                PROGRESS_PRIVATE_KEY: str(event.progress),
                COMPLETED_PRIVATE_KEY: "true" if event.completed else "false",
                LOCAL_EVENT_ID_PRIVATE_KEY: event.id,
            }
        },
    }
    if event.description is not None:
        body["description"] = event.description
    return body


class GoogleCalendarClient:
    """Authenticated Google Calendar calls for one calendar."""

    def __init__(
        self,
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        timezone: str = DEFAULT_TIMEZONE,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        base_backoff_s: float = RATE_LIMIT_BASE_BACKOFF_SECONDS,
    ) -> None:
        self.calendar_id = calendar_id
        self.timezone = timezone
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._base_backoff_s = base_backoff_s

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self.calendar_id, safe='')}/events"

    async def fetch_events(
        self,
        token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Event]:
        """Return the non-cancelled events occurring in ``[window_start, window_end]``.

        Recurring events are expanded into single instances by Google.
        """
        params: dict[str, Any] = {
            "timeMin": _google_rfc3339(window_start),
            "timeMax": _google_rfc3339(window_end),
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": MAX_RESULTS_PER_PAGE,
        }

        events: list[Event] = []
        with remote_span("fetch_events", calendar_id=self.calendar_id):
            while True:
                payload = await self._request_google_json(
                    "GET", self._events_path, token=token, params=params
                )
                items = payload.get("items")
                if not isinstance(items, list):
                    raise SyncError(
                        status_code=None,
                        message="Google Calendar list response missing items array",
                    )
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    try:
                        event = google_event_to_event(item, timezone=self.timezone)
                    except ValueError as exc:
                        logger.warning("Skipping unreadable Google event %s: %s", item.get("id"), exc)
                        continue
                    if event is not None:
                        events.append(event)

                page_token = payload.get("nextPageToken")
                if not isinstance(page_token, str) or not page_token:
                    break
                params = {**params, "pageToken": page_token}

        logger.info("Fetched %d Google event(s) from %s", len(events), self.calendar_id)
        return events

    async def create_event(self, token: str, event: Event) -> str:
        """Create *event* remotely and return the Google event id."""
        body = build_google_event_body(event, timezone=self.timezone)
        with remote_span("create_event", calendar_id=self.calendar_id):
            payload = await self._request_google_json(
                "POST", self._events_path, token=token, json_body=body
            )
        remote_id = _normalize_optional_text(payload.get("id"))
        if remote_id is None:
            raise SyncError(
                status_code=None,
                message="Google Calendar create response is missing the event id",
            )
        logger.info("Created Google event %s for local event %s", remote_id, event.id)
        return remote_id

    async def patch_event(self, token: str, remote_id: str, event: Event) -> None:
        """Partially update the Google event *remote_id* from *event*."""
        normalized_remote_id = remote_id.strip()
        if not normalized_remote_id:
            raise ValueError("remote_id must be a non-empty string")
        body = build_google_event_body(event, timezone=self.timezone)
        with remote_span("patch_event", calendar_id=self.calendar_id):
            await self._request_google_json(
                "PATCH",
                f"{self._events_path}/{quote(normalized_remote_id, safe='')}",
                token=token,
                json_body=body,
            )
        logger.info(
            "Patched Google event %s (progress=%d completed=%s)",
            normalized_remote_id,
            event.progress,
            event.completed,
        )

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            token=token,
            params=params,
            json_body=json_body,
        )

        if response.status_code == 401:
            raise TokenExpiredError(
                f"Google rejected the access token: {_safe_google_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise SyncError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise SyncError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        token: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, token=token, params=params, json_body=json_body
        )

        # Rate-limit retry: honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = self._base_backoff_s * (2**retry)
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
                method=method, url=url, token=token, params=params, json_body=json_body
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        token: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise SyncError(status_code=None, message=f"request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise SyncError(status_code=None, message=str(exc) or type(exc).__name__) from exc
