"""
Calendar provider adapter

``CalendarSyncAdapter`` is the interface the sync coordinator drives.
``GoogleCalendarAdapter`` implements it over the Google Calendar v3 REST API
with an OAuth refresh-token client. Provider failures are mapped onto three
exceptions:

- ``CalendarAuthRevoked``: 401 after a forced refresh, or a terminal refresh error
- ``CalendarEventNotFound``: 404 / 410 for an event id
- ``CalendarTransientError``: timeouts, transport errors, 403/429/5xx
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol
from urllib.parse import quote

import httpx

from ..core.clock import Clock, SystemClock
from ..core.config import settings
from ..core.timezones import DEFAULT_ZONE, as_naive_utc, resolve_zone, to_utc_naive
from ..exceptions import CalendarAuthRevoked, CalendarEventNotFound, CalendarTransientError


logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
TERMINAL_REFRESH_ERRORS = {"invalid_grant", "invalid_client", "unauthorized_client"}


@dataclass(frozen=True)
class EventFields:
    """Local commitment fields pushed to the provider. ``start`` is naive UTC."""

    title: str
    start: datetime
    duration_minutes: int = 60
    description: Optional[str] = None
    location: Optional[str] = None
    time_zone: str = "America/Sao_Paulo"

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes or 60)


@dataclass(frozen=True)
class RemoteEvent:
    remote_id: str
    title: str
    start: datetime
    end: datetime
    updated: datetime
    description: Optional[str] = None
    location: Optional[str] = None
    cancelled: bool = False
    has_conference: bool = False
    all_day: bool = False

    @property
    def duration_minutes(self) -> int:
        minutes = int((self.end - self.start).total_seconds() // 60)
        return minutes if minutes > 0 else 60


class CalendarSyncAdapter(Protocol):
    def create_event(self, fields: EventFields) -> str:
        ...

    def update_event(self, remote_id: str, fields: EventFields) -> None:
        ...

    def delete_event(self, remote_id: str) -> None:
        ...

    def list_events(self, since: datetime, until: datetime | None = None) -> list[RemoteEvent]:
        ...


def _rfc3339(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_rfc3339(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_utc_naive(datetime.fromisoformat(value))


def _safe_error(response: httpx.Response) -> tuple[str, str]:
    """(reason, message) from a Google error payload."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            reason = ""
            errors = error.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                reason = str(errors[0].get("reason") or "")
            return reason, " ".join(str(error.get("message") or "").split())[:200]
        if isinstance(error, str):
            description = payload.get("error_description") or ""
            return error, " ".join(str(description).split())[:200]
    return "", " ".join(response.text.split())[:200] or "request failed without an error payload"


class GoogleOAuthClient:
    """Refresh-token OAuth helper caching the current access token.

    ``on_refresh(access_token, expires_at)`` is called after each successful
    refresh so the caller can persist the new token.
    """

    def __init__(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        http_client: httpx.Client,
        client_id: str | None = None,
        client_secret: str | None = None,
        clock: Clock | None = None,
        on_refresh: Callable[[str, datetime], None] | None = None,
    ) -> None:
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._expires_at = expires_at
        self._http_client = http_client
        self._client_id = client_id if client_id is not None else settings.GOOGLE_CLIENT_ID
        self._client_secret = client_secret if client_secret is not None else settings.GOOGLE_CLIENT_SECRET
        self._clock = clock or SystemClock()
        self._on_refresh = on_refresh

    @property
    def can_refresh(self) -> bool:
        return bool(self._refresh_token)

    def _token_is_fresh(self) -> bool:
        if self._expires_at is None:
            return True
        return as_naive_utc(self._clock.now()) < self._expires_at - timedelta(seconds=60)

    def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            return self._access_token
        if not self.can_refresh:
            if force_refresh:
                raise CalendarAuthRevoked("access token rejected and no refresh token is available")
            return self._access_token
        self._refresh()
        return self._access_token

    def _refresh(self) -> None:
        try:
            response = self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTransientError(f"token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            reason, message = _safe_error(response)
            if reason in TERMINAL_REFRESH_ERRORS:
                raise CalendarAuthRevoked(reason)
            raise CalendarTransientError(
                f"token refresh failed ({response.status_code}): {message}", status_code=response.status_code
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTransientError("token endpoint returned invalid JSON") from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTransientError("token response is missing access_token")
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)) or expires_in <= 0:
            expires_in = 3600

        self._access_token = access_token.strip()
        self._expires_at = as_naive_utc(self._clock.now()) + timedelta(seconds=int(expires_in))
        logger.info("Google access token refreshed")
        if self._on_refresh is not None:
            self._on_refresh(self._access_token, self._expires_at)


class GoogleCalendarAdapter:
    """Google Calendar v3 implementation of ``CalendarSyncAdapter``."""

    def __init__(
        self,
        oauth: GoogleOAuthClient,
        *,
        calendar_id: str = "primary",
        http_client: httpx.Client,
        time_zone: str | None = None,
        owns_http_client: bool = False,
    ) -> None:
        self._oauth = oauth
        self._calendar_id = calendar_id
        self._http_client = http_client
        self._owns_http_client = owns_http_client
        self._time_zone = time_zone or settings.TIMEZONE

    def close(self) -> None:
        if self._owns_http_client:
            self._http_client.close()

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self._calendar_id, safe='')}/events"

    def _request_once(self, method: str, url: str, *, params, json_body, force_refresh: bool) -> httpx.Response:
        token = self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTransientError(f"Google Calendar request failed: {exc}") from exc

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        response = self._request_once(method, url, params=params, json_body=json_body, force_refresh=False)
        if response.status_code == 401:
            response = self._request_once(method, url, params=params, json_body=json_body, force_refresh=True)
            if response.status_code == 401:
                raise CalendarAuthRevoked("Google rejected the refreshed access token")

        if response.status_code in (404, 410):
            raise CalendarEventNotFound(f"{method} {path}: {response.status_code}")
        if response.status_code < 200 or response.status_code >= 300:
            _, message = _safe_error(response)
            raise CalendarTransientError(
                f"Google Calendar API error ({response.status_code}): {message}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTransientError("Google Calendar API returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise CalendarTransientError("Google Calendar API returned an unexpected payload shape")
        return payload

    def _event_body(self, fields: EventFields) -> dict[str, Any]:
        return {
            "summary": fields.title,
            "description": fields.description or "",
            "location": fields.location or "",
            "start": {"dateTime": _rfc3339(fields.start), "timeZone": fields.time_zone or self._time_zone},
            "end": {"dateTime": _rfc3339(fields.end), "timeZone": fields.time_zone or self._time_zone},
        }

    def create_event(self, fields: EventFields) -> str:
        payload = self._request("POST", self._events_path, json_body=self._event_body(fields))
        remote_id = payload.get("id")
        if not isinstance(remote_id, str) or not remote_id:
            raise CalendarTransientError("created event has no id")
        return remote_id

    def update_event(self, remote_id: str, fields: EventFields) -> None:
        self._request(
            "PUT",
            f"{self._events_path}/{quote(remote_id, safe='')}",
            json_body=self._event_body(fields),
        )

    def delete_event(self, remote_id: str) -> None:
        self._request("DELETE", f"{self._events_path}/{quote(remote_id, safe='')}")

    def list_events(self, since: datetime, until: datetime | None = None) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "true",
            "maxResults": 250,
            "timeMin": _rfc3339(since),
        }
        if until is not None:
            params["timeMax"] = _rfc3339(until)

        events: list[RemoteEvent] = []
        while True:
            payload = self._request("GET", self._events_path, params=params)
            for item in payload.get("items") or []:
                event = self._parse_event(item)
                if event is not None:
                    events.append(event)
            page_token = payload.get("nextPageToken")
            if not page_token:
                return events
            params = {**params, "pageToken": page_token}

    def _parse_event(self, item: dict[str, Any]) -> RemoteEvent | None:
        remote_id = item.get("id")
        if not isinstance(remote_id, str):
            return None
        cancelled = item.get("status") == "cancelled"
        start_raw = item.get("start") or {}
        end_raw = item.get("end") or {}
        all_day = "date" in start_raw and "dateTime" not in start_raw
        try:
            if all_day:
                zone = resolve_zone(start_raw.get("timeZone") or self._time_zone)
                start = to_utc_naive(datetime.fromisoformat(start_raw["date"]), zone)
                end_value = end_raw.get("date")
                end = to_utc_naive(datetime.fromisoformat(end_value), zone) if end_value else start + timedelta(days=1)
            elif "dateTime" in start_raw:
                start = _parse_rfc3339(start_raw["dateTime"])
                end = _parse_rfc3339(end_raw["dateTime"]) if "dateTime" in end_raw else start + timedelta(hours=1)
            elif cancelled:
                # cancelled instances may come back without times
                start = end = datetime(1970, 1, 1)
            else:
                return None
            updated = _parse_rfc3339(item["updated"]) if item.get("updated") else start
        except (KeyError, ValueError):
            logger.warning("skipping malformed Google event %s", remote_id)
            return None
        return RemoteEvent(
            remote_id=remote_id,
            title=item.get("summary") or "(sem título)",
            start=start,
            end=end,
            updated=updated,
            description=item.get("description") or None,
            location=item.get("location") or None,
            cancelled=cancelled,
            has_conference=bool(item.get("conferenceData") or item.get("hangoutLink")),
            all_day=all_day,
        )


def google_adapter_for(
    *,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime | None,
    calendar_id: str = "primary",
    time_zone: str | None = None,
    http_client: httpx.Client | None = None,
    clock: Clock | None = None,
    on_refresh: Callable[[str, datetime], None] | None = None,
) -> GoogleCalendarAdapter:
    client = http_client or httpx.Client(timeout=settings.EXTERNAL_TIMEOUT_SECONDS)
    oauth = GoogleOAuthClient(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
        http_client=client,
        clock=clock,
        on_refresh=on_refresh,
    )
    return GoogleCalendarAdapter(
        oauth,
        calendar_id=calendar_id,
        http_client=client,
        time_zone=time_zone or getattr(DEFAULT_ZONE, "key", settings.TIMEZONE),
        owns_http_client=http_client is None,
    )


GOOGLE_OAUTH_REVOKE_URL = "https://oauth2.googleapis.com/revoke"


def revoke_google_token(token: str, *, http_client: httpx.Client | None = None) -> bool:
    """Best-effort token revocation at Google. Returns False on any failure."""
    client = http_client or httpx.Client(timeout=settings.EXTERNAL_TIMEOUT_SECONDS)
    try:
        response = client.post(GOOGLE_OAUTH_REVOKE_URL, params={"token": token})
    except httpx.HTTPError as exc:
        logger.warning("Google token revocation failed: %s", exc)
        return False
    finally:
        if http_client is None:
            client.close()
    if response.status_code != 200:
        logger.info("Google token revocation returned %s", response.status_code)
    return response.status_code == 200
