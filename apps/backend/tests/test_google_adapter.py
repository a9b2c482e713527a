from __future__ import annotations

import json
from datetime import datetime, timedelta

import httpx
import pytest

from duesync.exceptions import CalendarAuthRevoked, CalendarEventNotFound, CalendarTransientError
from duesync.services.calendar_adapter import EventFields, google_adapter_for


START = datetime(2024, 3, 26, 13, 0)


class FakeGoogle:
    """Routes token and calendar requests to canned responses."""

    def __init__(self, calendar_responses=None, token_response=None):
        self.calendar_responses = list(calendar_responses or [])
        self.token_response = token_response or (
            lambda: httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600})
        )
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "oauth2.googleapis.com":
            return self.token_response()
        return self.calendar_responses.pop(0)

    def calendar_tokens(self) -> list[str]:
        return [r.headers["Authorization"] for r in self.requests if r.url.host == "www.googleapis.com"]


def _adapter(google: FakeGoogle, clock, *, expires_in_minutes: int = 30, refreshed=None):
    return google_adapter_for(
        access_token="stale",
        refresh_token="refresh",
        expires_at=clock.now().replace(tzinfo=None) + timedelta(minutes=expires_in_minutes),
        calendar_id="primary",
        time_zone="America/Sao_Paulo",
        http_client=httpx.Client(transport=httpx.MockTransport(google)),
        clock=clock,
        on_refresh=(lambda token, expires_at: refreshed.append(token)) if refreshed is not None else None,
    )


def test_create_event_sends_local_zone_and_returns_the_id(clock):
    google = FakeGoogle([httpx.Response(200, json={"id": "abc"})])
    adapter = _adapter(google, clock)

    remote_id = adapter.create_event(EventFields(title="Dentista", start=START, duration_minutes=30, location="Centro"))

    assert remote_id == "abc"
    request = google.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/calendar/v3/calendars/primary/events"
    body = json.loads(request.content)
    assert body["summary"] == "Dentista"
    assert body["start"] == {"dateTime": "2024-03-26T13:00:00Z", "timeZone": "America/Sao_Paulo"}
    assert body["end"]["dateTime"] == "2024-03-26T13:30:00Z"


def test_expired_token_is_refreshed_before_the_call(clock):
    refreshed: list[str] = []
    google = FakeGoogle([httpx.Response(204)])
    adapter = _adapter(google, clock, expires_in_minutes=0, refreshed=refreshed)

    adapter.delete_event("abc")

    assert refreshed == ["fresh"]
    assert google.calendar_tokens() == ["Bearer fresh"]


def test_unauthorized_call_is_retried_once_with_a_refreshed_token(clock):
    google = FakeGoogle([httpx.Response(401), httpx.Response(200, json={"id": "abc"})])
    adapter = _adapter(google, clock)

    adapter.update_event("abc", EventFields(title="Dentista", start=START))
    assert google.calendar_tokens() == ["Bearer stale", "Bearer fresh"]

    google.calendar_responses = [httpx.Response(401), httpx.Response(401)]
    with pytest.raises(CalendarAuthRevoked):
        adapter.delete_event("abc")


def test_terminal_refresh_error_means_revoked(clock):
    google = FakeGoogle(
        token_response=lambda: httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad"})
    )
    adapter = _adapter(google, clock, expires_in_minutes=0)

    with pytest.raises(CalendarAuthRevoked) as excinfo:
        adapter.delete_event("abc")
    assert excinfo.value.message == "invalid_grant"


@pytest.mark.parametrize(
    "response,error",
    [
        (httpx.Response(404), CalendarEventNotFound),
        (httpx.Response(410), CalendarEventNotFound),
        (httpx.Response(503, json={"error": {"message": "Backend Error"}}), CalendarTransientError),
        (httpx.Response(429, json={"error": {"message": "Rate Limit Exceeded"}}), CalendarTransientError),
    ],
)
def test_status_codes_map_to_domain_errors(clock, response, error):
    adapter = _adapter(FakeGoogle([response]), clock)
    with pytest.raises(error):
        adapter.update_event("abc", EventFields(title="x", start=START))


def test_list_events_paginates_and_parses(clock):
    page_one = {
        "items": [
            {
                "id": "timed",
                "summary": "Reuniao",
                "start": {"dateTime": "2024-03-26T10:00:00-03:00"},
                "end": {"dateTime": "2024-03-26T11:30:00-03:00"},
                "updated": "2024-03-25T12:00:00.000Z",
                "hangoutLink": "https://meet.google.com/abc",
            }
        ],
        "nextPageToken": "p2",
    }
    page_two = {
        "items": [
            {
                "id": "allday",
                "start": {"date": "2024-03-27"},
                "end": {"date": "2024-03-28"},
                "updated": "2024-03-25T12:00:00Z",
            },
            {"id": "gone", "status": "cancelled", "updated": "2024-03-25T13:00:00Z"},
        ]
    }
    google = FakeGoogle([httpx.Response(200, json=page_one), httpx.Response(200, json=page_two)])
    adapter = _adapter(google, clock)

    events = adapter.list_events(START - timedelta(days=1), START + timedelta(days=30))

    assert [e.remote_id for e in events] == ["timed", "allday", "gone"]
    timed, allday, gone = events
    assert (timed.start, timed.duration_minutes, timed.has_conference) == (datetime(2024, 3, 26, 13, 0), 90, True)
    assert timed.updated == datetime(2024, 3, 25, 12, 0)
    assert allday.all_day and allday.start == datetime(2024, 3, 27, 3, 0)
    assert allday.title == "(sem título)"
    assert gone.cancelled
    assert google.requests[1].url.params["pageToken"] == "p2"
    assert google.requests[0].url.params["showDeleted"] == "true"
