"""Tests for the Google Calendar client with a mocked API service."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from googleapiclient.errors import HttpError

from meeting_scheduler.integrations.google_auth import GoogleCredentialsError
from meeting_scheduler.integrations.google_calendar_client import (
    AUTH,
    INVALID,
    QUOTA,
    TRANSIENT,
    CalendarError,
    GoogleCalendarClient,
    calendar_error_from_http,
    to_google_ts,
)
from tests.conftest import MEETING_END, MEETING_START, build_calendar_event


def http_error(status: int) -> HttpError:
    return HttpError(MagicMock(status=status, reason="error"), b'{"error": {"message": "failed"}}')


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def client(service):
    calendar = GoogleCalendarClient(sleep=AsyncMock())
    calendar._service = service
    return calendar


class TestTimestamps:
    def test_utc_uses_z_suffix(self):
        assert to_google_ts(datetime(2030, 1, 8, 14, 0, tzinfo=timezone.utc)) == "2030-01-08T14:00:00Z"

    def test_naive_treated_as_utc(self):
        assert to_google_ts(datetime(2030, 1, 8, 14, 0)) == "2030-01-08T14:00:00Z"


class TestErrorMapping:
    @pytest.mark.parametrize("status,code", [
        (401, AUTH),
        (403, AUTH),
        (429, QUOTA),
        (500, TRANSIENT),
        (503, TRANSIENT),
        (404, INVALID),
    ])
    def test_status_codes(self, status, code):
        error = calendar_error_from_http(http_error(status))

        assert error.code == code
        assert error.status == status
        assert error.retryable is (code == TRANSIENT)


class TestListEvents:
    @pytest.mark.asyncio
    async def test_follows_every_page(self, client, service):
        execute = service.events.return_value.list.return_value.execute
        execute.side_effect = [
            {"items": [build_calendar_event("a")], "nextPageToken": "page-2"},
            {"items": [build_calendar_event("b")]},
        ]

        events = await client.list_events(MEETING_START, MEETING_END)

        assert [e["id"] for e in events] == ["a", "b"]
        last_call = service.events.return_value.list.call_args
        assert last_call.kwargs["pageToken"] == "page-2"
        assert last_call.kwargs["timeMin"] == "2030-01-08T14:00:00Z"
        assert last_call.kwargs["singleEvents"] is True

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, client, service):
        service.events.return_value.list.return_value.execute.side_effect = [
            http_error(503),
            {"items": [build_calendar_event()]},
        ]

        events = await client.list_events(MEETING_START, MEETING_END)

        assert len(events) == 1
        client.sleep.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, client, service):
        service.events.return_value.list.return_value.execute.side_effect = http_error(503)

        with pytest.raises(CalendarError) as exc_info:
            await client.list_events(MEETING_START, MEETING_END)

        assert exc_info.value.code == TRANSIENT
        assert service.events.return_value.list.return_value.execute.call_count == 3

    @pytest.mark.asyncio
    async def test_auth_errors_are_not_retried(self, client, service):
        service.events.return_value.list.return_value.execute.side_effect = http_error(401)

        with pytest.raises(CalendarError) as exc_info:
            await client.list_events(MEETING_START, MEETING_END)

        assert exc_info.value.code == AUTH
        client.sleep.assert_not_awaited()
        assert client._service is None


class TestCreateEvent:
    @pytest.mark.asyncio
    async def test_requests_conference_for_online_meetings(self, client, service):
        service.events.return_value.insert.return_value.execute.return_value = {
            "id": "evt-1",
            "htmlLink": "https://calendar.google.com/event?eid=evt-1",
            "conferenceData": {
                "entryPoints": [{"entryPointType": "video", "uri": "https://meet.google.com/abc-defg-hij"}]
            },
        }

        result = await client.create_event({"summary": "Planning", "create_meet_link": True})

        assert result == {
            "id": "evt-1",
            "html_link": "https://calendar.google.com/event?eid=evt-1",
            "meeting_link": "https://meet.google.com/abc-defg-hij",
        }
        kwargs = service.events.return_value.insert.call_args.kwargs
        assert kwargs["conferenceDataVersion"] == 1
        assert "create_meet_link" not in kwargs["body"]
        assert kwargs["body"]["conferenceData"]["createRequest"]["conferenceSolutionKey"] == {"type": "hangoutsMeet"}

    @pytest.mark.asyncio
    async def test_physical_meeting_has_no_conference(self, client, service):
        service.events.return_value.insert.return_value.execute.return_value = {"id": "evt-2"}

        result = await client.create_event({"summary": "Offsite", "location": "Room 1"})

        assert result["meeting_link"] is None
        kwargs = service.events.return_value.insert.call_args.kwargs
        assert kwargs["conferenceDataVersion"] == 0
        assert "conferenceData" not in kwargs["body"]

    @pytest.mark.asyncio
    async def test_failures_are_never_retried(self, client, service):
        execute = service.events.return_value.insert.return_value.execute
        execute.side_effect = http_error(500)

        with pytest.raises(CalendarError) as exc_info:
            await client.create_event({"summary": "Planning"})

        assert exc_info.value.code == TRANSIENT
        assert execute.call_count == 1
        client.sleep.assert_not_awaited()


class TestVerifyAccess:
    @pytest.mark.asyncio
    async def test_access_granted(self, client, service):
        service.calendarList.return_value.get.return_value.execute.return_value = {"id": "primary"}

        status = await client.verify_access()

        assert status.has_access is True
        assert status.needs_refresh is False

    @pytest.mark.asyncio
    async def test_revoked_token_needs_refresh(self, client, service):
        service.calendarList.return_value.get.return_value.execute.side_effect = http_error(401)

        status = await client.verify_access()

        assert status.has_access is False
        assert status.needs_refresh is True
        assert status.token_valid is False

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        def no_credentials():
            raise GoogleCredentialsError("Google credentials not available. Please authenticate.")

        status = await GoogleCalendarClient(credentials_provider=no_credentials).verify_access()

        assert status.has_access is False
        assert status.needs_refresh is True
        assert "Please authenticate" in status.error
