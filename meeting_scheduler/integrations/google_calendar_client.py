"""Google Calendar client."""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from google.auth.exceptions import GoogleAuthError, RefreshError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from meeting_scheduler.integrations.google_auth import GoogleCredentialsError, get_google_credentials
from meeting_scheduler.memory.schemas import CalendarAccessStatus
from meeting_scheduler.utils.logging_utils import StructuredLogger

AUTH = "auth"
QUOTA = "quota"
TRANSIENT = "transient"
INVALID = "invalid"
UNKNOWN = "unknown"

LIST_MAX_ATTEMPTS = 3


class CalendarError(Exception):
    """Categorized calendar provider failure."""

    def __init__(self, message: str, code: str = UNKNOWN, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.code == TRANSIENT


def to_google_ts(dt: datetime) -> str:
    """
    Convert datetime to RFC3339 format for Google Calendar API.

    Naive datetimes are treated as UTC, and a UTC offset is written as "Z".
    """
    if dt.tzinfo is None:
        return dt.isoformat() + 'Z'

    ts = dt.isoformat()
    if ts.endswith('+00:00') or ts.endswith('-00:00'):
        ts = ts[:-6] + 'Z'
    return ts


def calendar_error_from_http(error: HttpError) -> CalendarError:
    """Map a Google API HttpError onto a CalendarError code."""
    status = getattr(error.resp, "status", None)
    try:
        status = int(status)
    except (TypeError, ValueError):
        status = None

    if status in (401, 403):
        code = AUTH
    elif status == 429:
        code = QUOTA
    elif status is not None and status >= 500:
        code = TRANSIENT
    elif status in (400, 404, 409):
        code = INVALID
    else:
        code = UNKNOWN
    return CalendarError(f"Calendar request failed ({status}): {error}", code, status)


class GoogleCalendarClient:
    """
    Async facade over the blocking Google Calendar API client.

    Calls run in a worker thread. Listing is retried on transient errors;
    event creation never is, because a failed write may have partially succeeded.
    """

    def __init__(
        self,
        credentials_provider: Callable[[], Any] = get_google_credentials,
        calendar_id: str = "primary",
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.credentials_provider = credentials_provider
        self.calendar_id = calendar_id
        self.sleep = sleep
        self._service = None
        self.logger = StructuredLogger(__name__)

    def _get_service(self):
        if self._service is None:
            try:
                creds = self.credentials_provider()
            except (GoogleCredentialsError, GoogleAuthError) as e:
                raise CalendarError(str(e), AUTH) from e
            self._service = build('calendar', 'v3', credentials=creds, cache_discovery=False)
        return self._service

    async def _execute(self, build_request: Callable[[Any], Any]) -> Any:
        def call():
            return build_request(self._get_service()).execute()

        try:
            return await asyncio.to_thread(call)
        except HttpError as e:
            if getattr(e.resp, "status", None) in (401, 403, "401", "403"):
                self._service = None
            raise calendar_error_from_http(e) from e
        except RefreshError as e:
            self._service = None
            raise CalendarError(f"Calendar credentials expired: {e}", AUTH) from e

    async def create_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an event on the calendar.

        Returns:
            Dictionary with id, html_link and meeting_link (when a conference was created)

        Raises:
            CalendarError: on any provider failure; never retried
        """
        body = dict(payload)
        wants_conference = body.pop("create_meet_link", False)
        if wants_conference:
            body["conferenceData"] = {
                "createRequest": {
                    "requestId": uuid.uuid4().hex,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }

        event = await self._execute(lambda service: service.events().insert(
            calendarId=self.calendar_id,
            body=body,
            conferenceDataVersion=1 if wants_conference else 0,
            sendUpdates="all",
        ))

        meeting_link = event.get("hangoutLink")
        for entry_point in (event.get("conferenceData") or {}).get("entryPoints", []):
            if entry_point.get("entryPointType") == "video" and not meeting_link:
                meeting_link = entry_point.get("uri")

        self.logger.info("Calendar event created", event_id=event.get("id"))
        return {
            "id": event.get("id"),
            "html_link": event.get("htmlLink"),
            "meeting_link": meeting_link,
        }

    async def list_events(self, time_min: datetime, time_max: datetime) -> List[Dict[str, Any]]:
        """
        Get events within a time range, following every page.

        Raises:
            CalendarError: when the provider keeps failing or the failure is not transient
        """
        for attempt in range(1, LIST_MAX_ATTEMPTS + 1):
            try:
                return await self._list_all_pages(time_min, time_max)
            except CalendarError as e:
                if not e.retryable or attempt >= LIST_MAX_ATTEMPTS:
                    raise
                self.logger.warning("Calendar listing failed, retrying", attempt=attempt, error=e.message)
                await self.sleep(2 ** attempt)
        return []

    async def _list_all_pages(self, time_min: datetime, time_max: datetime) -> List[Dict[str, Any]]:
        all_events = []
        page_token = None
        while True:
            request_params = {
                'calendarId': self.calendar_id,
                'timeMin': to_google_ts(time_min),
                'timeMax': to_google_ts(time_max),
                'maxResults': 250,
                'singleEvents': True,
                'orderBy': 'startTime'
            }
            if page_token:
                request_params['pageToken'] = page_token

            events_result = await self._execute(lambda service: service.events().list(**request_params))
            all_events.extend(events_result.get('items', []))

            page_token = events_result.get('nextPageToken')
            if not page_token:
                break
        return all_events

    async def verify_access(self) -> CalendarAccessStatus:
        """Check that the calendar can be read with the current credentials."""
        try:
            await self._execute(lambda service: service.calendarList().get(calendarId=self.calendar_id))
        except CalendarError as e:
            return CalendarAccessStatus(
                has_access=False,
                needs_refresh=e.code == AUTH,
                token_valid=e.code != AUTH,
                error=e.message,
            )
        return CalendarAccessStatus(has_access=True, needs_refresh=False, token_valid=True)
