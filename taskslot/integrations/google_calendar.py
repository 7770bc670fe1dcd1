"""
Google Calendar Integration

CalendarClient backed by the Google Calendar v3 API through
google-api-python-client. The client library is synchronous, so each request
runs in a worker thread to keep the event loop free.

HTTP errors are mapped onto the scheduling error taxonomy:
- 404/410, 401 and revoked grants -> ExternalResourceGone (never retried)
- 403 without a rate-limit reason -> ExternalResourceGone (access removed)
- 429, rate-limited 403 and 5xx   -> ExternalWriteFailure (retryable)
- other 4xx                       -> ExternalWriteFailure (not retryable)

A token refresh rejected by google-auth (RefreshError) is ExternalResourceGone;
socket, httplib2 and google-auth transport errors are retryable failures.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error

from ..errors import ExternalResourceGone, ExternalWriteFailure, ValidationError
from ..models import CalendarEvent
from ..scheduling.event_builder import parse_event, parse_events

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]

RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded")


def _error_reason(error: HttpError) -> str:
    """Best-effort extraction of the API error reason."""
    try:
        payload = json.loads(error.content.decode("utf-8"))
    except (AttributeError, ValueError, UnicodeDecodeError):
        return str(error)
    details = payload.get("error", {})
    if isinstance(details, str):
        return details
    reasons = [e.get("reason", "") for e in details.get("errors", [])]
    return " ".join(reasons) or details.get("message", "") or str(error)


def translate_http_error(
    error: HttpError,
    operation: str,
    resource_id: Optional[str] = None,
):
    """Map an HttpError onto ExternalResourceGone or ExternalWriteFailure."""
    status = int(getattr(error.resp, "status", 0) or 0)
    reason = _error_reason(error)
    message = f"Google Calendar {operation} failed ({status}): {reason}"

    rate_limited = status == 429 or any(r in reason for r in RATE_LIMIT_REASONS)
    if status in (404, 410):
        return ExternalResourceGone(message, resource_id=resource_id, original_error=error)
    if status == 401 or "invalid_grant" in reason:
        return ExternalResourceGone(message, resource_id=resource_id, original_error=error)
    if status == 403 and not rate_limited:
        return ExternalResourceGone(message, resource_id=resource_id, original_error=error)
    if rate_limited or status >= 500:
        return ExternalWriteFailure(message, operation=operation, status_code=status, original_error=error)
    return ExternalWriteFailure(
        message,
        operation=operation,
        status_code=status,
        retryable=False,
        original_error=error,
    )


class GoogleCalendarClient:
    """
    Google Calendar v3 client.

    Example:
        client = GoogleCalendarClient.from_authorized_user_file("token.json")
        events = await client.list_events("primary", start, end)
    """

    def __init__(
        self,
        service: Optional[Any] = None,
        credentials: Optional[Any] = None,
        timezone: str = "UTC",
        page_size: int = 250,
    ):
        """
        Initialize the client.

        Args:
            service: A built ``calendar`` v3 service resource. Built from
                ``credentials`` when omitted.
            credentials: google-auth credentials used to build the service
            timezone: IANA timezone events are normalized into
            page_size: Events per list page
        """
        if service is None:
            if credentials is None:
                raise ValidationError("Either service or credentials is required", field="credentials")
            service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
        self._service = service
        self.timezone = timezone
        self.page_size = page_size

    @classmethod
    def from_authorized_user_file(cls, path: str, timezone: str = "UTC") -> "GoogleCalendarClient":
        """Build a client from a stored OAuth token file."""
        credentials = Credentials.from_authorized_user_file(path, SCOPES)
        return cls(credentials=credentials, timezone=timezone)

    # -------------------------------------------------------------------------
    # CalendarClient
    # -------------------------------------------------------------------------

    async def list_events(self, calendar_id: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        events: List[CalendarEvent] = []
        page_token: Optional[str] = None
        while True:
            request = self._service.events().list(
                calendarId=calendar_id,
                timeMin=start.isoformat(),
                timeMax=end.isoformat(),
                singleEvents=True,
                orderBy="startTime",
                maxResults=self.page_size,
                pageToken=page_token,
            )
            result = await self._execute(request, "list_events", calendar_id)
            events.extend(parse_events(result.get("items", []), calendar_id, self.timezone))
            page_token = result.get("nextPageToken")
            if not page_token:
                break
        logger.debug(f"Fetched {len(events)} event(s) from {calendar_id}")
        return events

    async def create_event(self, calendar_id: str, body: Dict[str, Any]) -> CalendarEvent:
        request = self._service.events().insert(calendarId=calendar_id, body=body)
        result = await self._execute(request, "create_event", calendar_id)
        return self._parse_or_fail(result, calendar_id, "create_event")

    async def update_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> CalendarEvent:
        request = self._service.events().patch(calendarId=calendar_id, eventId=event_id, body=body)
        result = await self._execute(request, "update_event", event_id)
        return self._parse_or_fail(result, calendar_id, "update_event")

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        request = self._service.events().delete(calendarId=calendar_id, eventId=event_id)
        await self._execute(request, "delete_event", event_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _execute(self, request: Any, operation: str, resource_id: Optional[str] = None) -> Any:
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            error = translate_http_error(e, operation, resource_id)
            logger.warning(f"{error} [{error.error_code}]")
            raise error from e
        except RefreshError as e:
            # Revoked or expired grant; the user has to reauthorize
            logger.warning(f"Google Calendar {operation} credentials rejected: {e}")
            raise ExternalResourceGone(
                f"Google Calendar {operation} failed: credentials rejected ({e})",
                resource_id=resource_id,
                original_error=e,
            ) from e
        except (OSError, HttpLib2Error, TransportError) as e:
            logger.warning(f"Google Calendar {operation} network error: {e}")
            raise ExternalWriteFailure(
                f"Google Calendar {operation} failed: {e}",
                operation=operation,
                original_error=e,
            ) from e

    def _parse_or_fail(self, result: Dict[str, Any], calendar_id: str, operation: str) -> CalendarEvent:
        event = parse_event(result, calendar_id, self.timezone)
        if event is None:
            raise ExternalWriteFailure(
                f"Google Calendar {operation} returned an unreadable event",
                operation=operation,
                retryable=False,
            )
        return event
