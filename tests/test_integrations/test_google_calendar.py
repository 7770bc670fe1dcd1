"""
Tests for the Google Calendar client.

The API service is a MagicMock; requests return canned bodies or raise
HttpError, so no network access is needed.
"""

import json
import pytest
from datetime import date, datetime, timezone
from unittest.mock import MagicMock

from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error

from taskslot.errors import ExternalResourceGone, ExternalWriteFailure, ValidationError
from taskslot.integrations import CalendarClient
from taskslot.integrations.google_calendar import GoogleCalendarClient, translate_http_error
from taskslot.models import DateRange, ProposalOptions, SyncStatus
from taskslot.scheduling.commit import CommitEngine
from taskslot.scheduling.event_builder import METADATA_KEYS
from taskslot.scheduling.proposal import ProposalBuilder

MONDAY = date(2025, 6, 2)


def http_error(status, reason="", message="error"):
    resp = MagicMock(status=status, reason=message)
    payload = {"error": {"code": status, "message": message, "errors": [{"reason": reason}] if reason else []}}
    return HttpError(resp, json.dumps(payload).encode("utf-8"))


def event_body(event_id="evt-1", start="2025-06-02T09:00:00Z", end="2025-06-02T10:00:00Z", **extra):
    body = {"id": event_id, "summary": "Busy", "start": {"dateTime": start}, "end": {"dateTime": end}}
    body.update(extra)
    return body


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def client(service):
    return GoogleCalendarClient(service=service)


class TestTranslateHttpError:
    """Tests for mapping HTTP errors onto the error taxonomy."""

    @pytest.mark.parametrize("status,reason", [
        (404, "notFound"),
        (410, "deleted"),
        (401, "authError"),
        (403, "forbidden"),
    ])
    def test_gone(self, status, reason):
        error = translate_http_error(http_error(status, reason), "update_event", "evt-1")
        assert isinstance(error, ExternalResourceGone)
        assert error.resource_id == "evt-1"

    def test_revoked_grant(self):
        error = translate_http_error(http_error(400, "invalid_grant"), "list_events")
        assert isinstance(error, ExternalResourceGone)

    @pytest.mark.parametrize("status,reason", [
        (429, ""),
        (403, "rateLimitExceeded"),
        (403, "userRateLimitExceeded"),
        (500, "backendError"),
        (503, ""),
    ])
    def test_retryable(self, status, reason):
        error = translate_http_error(http_error(status, reason), "create_event")
        assert isinstance(error, ExternalWriteFailure)
        assert error.retryable is True
        assert error.status_code == status
        assert error.operation == "create_event"

    def test_bad_request_is_not_retryable(self):
        error = translate_http_error(http_error(400, "invalid"), "create_event")
        assert isinstance(error, ExternalWriteFailure)
        assert error.retryable is False
        assert "(400)" in str(error)


class TestGoogleCalendarClient:
    """Tests for GoogleCalendarClient requests."""

    def test_requires_service_or_credentials(self):
        with pytest.raises(ValidationError):
            GoogleCalendarClient()

    def test_satisfies_protocol(self, client):
        assert isinstance(client, CalendarClient)

    @pytest.mark.asyncio
    async def test_list_events_pages(self, client, service):
        first = {"items": [event_body("a")], "nextPageToken": "page-2"}
        second = {"items": [event_body("b", "2025-06-02T11:00:00Z", "2025-06-02T12:00:00Z")]}
        service.events.return_value.list.return_value.execute.side_effect = [first, second]
        start = datetime(2025, 6, 2, tzinfo=timezone.utc)
        end = datetime(2025, 6, 3, tzinfo=timezone.utc)

        events = await client.list_events("primary", start, end)

        assert [e.event_id for e in events] == ["a", "b"]
        assert all(e.calendar_id == "primary" for e in events)
        calls = service.events.return_value.list.call_args_list
        assert calls[0].kwargs["singleEvents"] is True
        assert calls[0].kwargs["timeMin"] == start.isoformat()
        assert calls[1].kwargs["pageToken"] == "page-2"

    @pytest.mark.asyncio
    async def test_list_skips_unreadable_items(self, client, service):
        service.events.return_value.list.return_value.execute.return_value = {
            "items": [{"id": "broken"}, event_body("ok")]
        }
        start = datetime(2025, 6, 2, tzinfo=timezone.utc)
        events = await client.list_events("primary", start, start.replace(day=3))
        assert [e.event_id for e in events] == ["ok"]

    @pytest.mark.asyncio
    async def test_create_event(self, client, service):
        body = {"summary": "Busy", "start": {"dateTime": "2025-06-02T09:00:00Z"}, "end": {"dateTime": "2025-06-02T10:00:00Z"}}
        service.events.return_value.insert.return_value.execute.return_value = dict(body, id="new-1")

        event = await client.create_event("work", body)

        assert event.event_id == "new-1"
        assert event.calendar_id == "work"
        service.events.return_value.insert.assert_called_once_with(calendarId="work", body=body)

    @pytest.mark.asyncio
    async def test_unreadable_create_response(self, client, service):
        service.events.return_value.insert.return_value.execute.return_value = {"id": "new-1"}
        with pytest.raises(ExternalWriteFailure) as exc_info:
            await client.create_event("primary", {})
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_update_missing_event(self, client, service):
        service.events.return_value.patch.return_value.execute.side_effect = http_error(404, "notFound")
        with pytest.raises(ExternalResourceGone) as exc_info:
            await client.update_event("primary", "evt-9", {})
        assert exc_info.value.resource_id == "evt-9"

    @pytest.mark.asyncio
    async def test_delete(self, client, service):
        service.events.return_value.delete.return_value.execute.return_value = ""
        await client.delete_event("primary", "evt-1")
        service.events.return_value.delete.assert_called_once_with(calendarId="primary", eventId="evt-1")

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self, client, service):
        service.events.return_value.delete.return_value.execute.side_effect = ConnectionResetError("reset")
        with pytest.raises(ExternalWriteFailure) as exc_info:
            await client.delete_event("primary", "evt-1")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_transport_errors_are_retryable(self, client, service):
        service.events.return_value.delete.return_value.execute.side_effect = [
            HttpLib2Error("connection dropped"),
            TransportError("proxy refused"),
        ]
        for _ in range(2):
            with pytest.raises(ExternalWriteFailure) as exc_info:
                await client.delete_event("primary", "evt-1")
            assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_refused_token_refresh_is_gone(self, client, service):
        service.events.return_value.insert.return_value.execute.side_effect = RefreshError(
            "invalid_grant: Token has been expired or revoked."
        )
        with pytest.raises(ExternalResourceGone) as exc_info:
            await client.create_event("primary", {})
        assert "credentials rejected" in str(exc_info.value)


class TestConfirmAgainstGoogle:
    """Tests for confirming a proposal through GoogleCalendarClient."""

    @pytest.mark.asyncio
    async def test_revoked_token_fails_only_its_task(self, service, task_store, make_task, open_preferences,
                                                     monday_morning, fast_config):
        tasks = [make_task("t1", "Draft agenda", time_estimate=60), make_task("t2", "Call supplier")]
        for task in tasks:
            task_store.add_task(task)
        proposal = ProposalBuilder(open_preferences, [], now=monday_morning).propose(
            "user-1", tasks, ProposalOptions(date_range=DateRange(MONDAY, MONDAY))
        )

        def insert(calendarId, body):
            request = MagicMock()
            task_id = body["extendedProperties"]["private"][METADATA_KEYS["task_id"]]
            if task_id == "t2":
                request.execute.side_effect = RefreshError("invalid_grant: Token has been expired or revoked.")
            else:
                request.execute.return_value = dict(body, id=f"g-{len(insert_calls)}")
            insert_calls.append(task_id)
            return request

        insert_calls = []
        service.events.return_value.insert.side_effect = insert
        service.events.return_value.list.return_value.execute.return_value = {"items": []}
        engine = CommitEngine(GoogleCalendarClient(service=service), task_store, fast_config)

        result = await engine.confirm(proposal)

        assert result.success is True
        assert [s.task_id for s in result.scheduled_tasks] == ["t1"]
        assert [(f.task_id, f.error_code) for f in result.failed_tasks] == [("t2", "EXTERNAL_RESOURCE_GONE")]
        assert task_store.snapshot("t1").sync_status == SyncStatus.SYNCED
        assert task_store.snapshot("t2").sync_status == SyncStatus.ERROR
        # Never retried
        assert insert_calls.count("t2") == 1
