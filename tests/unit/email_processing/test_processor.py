"""
Unit tests for the delayed processing step.

Storage runs against the in-memory database; the token provider, the
response generator and Microsoft Graph are mocked.
"""

from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock, AsyncMock

from src.auth.microsoft_oauth import TokenRefreshError
from src.auth.token_provider import NoRefreshTokenError
from src.email_processing.handlers.response_generator import ResponseGenerationError
from src.email_processing.processor import DraftProcessor
from src.integrations.graph.client import DraftResult, GraphAPIError
from src.storage.models import ProcessingStatus, StyleProfile


def graph_message(sender="client@example.com", is_read=False):
    return {
        "id": "AAMkAGI2TG93AAAmessage0001=",
        "subject": "Meeting next week",
        "isRead": is_read,
        "conversationId": "conv-1",
        "from": {"emailAddress": {"address": sender}},
        "body": {"contentType": "html", "content": "<p>Can we meet Thursday?</p>"},
    }


@pytest.fixture
def graph():
    graph = MagicMock()
    graph.get_message = AsyncMock(return_value=graph_message())
    graph.list_calendar_events = AsyncMock(return_value=[])
    graph.get_conversation_thread = AsyncMock(return_value=[])
    graph.create_draft_reply = AsyncMock(return_value=DraftResult(draft_id="draft-1", was_unread=True))
    return graph


@pytest.fixture
def token_provider():
    provider = MagicMock()
    provider.get_valid_access_token = AsyncMock(return_value="access-token-1")
    return provider


@pytest.fixture
def generator():
    generator = MagicMock()
    generator.generate = AsyncMock(return_value="<p>Thursday works.</p>")
    generator.estimate_tokens = MagicMock(return_value=42)
    return generator


@pytest.fixture
def processor(token_provider, generator, records, accounts, graph):
    return DraftProcessor(
        token_provider,
        generator,
        records=records,
        accounts=accounts,
        graph_client_factory=lambda token: graph,
        now=lambda: datetime(2025, 10, 1, 12, 0, tzinfo=timezone.utc),
    )


async def claim(records, accounts, seeded):
    record = await records.claim(seeded.message_id, seeded.account_id)
    account = await accounts.get_mail_account(seeded.account_id)
    return record, account


class TestDraftProcessor:
    """Test suite for the processing step outcomes."""

    @pytest.mark.asyncio
    async def test_creates_draft(self, processor, records, graph, generator, accounts, seeded):
        """Test the happy path writes draft_created with the reply."""
        record, account = await claim(records, accounts, seeded)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.DRAFT_CREATED
        assert outcome.draft_message_id == "draft-1"
        stored = await records.get_by_id(record["id"])
        assert stored["status"] == "draft_created"
        assert stored["subject"] == "Meeting next week"
        assert stored["sender_email"] == "client@example.com"
        assert stored["original_body"] == "Can we meet Thursday?"
        assert stored["ai_response"] == "<p>Thursday works.</p>"
        assert stored["tokens_used"] == 42

        context = generator.generate.call_args.args[0]
        assert context.style.tone == "warm"
        assert context.calendar_events is None
        graph.create_draft_reply.assert_awaited_once()
        args, kwargs = graph.create_draft_reply.call_args
        assert args == (seeded.message_id, "<p>Thursday works.</p>", "Jane Doe\nAcme Legal")
        assert kwargs["reply_all"] is True

    @pytest.mark.asyncio
    async def test_auto_response_disabled(self, processor, records, session_scope, graph, accounts, seeded):
        with session_scope() as session:
            session.query(StyleProfile).update({StyleProfile.auto_response: False})
        record, account = await claim(records, accounts, seeded)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.SKIPPED
        assert (await records.get_by_id(record["id"]))["error_reason"] == "Auto-response disabled"
        graph.create_draft_reply.assert_not_called()

    @pytest.mark.asyncio
    async def test_filtered_sender(self, processor, records, graph, generator, accounts, seeded):
        graph.get_message.return_value = graph_message(sender="digest@newsletter.test")
        record, account = await claim(records, accounts, seeded)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.FILTERED
        generator.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_calendar_failure_degrades(self, records, accounts, processor, graph, generator, seeded):
        """Test a calendar error does not fail the step."""
        graph.list_calendar_events.side_effect = GraphAPIError("forbidden", status=403)
        record, account = await claim(records, accounts, seeded)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.DRAFT_CREATED
        assert generator.generate.call_args.args[0].calendar_events is None

    @pytest.mark.asyncio
    async def test_calendar_events_passed_to_prompt(self, records, accounts, processor, graph, generator, seeded):
        events = [{"subject": "Call", "start": {"dateTime": "2025-10-02T09:00:00"},
                   "end": {"dateTime": "2025-10-02T09:30:00"}}]
        graph.list_calendar_events.return_value = events
        record, account = await claim(records, accounts, seeded)

        await processor.process(record["id"], seeded.message_id, account)

        assert generator.generate.call_args.args[0].calendar_events == events
        start, end = graph.list_calendar_events.call_args.args
        assert (end - start).days == 30

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, processor, records, token_provider, accounts, seeded):
        token_provider.get_valid_access_token.side_effect = NoRefreshTokenError("no refresh token")
        record, account = await claim(records, accounts, seeded)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.ERROR
        assert "re-authentication" in (await records.get_by_id(record["id"]))["error_reason"]

    @pytest.mark.asyncio
    async def test_refresh_failure(self, records, accounts, processor, token_provider, seeded):
        token_provider.get_valid_access_token.side_effect = TokenRefreshError("invalid_grant")
        record, account = await claim(records, accounts, seeded)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.ERROR
        assert outcome.reason.startswith("Credential failure")

    @pytest.mark.asyncio
    async def test_generation_failure(self, processor, records, generator, graph, accounts, seeded):
        generator.generate.side_effect = ResponseGenerationError("rate limited")
        record, account = await claim(records, accounts, seeded)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.ERROR
        assert (await records.get_by_id(record["id"]))["status"] == "error"
        graph.create_draft_reply.assert_not_called()

    @pytest.mark.asyncio
    async def test_inactive_account(self, records, accounts, processor, graph, seeded):
        record, account = await claim(records, accounts, seeded)
        account["is_active"] = False

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.ERROR
        graph.get_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_terminal_status_written_once(self, processor, records, graph, accounts, seeded):
        """Test a second run cannot overwrite a finished record."""
        record, account = await claim(records, accounts, seeded)
        await processor.process(record["id"], seeded.message_id, account)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.DRAFT_CREATED
        assert outcome.reason == "Record no longer open"
        assert graph.create_draft_reply.await_count == 1

    @pytest.mark.asyncio
    async def test_record_held_by_another_run(self, processor, records, graph, accounts, seeded):
        """Test a run that finds the record already in processing leaves it alone."""
        record, account = await claim(records, accounts, seeded)
        await records.mark_processing(record["id"], "Meeting next week", "client@example.com", "Body")

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.PROCESSING
        assert outcome.reason == "Record no longer open"
        graph.create_draft_reply.assert_not_called()
        assert (await records.get_by_id(record["id"]))["status"] == "processing"

    @pytest.mark.asyncio
    async def test_calendar_timeout_degrades(self, records, accounts, processor, graph, generator, seeded):
        """Test a calendar request that times out still produces a draft."""
        graph.list_calendar_events.side_effect = GraphAPIError("Graph request timed out")
        record, account = await claim(records, accounts, seeded)

        outcome = await processor.process(record["id"], seeded.message_id, account)

        assert outcome.status == ProcessingStatus.DRAFT_CREATED
        assert generator.generate.call_args.args[0].calendar_events is None

    @pytest.mark.asyncio
    async def test_thread_history_included(self, token_provider, generator, records, accounts, graph,
                                           seeded):
        graph.get_conversation_thread.return_value = [
            graph_message(),
            {"id": "older", "receivedDateTime": "2025-09-30T10:00:00Z",
             "from": {"emailAddress": {"address": "client@example.com"}},
             "body": {"content": "Earlier note"}},
        ]
        processor = DraftProcessor(token_provider, generator, records=records, accounts=accounts,
                                   graph_client_factory=lambda token: graph, include_thread_history=True)
        record, account = await claim(records, accounts, seeded)

        await processor.process(record["id"], seeded.message_id, account)

        assert "Earlier note" in generator.generate.call_args.args[0].conversation_history
