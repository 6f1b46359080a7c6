"""
Unit tests for the notification handler.

Dedup layers and claims run against the in-memory database; the
processing step is an AsyncMock started through the scheduler's
``fire()`` so tests never wait for the processing delay.
"""

import asyncio
import random
from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock, AsyncMock, patch

from src.email_processing.handlers.response_generator import ResponseGenerator
from src.email_processing.models import NotificationEvent, NotificationStatus
from src.email_processing.notifications.dedup import NotificationDedupCache
from src.email_processing.notifications.handler import NotificationHandler, RecordNotReprocessableError
from src.email_processing.notifications.scheduler import DelayedTaskScheduler, ProcessingDelayPolicy
from src.email_processing.processor import DraftProcessor, ProcessingOutcome
from src.integrations.graph.client import DraftResult
from src.integrations.groq.client import CompletionResult
from src.storage.models import MailAccount, ProcessingRecord, ProcessingStatus, StyleProfile
from src.storage.processing_repository import DuplicateClaimError


MESSAGE_ID = "AAMkAGI2TG93AAAmessage0001="
FIXED_NOW = datetime(2025, 10, 1, 12, 0, tzinfo=timezone.utc)

class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def created_event(message_id, client_state, change_type="created"):
    return NotificationEvent(
        change_type=change_type,
        resource=f"Users/8f3c2b/Messages/{message_id}",
        client_state=client_state,
        subscription_id="sub-created-1",
    )


@pytest.fixture
def processor():
    processor = MagicMock()
    processor.process = AsyncMock(return_value=ProcessingOutcome(status=ProcessingStatus.DRAFT_CREATED))
    return processor


def make_handler(processor, records, accounts, scheduler=None, honor_client_delay=False):
    return NotificationHandler(
        processor,
        NotificationDedupCache(ttl_seconds=600),
        scheduler or DelayedTaskScheduler(),
        ProcessingDelayPolicy(45, 60, honor_client_delay=honor_client_delay, rng=random.Random(1)),
        records=records,
        accounts=accounts,
    )


@pytest.fixture
def handler(processor, records, accounts):
    return make_handler(processor, records, accounts)


@pytest.fixture
def graph():
    graph = MagicMock()
    graph.get_message = AsyncMock(return_value={
        "id": MESSAGE_ID,
        "subject": "Meeting next week",
        "isRead": False,
        "conversationId": "conv-1",
        "from": {"emailAddress": {"address": "client@example.com"}},
        "body": {"contentType": "html", "content": "<p>Can we meet Thursday?</p>"},
    })
    graph.list_calendar_events = AsyncMock(return_value=[])
    graph.create_draft_reply = AsyncMock(return_value=DraftResult(draft_id="draft-1", was_unread=True))
    return graph


@pytest.fixture
def draft_processor(graph, records, accounts):
    """Real processing step with Graph, Groq and credentials mocked."""
    token_provider = MagicMock()
    token_provider.get_valid_access_token = AsyncMock(return_value="access-token-1")
    groq_client = MagicMock()
    groq_client.complete = AsyncMock(
        return_value=CompletionResult(content="Thursday at 2pm works for me.", model="test")
    )
    return DraftProcessor(
        token_provider,
        ResponseGenerator(groq_client, now=lambda: FIXED_NOW),
        records=records,
        accounts=accounts,
        graph_client_factory=lambda token: graph,
        now=lambda: FIXED_NOW,
    )

class TestNotificationHandler:
    """Test suite for dedup layers and scheduling."""

    @pytest.mark.asyncio
    async def test_claims_and_schedules(self, handler, processor, records, seeded):
        """Test a new message is claimed and its processing step scheduled."""
        result = await handler.handle(created_event(seeded.message_id, seeded.created_client_state))

        assert result.status == NotificationStatus.PENDING_DELAYED
        assert 45 <= result.delay_seconds <= 60
        assert result.to_dict()["message_id"] == "AAMkAGI2TG93AAA..."
        record = await records.get_by_message_id(seeded.message_id)
        assert record["status"] == "pending"
        assert record["subject"] == "Processing..."
        assert handler.scheduler.is_scheduled(seeded.message_id)

        await handler.scheduler.fire(seeded.message_id)

        processor.process.assert_awaited_once()
        record_id, message_id, account = processor.process.call_args.args
        assert (record_id, message_id) == (record["id"], seeded.message_id)
        assert account["id"] == seeded.account_id

    @pytest.mark.asyncio
    async def test_non_created_events_are_skipped(self, handler, seeded):
        result = await handler.handle(created_event(seeded.message_id, seeded.created_client_state, "updated"))

        assert result.status == NotificationStatus.SKIPPED_BY_DESIGN
        assert len(handler.cache) == 0

    @pytest.mark.asyncio
    async def test_invalid_message_id(self, handler, seeded):
        result = await handler.handle(created_event("short", seeded.created_client_state))

        assert result.status == NotificationStatus.ERROR
        assert result.reason == "Invalid message ID"

    @pytest.mark.asyncio
    async def test_cache_suppresses_redelivery(self, handler, seeded):
        event = created_event(seeded.message_id, seeded.created_client_state)

        await handler.handle(event)
        result = await handler.handle(event)

        assert result.status == NotificationStatus.DUPLICATE_PREVENTED_CACHE
        assert handler.scheduler.pending_count == 1
        await handler.scheduler.shutdown(wait=False)

    @pytest.mark.asyncio
    async def test_database_suppresses_after_cache_loss(self, handler, seeded):
        """Test the ledger lookup catches duplicates the cache no longer remembers."""
        event = created_event(seeded.message_id, seeded.created_client_state)
        await handler.handle(event)
        handler.cache.release(handler.cache_key(seeded.message_id, seeded.created_client_state))

        result = await handler.handle(event)

        assert result.status == NotificationStatus.DUPLICATE_PREVENTED_DATABASE
        assert result.reason == "Already pending"
        await handler.scheduler.shutdown(wait=False)

    @pytest.mark.asyncio
    async def test_race_lost_at_claim(self, handler, records, seeded):
        with patch.object(records, "claim", AsyncMock(side_effect=DuplicateClaimError(seeded.message_id))):
            result = await handler.handle(created_event(seeded.message_id, seeded.created_client_state))

        assert result.status == NotificationStatus.DUPLICATE_PREVENTED_RACE
        assert handler.scheduler.pending_count == 0

    @pytest.mark.asyncio
    async def test_unknown_client_state_releases_cache(self, handler, records, seeded):
        result = await handler.handle(created_event(seeded.message_id, "unknown-state"))

        assert result.status == NotificationStatus.ERROR
        assert result.reason == "No subscription"
        assert len(handler.cache) == 0
        assert await records.get_by_message_id(seeded.message_id) is None

    @pytest.mark.asyncio
    async def test_deleted_subscription_state_is_rejected(self, handler, seeded):
        """Test a deletion correlation token cannot trigger processing."""
        result = await handler.handle(created_event(seeded.message_id, seeded.deleted_client_state))

        assert result.reason == "No subscription"

    @pytest.mark.asyncio
    async def test_inactive_account(self, handler, session_scope, seeded):
        with session_scope() as session:
            session.get(MailAccount, seeded.account_id).is_active = False

        result = await handler.handle(created_event(seeded.message_id, seeded.created_client_state))

        assert result.reason == "Account inactive"
        assert len(handler.cache) == 0

    @pytest.mark.asyncio
    async def test_database_error_releases_cache(self, handler, records, seeded):
        with patch.object(records, "get_by_message_id", AsyncMock(side_effect=RuntimeError("db down"))):
            result = await handler.handle(created_event(seeded.message_id, seeded.created_client_state))

        assert result.status == NotificationStatus.ERROR
        assert result.reason == "Database error"
        assert len(handler.cache) == 0

    @pytest.mark.asyncio
    @pytest.mark.asyncio
    async def test_client_response_delay_survives_sweep(self, processor, records, accounts,
                                                        session_scope, seeded):
        """Test a long client delay is not swept before its timer is due."""
        with session_scope() as session:
            session.query(StyleProfile).update({StyleProfile.response_delay: 10})
        clock = FakeClock()
        handler = make_handler(processor, records, accounts,
                               scheduler=DelayedTaskScheduler(stale_after_seconds=300, clock=clock),
                               honor_client_delay=True)

        result = await handler.handle(created_event(seeded.message_id, seeded.created_client_state))
        assert 600 <= result.delay_seconds <= 615

        clock.now = 360
        assert handler.sweep()["stale_timers_cancelled"] == 0
        assert handler.scheduler.is_scheduled(seeded.message_id)

        await handler.scheduler.fire(seeded.message_id)
        processor.process.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_delivery(self, processor, records, accounts, session_scope, seeded):
        """Test two workers racing on one message produce one record and one step."""
        first = make_handler(processor, records, accounts)
        second = make_handler(processor, records, accounts)
        lookup = records.get_by_message_id

        async def lookup_then_yield(message_id):
            existing = await lookup(message_id)
            await asyncio.sleep(0)
            return existing

        event = created_event(seeded.message_id, seeded.created_client_state)
        with patch.object(records, "get_by_message_id", AsyncMock(side_effect=lookup_then_yield)):
            results = await asyncio.gather(first.handle(event), second.handle(event))

        assert sorted(result.status.value for result in results) == sorted([
            NotificationStatus.PENDING_DELAYED.value,
            NotificationStatus.DUPLICATE_PREVENTED_RACE.value,
        ])
        for handler in (first, second):
            if handler.scheduler.is_scheduled(seeded.message_id):
                await handler.scheduler.fire(seeded.message_id)

        processor.process.assert_awaited_once()
        with session_scope() as session:
            assert session.query(ProcessingRecord).filter(
                ProcessingRecord.message_id == seeded.message_id
            ).count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_redelivery_to_one_worker(self, handler, processor, records, seeded):
        event = created_event(seeded.message_id, seeded.created_client_state)

        results = await asyncio.gather(handler.handle(event), handler.handle(event))

        assert sorted(result.status.value for result in results) == sorted([
            NotificationStatus.PENDING_DELAYED.value,
            NotificationStatus.DUPLICATE_PREVENTED_CACHE.value,
        ])
        await handler.scheduler.fire(seeded.message_id)
        processor.process.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_batch_isolates_failures(self, handler, seeded):
        events = [
            created_event(seeded.message_id, seeded.created_client_state),
            created_event("short", seeded.created_client_state),
            created_event(seeded.message_id, seeded.created_client_state),
        ]

        results = await handler.handle_batch(events)

        assert [result.status for result in results] == [
            NotificationStatus.PENDING_DELAYED,
            NotificationStatus.ERROR,
            NotificationStatus.DUPLICATE_PREVENTED_CACHE,
        ]
        assert handler.status() == {"cache_size": 1, "scheduled_tasks": 1, "running_tasks": 0}
        await handler.scheduler.shutdown(wait=False)


class TestReprocess:
    """Test suite for operator reprocessing."""

    @pytest.mark.asyncio
    async def test_reprocess_error_record(self, handler, processor, records, seeded):
        record = await records.claim(seeded.message_id, seeded.account_id)
        await records.finalize(record["id"], ProcessingStatus.ERROR, error_reason="Processing failed: boom")

        outcome = await handler.reprocess(record["id"])

        assert outcome.status == ProcessingStatus.DRAFT_CREATED
        processor.process.assert_awaited_once()
        assert processor.process.call_args.args[0] == record["id"]
        reopened = await records.get_by_id(record["id"])
        assert reopened["status"] == "pending"
        assert reopened["error_reason"] is None

    @pytest.mark.asyncio
    async def test_reprocess_cancels_pending_timer(self, handler, processor, records, seeded):
        await handler.handle(created_event(seeded.message_id, seeded.created_client_state))
        record = await records.get_by_message_id(seeded.message_id)

        await handler.reprocess(record["id"])

        assert not handler.scheduler.is_scheduled(seeded.message_id)
        assert processor.process.await_count == 1

    @pytest.mark.asyncio
    async def test_finished_record_is_not_reprocessable(self, handler, records, seeded):
        record = await records.claim(seeded.message_id, seeded.account_id)
        await records.finalize(record["id"], ProcessingStatus.DRAFT_CREATED, draft_message_id="draft-1")

        with pytest.raises(RecordNotReprocessableError):
            await handler.reprocess(record["id"])
        with pytest.raises(RecordNotReprocessableError):
            await handler.reprocess("missing")

    @pytest.mark.asyncio
    async def test_in_flight_step_is_not_reprocessed(self, draft_processor, graph, records, accounts, seeded):
        """Test a record whose step already started cannot get a second draft."""
        handler = make_handler(draft_processor, records, accounts)
        gate = asyncio.Event()
        message = graph.get_message.return_value

        async def get_message_when_released(message_id):
            await gate.wait()
            return message

        graph.get_message.side_effect = get_message_when_released
        await handler.handle(created_event(seeded.message_id, seeded.created_client_state))
        record = await records.get_by_message_id(seeded.message_id)

        running = handler.scheduler.fire(seeded.message_id)
        await asyncio.sleep(0)
        assert handler.scheduler.is_running(seeded.message_id)

        with pytest.raises(RecordNotReprocessableError):
            await handler.reprocess(record["id"])

        gate.set()
        outcome = await running

        assert outcome.status == ProcessingStatus.DRAFT_CREATED
        graph.create_draft_reply.assert_awaited_once()
        assert not handler.scheduler.is_running(seeded.message_id)


class TestEndToEnd:
    """Test suite for a notification flowing through to a reply draft."""

    @pytest.mark.asyncio
    async def test_notification_to_draft(self, draft_processor, graph, records, accounts, seeded):
        handler = make_handler(draft_processor, records, accounts)
        event = created_event(seeded.message_id, seeded.created_client_state)

        result = await handler.handle(event)
        assert result.status == NotificationStatus.PENDING_DELAYED

        outcome = await handler.scheduler.fire(seeded.message_id)

        assert outcome.status == ProcessingStatus.DRAFT_CREATED
        stored = await records.get_by_message_id(seeded.message_id)
        assert stored["status"] == "draft_created"
        assert stored["ai_response"]
        assert stored["draft_message_id"] == "draft-1"
        assert stored["subject"] == "Meeting next week"

        again = await handler.handle(event)

        assert again.status == NotificationStatus.DUPLICATE_PREVENTED_CACHE
        graph.create_draft_reply.assert_awaited_once()
