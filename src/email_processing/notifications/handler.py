"""
Notification Dedup & Scheduler

Entry point for 'created' push notifications. Validates each event,
deduplicates it and schedules the delayed processing step for messages
it manages to claim.

Design Considerations:
- Three dedup layers: an in-process TTL cache claimed before any I/O, a
  lookup in the processing ledger, and the uniqueness-guarded durable
  claim that settles concurrent races
- Duplicates are normal outcomes and are reported, not raised
- Conditions that leave the message unclaimed release the cache entry so
  a provider retry can still claim it
- Cache and timer registry are owned by this instance; there is no
  module-level state
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from src.email_processing.handlers.content import parse_message_id, truncate_id
from src.email_processing.models import HandleResult, NotificationEvent, NotificationStatus
from src.email_processing.notifications.dedup import NotificationDedupCache
from src.email_processing.notifications.scheduler import DelayedTaskScheduler, ProcessingDelayPolicy
from src.email_processing.processor import DraftProcessor, ProcessingOutcome
from src.storage.account_repository import MailAccountRepository
from src.storage.models import ChangeType
from src.storage.processing_repository import DuplicateClaimError, ProcessingRecordRepository

logger = logging.getLogger(__name__)


class RecordNotReprocessableError(LookupError):
    """Raised when a record does not exist or is not pending/error."""


class NotificationHandler:
    """Validates, deduplicates and schedules 'created' notifications."""

    def __init__(
        self,
        processor: DraftProcessor,
        cache: NotificationDedupCache,
        scheduler: DelayedTaskScheduler,
        delay_policy: ProcessingDelayPolicy,
        records: Optional[ProcessingRecordRepository] = None,
        accounts: Optional[MailAccountRepository] = None,
    ):
        self.processor = processor
        self.cache = cache
        self.scheduler = scheduler
        self.delay_policy = delay_policy
        self.records = records or ProcessingRecordRepository()
        self.accounts = accounts or MailAccountRepository()

    @staticmethod
    def cache_key(message_id: str, client_state: Optional[str]) -> str:
        return f"{message_id}-{client_state or ''}"

    async def handle(self, event: NotificationEvent) -> HandleResult:
        """
        Handle one push notification from the creation subscription.

        Args:
            event: Parsed notification

        Returns:
            HandleResult with the dedup or scheduling outcome
        """
        if event.change_type != ChangeType.CREATED.value:
            logger.info(f"Ignoring {event.change_type} notification - only processing new emails")
            return HandleResult(
                status=NotificationStatus.SKIPPED_BY_DESIGN,
                reason=f"Ignoring {event.change_type} event - only processing new emails",
            )

        if "messages" not in (event.resource or "").lower():
            logger.info(f"Ignoring notification for non-message resource {event.resource!r}")
            return HandleResult(status=NotificationStatus.SKIPPED_BY_DESIGN,
                                reason="Resource is not a message")

        message_id = parse_message_id(event.resource)
        if not message_id:
            logger.error(f"Invalid message ID in notification: {event.resource!r}")
            return HandleResult(status=NotificationStatus.ERROR, reason="Invalid message ID")

        short_id = truncate_id(message_id)
        key = self.cache_key(message_id, event.client_state)

        # Layer 1: optimistic in-process claim
        if not self.cache.claim(key):
            logger.info(f"Duplicate notification suppressed by cache: {short_id}")
            return HandleResult(status=NotificationStatus.DUPLICATE_PREVENTED_CACHE, message_id=short_id,
                                reason="Already processing")

        try:
            # Layer 2: durable lookup
            existing = await self.records.get_by_message_id(message_id)
            if existing:
                logger.info(f"Email already in database (status: {existing['status']}): {short_id}")
                return HandleResult(status=NotificationStatus.DUPLICATE_PREVENTED_DATABASE,
                                    message_id=short_id, reason=f"Already {existing['status']}")

            resolution = await self.accounts.resolve_subscription(event.client_state, ChangeType.CREATED.value)
            if not resolution:
                self.cache.release(key)
                logger.warning(f"No active subscription for client state "
                               f"{truncate_id(event.client_state, 20)}")
                return HandleResult(status=NotificationStatus.ERROR, message_id=short_id,
                                    reason="No subscription")

            account = resolution["account"]
            if not account["is_active"]:
                self.cache.release(key)
                logger.warning(f"Mail account {account['id']} is inactive")
                return HandleResult(status=NotificationStatus.ERROR, message_id=short_id,
                                    reason="Account inactive")

            # Layer 3: durable claim
            try:
                record = await self.records.claim(message_id, account["id"])
            except DuplicateClaimError:
                logger.info(f"Concurrent request won the claim for {short_id}")
                return HandleResult(status=NotificationStatus.DUPLICATE_PREVENTED_RACE, message_id=short_id,
                                    reason="Claimed by a concurrent request")

            delay = await self._delay_for(account)
        except Exception as e:
            self.cache.release(key)
            logger.error(f"Database error while handling {short_id}: {str(e)}")
            return HandleResult(status=NotificationStatus.ERROR, message_id=short_id, reason="Database error")

        record_id = record["id"]
        scheduled = self.scheduler.schedule(
            message_id,
            delay,
            lambda: self.processor.process(record_id, message_id, account),
        )
        if scheduled is None:
            return HandleResult(status=NotificationStatus.DUPLICATE_PREVENTED_CACHE, message_id=short_id,
                                record_id=record_id, reason="Processing already scheduled")

        logger.info(f"Scheduled processing of {short_id} in {delay:.1f}s")
        return HandleResult(
            status=NotificationStatus.PENDING_DELAYED,
            message_id=short_id,
            record_id=record_id,
            delay_seconds=delay,
            scheduled_for=scheduled.scheduled_for,
            reason=f"Processing scheduled in {round(delay)} seconds",
        )

    async def _delay_for(self, account: Dict[str, Any]) -> float:
        client_delay = 0
        if self.delay_policy.honor_client_delay:
            profile = await self.accounts.get_style_profile(account["client_id"])
            client_delay = int((profile or {}).get("response_delay") or 0)
        return self.delay_policy.delay_for(client_delay)

    async def handle_batch(self, events: Iterable[NotificationEvent]) -> List[HandleResult]:
        """Handle each event in order; one failing event never aborts the batch."""
        results = []
        for event in events:
            try:
                results.append(await self.handle(event))
            except Exception as e:
                logger.error(f"Unexpected error handling notification: {str(e)}")
                results.append(HandleResult(status=NotificationStatus.ERROR, reason=str(e)))
        return results

    async def reprocess(self, record_id: str) -> ProcessingOutcome:
        """
        Run the processing step again for a pending or failed record.

        The existing record is reused; no new record is created. A pending
        timer for the message is replaced by the immediate run, and a
        message whose step is already running is refused.

        Raises:
            RecordNotReprocessableError: If the record is missing, terminal
                in a non-error state, already being processed, or its
                mailbox no longer exists
        """
        current = await self.records.get_by_id(record_id)
        if current and self.scheduler.is_running(current["message_id"]):
            raise RecordNotReprocessableError(f"Record {record_id} is being processed")

        record = await self.records.reopen_for_reprocessing(record_id)
        if not record:
            raise RecordNotReprocessableError(f"Record {record_id} is not pending or in error")

        account = await self.accounts.get_mail_account(record["email_account_id"])
        if not account:
            raise RecordNotReprocessableError(f"Mail account for record {record_id} no longer exists")

        message_id = record["message_id"]
        task = self.scheduler.run_now(message_id, lambda: self.processor.process(record_id, message_id, account))
        if task is None:
            raise RecordNotReprocessableError(f"Record {record_id} is being processed")

        logger.info(f"Reprocessing record {record_id} ({truncate_id(message_id)})")
        return await task

    def sweep(self) -> Dict[str, int]:
        """Purge expired cache entries and forget stale timers."""
        return {
            "cache_entries_purged": self.cache.purge_expired(),
            "stale_timers_cancelled": self.scheduler.sweep(),
        }

    def status(self) -> Dict[str, int]:
        return {
            "cache_size": len(self.cache),
            "scheduled_tasks": self.scheduler.pending_count,
            "running_tasks": self.scheduler.running_count,
        }
