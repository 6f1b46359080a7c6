"""
Deletion Sync

Removes a generated draft when the message it answered is deleted from
the inbox. Deletion notifications are handled immediately, without the
processing delay of the creation path.

Design Considerations:
- The deletion flag on the record is claimed atomically before the draft
  is deleted, so a redelivered notification issues at most one delete
- A draft that is already gone counts as deleted
- A failed delete still leaves the record flagged and stores the failure;
  a leftover draft is preferred over retrying against a deleted resource
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from src.auth.token_provider import TokenProvider
from src.email_processing.handlers.content import parse_message_id, truncate_id
from src.email_processing.models import HandleResult, NotificationEvent, NotificationStatus
from src.email_processing.notifications.dedup import NotificationDedupCache
from src.integrations.graph.client import GraphClient
from src.storage.account_repository import MailAccountRepository
from src.storage.models import ChangeType
from src.storage.processing_repository import ProcessingRecordRepository

logger = logging.getLogger(__name__)


class DeletionSync:
    """Handles 'deleted' push notifications."""

    def __init__(
        self,
        token_provider: TokenProvider,
        cache: NotificationDedupCache,
        records: Optional[ProcessingRecordRepository] = None,
        accounts: Optional[MailAccountRepository] = None,
        graph_client_factory: Callable[[str], GraphClient] = GraphClient,
    ):
        self.token_provider = token_provider
        self.cache = cache
        self.records = records or ProcessingRecordRepository()
        self.accounts = accounts or MailAccountRepository()
        self.graph_client_factory = graph_client_factory

    @staticmethod
    def cache_key(message_id: str) -> str:
        return f"{message_id}-delete"

    async def handle(self, event: NotificationEvent) -> HandleResult:
        """
        Delete the draft generated for a deleted message, if there is one.

        Args:
            event: Push notification from the deletion subscription

        Returns:
            HandleResult describing what happened
        """
        if event.change_type != ChangeType.DELETED.value:
            logger.info(f"Ignoring {event.change_type} notification on the deletion endpoint")
            return HandleResult(
                status=NotificationStatus.SKIPPED_BY_DESIGN,
                reason=f"Ignoring {event.change_type} event - only processing deletions",
            )

        message_id = parse_message_id(event.resource)
        if not message_id:
            logger.error(f"Invalid message ID in delete notification: {event.resource!r}")
            return HandleResult(status=NotificationStatus.ERROR, reason="Invalid message ID")

        short_id = truncate_id(message_id)
        key = self.cache_key(message_id)
        if not self.cache.claim(key):
            logger.info(f"Delete notification already processed: {short_id}")
            return HandleResult(status=NotificationStatus.DUPLICATE_PREVENTED, message_id=short_id,
                                reason="Already processed")

        try:
            record = await self.records.find_draft_for_deletion(message_id)
            if not record:
                logger.info(f"No AI draft found for deleted email {short_id}")
                return HandleResult(status=NotificationStatus.SKIPPED_NO_DRAFT, message_id=short_id,
                                    reason="No associated AI draft found")

            resolution = await self.accounts.resolve_subscription(event.client_state, ChangeType.DELETED.value)
            account = resolution["account"] if resolution else None
            if not account or account["id"] != record["email_account_id"] or not account["is_active"]:
                self.cache.release(key)
                logger.warning(f"Delete notification for {short_id} has no matching active subscription")
                return HandleResult(status=NotificationStatus.ERROR, message_id=short_id,
                                    reason="No subscription")

            if not await self.records.claim_draft_deletion(record["id"]):
                return HandleResult(status=NotificationStatus.DUPLICATE_PREVENTED, message_id=short_id,
                                    reason="Draft deletion already claimed")
        except Exception as e:
            self.cache.release(key)
            logger.error(f"Delete notification processing error for {short_id}: {str(e)}")
            return HandleResult(status=NotificationStatus.ERROR, message_id=short_id, reason="Database error")

        draft_id = record["draft_message_id"]
        try:
            access_token = await self.token_provider.get_valid_access_token(account["id"])
            graph = self.graph_client_factory(access_token)
            deleted = await graph.delete_draft(draft_id)
        except Exception as e:
            logger.error(f"Failed to delete AI draft {truncate_id(draft_id)}: {str(e)}")
            await self.records.record_draft_deletion_failure(record["id"], str(e))
            return HandleResult(
                status=NotificationStatus.DELETE_FAILED,
                message_id=short_id,
                record_id=record["id"],
                reason="Failed to delete AI draft but marked as processed",
            )

        reason = ("AI draft auto-deleted when original email was deleted" if deleted
                  else "AI draft was already removed")
        logger.info(f"AI draft {truncate_id(draft_id)} handled for deleted email {short_id}: {reason}")
        return HandleResult(status=NotificationStatus.DRAFT_DELETED, message_id=short_id,
                            record_id=record["id"], reason=reason)

    async def handle_batch(self, events: Iterable[NotificationEvent]) -> List[HandleResult]:
        """Handle each deletion event in order; one failing event never aborts the batch."""
        results = []
        for event in events:
            try:
                results.append(await self.handle(event))
            except Exception as e:
                logger.error(f"Unexpected error handling delete notification: {str(e)}")
                results.append(HandleResult(status=NotificationStatus.ERROR, reason=str(e)))
        return results

    def sweep(self) -> int:
        return self.cache.purge_expired()

    def status(self) -> Dict[str, int]:
        return {"cache_size": len(self.cache)}
