"""
Delayed Processing Step

Turns one claimed message into a reply draft. Runs on a scheduler timer
after the webhook request that claimed the message has returned.

Design Considerations:
- Every failure after the claim is absorbed into the record's terminal
  status; nothing is retried automatically
- The record moves pending -> processing -> terminal and every write is
  conditional on the record still being open
- The message is read without changing its read state, and the unread
  flag is restored after the reply draft is created
- A calendar failure degrades the prompt to "schedule is open" instead of
  failing the step
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from src.auth.microsoft_oauth import TokenRefreshError
from src.auth.token_provider import MailAccountNotFoundError, NoRefreshTokenError, TokenProvider
from src.email_processing.handlers.content import (
    extract_email_address,
    is_sender_filtered,
    sanitize_email_content,
    truncate_id,
)
from src.email_processing.handlers.response_generator import (
    ResponseGenerator,
    format_conversation_history,
)
from src.email_processing.models import EmailContext, StyleProfileSettings
from src.integrations.graph.client import GraphAPIError, GraphClient
from src.storage.account_repository import MailAccountRepository
from src.storage.models import ProcessingStatus
from src.storage.processing_repository import ProcessingRecordRepository

logger = logging.getLogger(__name__)

GraphClientFactory = Callable[[str], GraphClient]


@dataclass
class ProcessingOutcome:
    """Terminal result of one processing step."""
    status: ProcessingStatus
    reason: Optional[str] = None
    draft_message_id: Optional[str] = None
    read_state_restored: bool = True


class DraftProcessor:
    """Runs the processing step for a claimed message."""

    def __init__(
        self,
        token_provider: TokenProvider,
        response_generator: ResponseGenerator,
        records: Optional[ProcessingRecordRepository] = None,
        accounts: Optional[MailAccountRepository] = None,
        graph_client_factory: GraphClientFactory = GraphClient,
        calendar_lookahead_days: int = 30,
        include_thread_history: bool = False,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.token_provider = token_provider
        self.response_generator = response_generator
        self.records = records or ProcessingRecordRepository()
        self.accounts = accounts or MailAccountRepository()
        self.graph_client_factory = graph_client_factory
        self.calendar_lookahead_days = calendar_lookahead_days
        self.include_thread_history = include_thread_history
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def process(self, record_id: str, message_id: str, account: Dict[str, Any]) -> ProcessingOutcome:
        """
        Process a claimed message through to a terminal record status.

        Args:
            record_id: Processing record created by the claim
            message_id: Provider message id
            account: Owning mailbox as returned by the account repository

        Returns:
            ProcessingOutcome describing the terminal status written
        """
        short_id = truncate_id(message_id)
        logger.info(f"Starting AI processing for email {short_id}")

        try:
            return await self._process(record_id, message_id, account)
        except NoRefreshTokenError as e:
            logger.error(f"Mailbox {account.get('id')} needs re-authentication: {str(e)}")
            return await self._finish(
                record_id, ProcessingStatus.ERROR,
                reason=f"Mailbox requires re-authentication: {str(e)}",
            )
        except (TokenRefreshError, MailAccountNotFoundError) as e:
            logger.error(f"Could not obtain credentials for {short_id}: {str(e)}")
            return await self._finish(record_id, ProcessingStatus.ERROR,
                                      reason=f"Credential failure: {str(e)}")
        except Exception as e:
            logger.error(f"AI processing error for {short_id}: {str(e)}")
            return await self._finish(record_id, ProcessingStatus.ERROR,
                                      reason=f"Processing failed: {str(e)}")

    async def _process(self, record_id: str, message_id: str, account: Dict[str, Any]) -> ProcessingOutcome:
        if not account or not account.get("is_active"):
            return await self._finish(record_id, ProcessingStatus.ERROR, reason="Mail account inactive")

        access_token = await self.token_provider.get_valid_access_token(account["id"])
        graph = self.graph_client_factory(access_token)

        message = await graph.get_message(message_id)
        sender = extract_email_address(message.get("from"))
        subject = message.get("subject") or "No subject"
        body = sanitize_email_content((message.get("body") or {}).get("content"))

        if not await self.records.mark_processing(record_id, subject, sender, body):
            logger.warning(f"Record {record_id} is no longer open; abandoning processing")
            record = await self.records.get_by_id(record_id)
            status = ProcessingStatus(record["status"]) if record else ProcessingStatus.ERROR
            return ProcessingOutcome(status=status, reason="Record no longer open")

        profile = await self.accounts.get_style_profile(account["client_id"])
        style = StyleProfileSettings.from_record(profile, account.get("client_name", ""))

        if not style.auto_response:
            logger.info(f"Auto-response disabled for client {account['client_id']}")
            return await self._finish(record_id, ProcessingStatus.SKIPPED, reason="Auto-response disabled")

        if is_sender_filtered(sender, style.email_filters):
            logger.info(f"Email filtered: sender {sender} matches the client's filter list")
            return await self._finish(record_id, ProcessingStatus.FILTERED,
                                      reason=f"Sender {sender} is filtered")

        calendar_events = await self._load_calendar(graph)
        history = await self._load_history(graph, message) if self.include_thread_history else ""

        context = EmailContext(
            subject=subject,
            sender=sender,
            body=body,
            style=style,
            calendar_events=calendar_events,
            conversation_history=history,
        )
        reply = await self.response_generator.generate(context)

        draft = await graph.create_draft_reply(
            message_id, reply, style.signature, reply_all=True, original=message
        )
        if not draft.read_state_restored:
            logger.warning(f"Draft created but unread state of {truncate_id(message_id)} was not restored")

        outcome = await self._finish(
            record_id,
            ProcessingStatus.DRAFT_CREATED,
            ai_response=reply,
            draft_message_id=draft.draft_id,
            tokens_used=self.response_generator.estimate_tokens(reply),
        )
        outcome.read_state_restored = draft.read_state_restored
        logger.info(f"Processing completed for {truncate_id(message_id)}: draft {truncate_id(draft.draft_id)}")
        return outcome

    async def _load_calendar(self, graph: GraphClient) -> Optional[List[Dict[str, Any]]]:
        start = self._now()
        end = start + timedelta(days=self.calendar_lookahead_days)
        try:
            events = await graph.list_calendar_events(start, end)
        except GraphAPIError as e:
            logger.warning(f"Calendar fetch failed, continuing with an open schedule: {str(e)}")
            return None

        logger.info(f"Found {len(events)} calendar events for the next {self.calendar_lookahead_days} days")
        return events or None

    async def _load_history(self, graph: GraphClient, message: Dict[str, Any]) -> str:
        thread = await graph.get_conversation_thread(message.get("conversationId"))
        if len(thread) <= 1:
            return ""
        return format_conversation_history(thread, current_message_id=message.get("id"))

    async def _finish(
        self,
        record_id: str,
        status: ProcessingStatus,
        reason: Optional[str] = None,
        ai_response: Optional[str] = None,
        draft_message_id: Optional[str] = None,
        tokens_used: Optional[int] = None,
    ) -> ProcessingOutcome:
        await self.records.finalize(
            record_id,
            status,
            ai_response=ai_response,
            draft_message_id=draft_message_id,
            tokens_used=tokens_used,
            error_reason=reason,
        )
        return ProcessingOutcome(status=status, reason=reason, draft_message_id=draft_message_id)
