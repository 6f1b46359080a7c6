"""
Microsoft Graph Mail Client

Typed operations against the Microsoft Graph mailbox API used by the draft
pipeline: message reads, calendar reads, threaded draft replies, draft
deletion and push subscription management.

Design Considerations:
- Reading a message or creating a reply never leaves a visible change to
  the source message's read state; createReply/createReplyAll marks the
  source message read, so the original unread flag is restored afterwards
- Subscriptions are always scoped to the inbox folder with a single
  change type, so creation and deletion paths stay independent
- Graph failures surface as GraphAPIError, with GraphNotFoundError for 404
  so callers can treat missing resources as already handled
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from src.integrations.graph.reply_builder import build_reply_body

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
INBOX_RESOURCE = "/me/mailFolders('Inbox')/messages"
SUPPORTED_CHANGE_TYPES = ("created", "deleted")

MESSAGE_FIELDS = (
    "id,subject,from,toRecipients,ccRecipients,body,receivedDateTime,conversationId,isRead"
)
CALENDAR_FIELDS = "subject,start,end,location,attendees,showAs,isAllDay"

_INBOX_PREFIXES = (
    "me/mailfolders('inbox')/messages",
    "me/mailfolders/inbox/messages",
    "mailfolders('inbox')/messages",
    "mailfolders/inbox/messages",
)


class GraphAPIError(Exception):
    """Raised when Microsoft Graph returns an error response."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class GraphNotFoundError(GraphAPIError):
    """Raised when the requested Graph resource does not exist."""


@dataclass
class DraftResult:
    """Outcome of creating a reply draft."""
    draft_id: str
    was_unread: bool
    read_state_restored: bool = True


@dataclass
class SweepResult:
    """Outcome of the bad-subscription sweep."""
    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleted_count": len(self.deleted),
            "deleted": self.deleted,
            "kept": self.kept,
            "errors": self.errors,
        }


def format_graph_datetime(value: datetime) -> str:
    """Format a datetime the way Graph expects in request bodies."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a Graph timestamp into a naive UTC datetime."""
    if not value:
        return None
    value = value.replace("Z", "+00:00")
    # Graph emits seven fractional digits; fromisoformat accepts at most six
    if "." in value:
        head, _, tail = value.partition(".")
        digits = tail
        for index, ch in enumerate(tail):
            if not ch.isdigit():
                digits = tail[:index]
                break
        offset = tail[len(digits):]
        value = f"{head}.{digits[:6]}{offset}"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def is_inbox_scoped(resource: Optional[str]) -> bool:
    """Check whether a subscription resource is limited to the inbox messages."""
    normalized = (resource or "").strip().lstrip("/").lower().replace('"', "'")
    return normalized.startswith(_INBOX_PREFIXES)


def is_bad_subscription(subscription: Dict[str, Any]) -> bool:
    """
    A subscription is bad when it watches more than the inbox or combines
    change types, since either would double-fire the pipeline.
    """
    change_type = (subscription.get("changeType") or "").strip().lower()
    if change_type not in SUPPORTED_CHANGE_TYPES:
        return True
    return not is_inbox_scoped(subscription.get("resource"))


class GraphClient:
    """
    Async Microsoft Graph client bound to one mailbox access token.

    A new aiohttp session is opened per request; the client itself holds
    no connection state and is cheap to construct per processing step.
    """

    def __init__(
        self,
        access_token: str,
        timeout: float = 30.0,
        base_url: str = GRAPH_BASE_URL,
        session_factory: Optional[Callable[..., aiohttp.ClientSession]] = None,
    ):
        if not access_token:
            raise ValueError("An access token is required for Microsoft Graph requests")

        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session_factory = session_factory or aiohttp.ClientSession

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Perform a Graph request and decode the JSON response.

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            GraphNotFoundError: On HTTP 404
            GraphAPIError: On any other non-2xx status or transport failure
        """
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        request_headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)

        try:
            async with self._session_factory(timeout=self.timeout) as session:
                async with session.request(method, url, params=params, json=json,
                                           headers=request_headers) as response:
                    if response.status == 404:
                        text = await response.text()
                        raise GraphNotFoundError(f"{method} {path} not found: {text[:200]}", status=404)

                    if response.status >= 400:
                        text = await response.text()
                        logger.error(f"Graph {method} {path} failed with status {response.status}")
                        raise GraphAPIError(
                            f"{method} {path} failed with status {response.status}: {text[:300]}",
                            status=response.status,
                        )

                    if response.status == 204:
                        return None

                    text = await response.text()
                    if not text:
                        return None
                    return await response.json(content_type=None)
        except asyncio.TimeoutError:
            logger.error(f"Graph {method} {path} timed out after {self.timeout.total}s")
            raise GraphAPIError(f"{method} {path} timed out")
        except aiohttp.ClientError as e:
            logger.error(f"Graph {method} {path} transport error: {str(e)}")
            raise GraphAPIError(f"{method} {path} failed: {str(e)}")

    # Messages

    async def get_message(self, message_id: str, preserve_unread: bool = True) -> Dict[str, Any]:
        """
        Fetch a message without disturbing its read state.

        Args:
            message_id: Graph message id
            preserve_unread: Re-assert the unread flag when the message was
                unread, in case another client marked it read on open

        Returns:
            Graph message resource

        Raises:
            GraphNotFoundError: If the message does not exist
        """
        message = await self._request(
            "GET", f"/me/messages/{message_id}", params={"$select": MESSAGE_FIELDS}
        )

        if preserve_unread and message and message.get("isRead") is False:
            await self._restore_unread(message_id)

        return message

    async def set_read_state(self, message_id: str, is_read: bool) -> None:
        """Set a message's read flag."""
        await self._request("PATCH", f"/me/messages/{message_id}", json={"isRead": is_read})

    async def _restore_unread(self, message_id: str) -> bool:
        try:
            await self.set_read_state(message_id, False)
            return True
        except GraphAPIError as e:
            logger.warning(f"Could not restore unread state for {message_id[:15]}...: {str(e)}")
            return False

    async def get_conversation_thread(self, conversation_id: str, top: int = 10) -> List[Dict[str, Any]]:
        """
        List the most recent messages of a conversation.

        Returns an empty list when the thread cannot be read.
        """
        if not conversation_id:
            return []

        escaped = conversation_id.replace("'", "''")
        try:
            data = await self._request("GET", "/me/messages", params={
                "$filter": f"conversationId eq '{escaped}'",
                "$select": "id,subject,from,body,receivedDateTime,conversationId",
                "$top": str(top),
            })
        except GraphAPIError as e:
            logger.error(f"Error fetching conversation thread: {str(e)}")
            return []

        messages = (data or {}).get("value", [])
        return sorted(messages, key=lambda message: message.get("receivedDateTime") or "", reverse=True)

    # Calendar

    async def get_mailbox_timezone(self) -> str:
        """Return the mailbox owner's configured timezone, defaulting to UTC."""
        settings = await self._request("GET", "/me/mailboxSettings")
        return (settings or {}).get("timeZone") or "UTC"

    async def list_calendar_events(self, start: datetime, end: datetime,
                                   top: int = 100) -> List[Dict[str, Any]]:
        """
        List calendar events between two instants, in the mailbox's timezone.

        Args:
            start: Window start
            end: Window end

        Returns:
            Graph event resources ordered by start time
        """
        mailbox_timezone = await self.get_mailbox_timezone()
        data = await self._request(
            "GET",
            "/me/events",
            params={
                "$filter": (
                    f"start/dateTime ge '{format_graph_datetime(start)}' "
                    f"and end/dateTime le '{format_graph_datetime(end)}'"
                ),
                "$select": CALENDAR_FIELDS,
                "$orderby": "start/dateTime",
                "$top": str(top),
            },
            headers={"Prefer": f'outlook.timezone="{mailbox_timezone}"'},
        )
        return (data or {}).get("value", [])

    # Drafts

    async def create_draft_reply(
        self,
        message_id: str,
        reply_html: str,
        signature: Optional[str] = None,
        reply_all: bool = True,
        original: Optional[Dict[str, Any]] = None,
    ) -> DraftResult:
        """
        Create a threaded reply draft and put the source message's read
        state back the way it was found.

        Args:
            message_id: Graph id of the message being answered
            reply_html: Generated reply body as an HTML fragment
            signature: Plain-text signature appended below the reply
            reply_all: Reply to all recipients instead of only the sender
            original: Already fetched source message, re-read when omitted

        Returns:
            DraftResult with the new draft id and read-state bookkeeping

        Raises:
            GraphAPIError: If the draft could not be created or filled
        """
        if original is None:
            original = await self.get_message(message_id, preserve_unread=False)
        was_unread = original.get("isRead") is False

        action = "createReplyAll" if reply_all else "createReply"
        draft = await self._request("POST", f"/me/messages/{message_id}/{action}", json={})
        draft_id = (draft or {}).get("id")
        if not draft_id:
            raise GraphAPIError(f"{action} returned no draft id")

        restored = True
        try:
            body = build_reply_body(reply_html, signature, original)
            await self._request("PATCH", f"/me/messages/{draft_id}", json={
                "body": {"contentType": "HTML", "content": body}
            })
        finally:
            if was_unread:
                restored = await self._restore_unread(message_id)

        logger.info(f"Draft {draft_id[:15]}... created for message {message_id[:15]}...")
        return DraftResult(draft_id=draft_id, was_unread=was_unread, read_state_restored=restored)

    async def delete_draft(self, draft_id: str) -> bool:
        """
        Delete a draft message.

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            await self._request("DELETE", f"/me/messages/{draft_id}")
            return True
        except GraphNotFoundError:
            logger.info(f"Draft {draft_id[:15]}... was already removed")
            return False

    # Subscriptions

    async def create_subscription(
        self,
        change_type: str,
        notification_url: str,
        client_state: str,
        expiry_minutes: int = 60,
        resource: str = INBOX_RESOURCE,
    ) -> Dict[str, Any]:
        """
        Create an inbox-scoped push subscription for a single change type.

        Raises:
            ValueError: For change types other than created or deleted
        """
        if change_type not in SUPPORTED_CHANGE_TYPES:
            raise ValueError(f"Unsupported change type: {change_type}")
        if not is_inbox_scoped(resource):
            raise ValueError(f"Subscriptions must be scoped to the inbox, got {resource}")

        expiry = datetime.now(timezone.utc) + timedelta(minutes=expiry_minutes)
        subscription = await self._request("POST", "/subscriptions", json={
            "changeType": change_type,
            "notificationUrl": notification_url,
            "resource": resource,
            "expirationDateTime": format_graph_datetime(expiry),
            "clientState": client_state,
        })
        logger.info(f"Created {change_type} subscription {subscription.get('id')}")
        return subscription

    async def create_created_subscription(self, notification_url: str, client_state: str,
                                          expiry_minutes: int = 60) -> Dict[str, Any]:
        """Subscribe to new inbox messages."""
        return await self.create_subscription("created", notification_url, client_state, expiry_minutes)

    async def create_deleted_subscription(self, notification_url: str, client_state: str,
                                          expiry_minutes: int = 60) -> Dict[str, Any]:
        """Subscribe to inbox message deletions."""
        return await self.create_subscription("deleted", notification_url, client_state, expiry_minutes)

    async def renew_subscription(self, subscription_id: str, expiry_minutes: int = 60) -> Dict[str, Any]:
        """Push a subscription's expiry forward."""
        expiry = datetime.now(timezone.utc) + timedelta(minutes=expiry_minutes)
        return await self._request("PATCH", f"/subscriptions/{subscription_id}", json={
            "expirationDateTime": format_graph_datetime(expiry),
        })

    async def delete_subscription(self, subscription_id: str) -> bool:
        """
        Delete a subscription.

        Returns:
            True if deleted, False if it no longer existed
        """
        try:
            await self._request("DELETE", f"/subscriptions/{subscription_id}")
            return True
        except GraphNotFoundError:
            return False

    async def list_subscriptions(self) -> List[Dict[str, Any]]:
        """List the subscriptions visible to this application and token."""
        data = await self._request("GET", "/subscriptions")
        return (data or {}).get("value", [])

    async def cleanup_bad_subscriptions(self) -> SweepResult:
        """
        Delete every subscription that watches more than the inbox or that
        combines change types.
        """
        result = SweepResult()
        for subscription in await self.list_subscriptions():
            subscription_id = subscription.get("id", "")
            if not is_bad_subscription(subscription):
                result.kept.append(subscription_id)
                continue

            try:
                await self.delete_subscription(subscription_id)
                result.deleted.append(subscription_id)
                logger.info(
                    f"Deleted bad subscription {subscription_id} "
                    f"({subscription.get('changeType')} on {subscription.get('resource')})"
                )
            except GraphAPIError as e:
                result.errors.append(f"{subscription_id}: {str(e)}")

        return result
