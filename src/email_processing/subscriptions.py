"""
Subscription Manager

Onboards mailboxes onto push notifications and keeps their subscriptions
alive: one inbox-scoped 'created' subscription and one 'deleted'
subscription per mailbox, each with its own correlation token.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from src.auth.token_provider import MailAccountNotFoundError, TokenProvider
from src.integrations.graph.client import (
    INBOX_RESOURCE,
    GraphAPIError,
    GraphClient,
    GraphNotFoundError,
    SweepResult,
    parse_graph_datetime,
)
from src.storage.account_repository import MailAccountRepository
from src.storage.models import ChangeType

logger = logging.getLogger(__name__)

CREATED_WEBHOOK_PATH = "/webhooks/email-received"
DELETED_WEBHOOK_PATH = "/webhooks/email-deleted"


def generate_client_state(email_address: str, change_type: str, timestamp_ms: Optional[int] = None) -> str:
    """Build the correlation token for a mailbox subscription."""
    timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    if change_type == ChangeType.DELETED.value:
        return f"email-agent-delete-{email_address}-{timestamp_ms}"
    return f"email-agent-{email_address}-{timestamp_ms}"


class SubscriptionManager:
    """Creates, renews and cleans up mailbox push subscriptions."""

    def __init__(
        self,
        token_provider: TokenProvider,
        webhook_base_url: str,
        accounts: Optional[MailAccountRepository] = None,
        graph_client_factory: Callable[[str], GraphClient] = GraphClient,
        expiry_minutes: int = 60,
        wall_clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.token_provider = token_provider
        self.webhook_base_url = (webhook_base_url or "").rstrip("/")
        self.accounts = accounts or MailAccountRepository()
        self.graph_client_factory = graph_client_factory
        self.expiry_minutes = expiry_minutes
        self._wall_clock = wall_clock

    def notification_url(self, change_type: str) -> str:
        path = DELETED_WEBHOOK_PATH if change_type == ChangeType.DELETED.value else CREATED_WEBHOOK_PATH
        return f"{self.webhook_base_url}{path}"

    async def _graph_for(self, account_id: str) -> GraphClient:
        access_token = await self.token_provider.get_valid_access_token(account_id)
        return self.graph_client_factory(access_token)

    async def setup_for_account(self, account_id: str) -> Dict[str, Any]:
        """
        Replace a mailbox's subscriptions with a fresh created/deleted pair.

        Raises:
            MailAccountNotFoundError: If the mailbox does not exist
            ValueError: If the mailbox is inactive or no public webhook URL is configured
        """
        if not self.webhook_base_url:
            raise ValueError("WEBHOOK_BASE_URL must be configured to create subscriptions")

        account = await self.accounts.get_mail_account(account_id)
        if not account:
            raise MailAccountNotFoundError(f"Mail account {account_id} not found")
        if not account["is_active"]:
            raise ValueError(f"Mail account {account_id} is inactive")

        graph = await self._graph_for(account_id)

        for existing in await self.accounts.list_active_subscriptions(email_account_id=account_id):
            try:
                await graph.delete_subscription(existing["subscription_id"])
            except GraphAPIError as e:
                logger.warning(f"Could not delete old subscription {existing['subscription_id']}: {str(e)}")
            await self.accounts.deactivate_subscription(existing["subscription_id"])

        creators = (
            (ChangeType.CREATED.value, graph.create_created_subscription),
            (ChangeType.DELETED.value, graph.create_deleted_subscription),
        )
        created = []
        for change_type, create in creators:
            client_state = generate_client_state(account["email_address"], change_type)
            webhook_url = self.notification_url(change_type)
            subscription = await create(webhook_url, client_state, self.expiry_minutes)
            expires_at = (parse_graph_datetime(subscription.get("expirationDateTime"))
                          or self._wall_clock() + timedelta(minutes=self.expiry_minutes))
            saved = await self.accounts.save_subscription(
                email_account_id=account_id,
                subscription_id=subscription["id"],
                change_type=change_type,
                resource=subscription.get("resource") or INBOX_RESOURCE,
                webhook_url=webhook_url,
                client_state=client_state,
                expires_at=expires_at,
            )
            created.append(saved)

        logger.info(f"Webhook subscriptions created for {account['email_address']}")
        return {"email_account_id": account_id, "subscriptions": created}

    async def renew_expiring(self, within_minutes: int = 15) -> Dict[str, Any]:
        """
        Renew every active subscription expiring within the window.

        Subscriptions the provider no longer knows are deactivated.
        """
        cutoff = self._wall_clock() + timedelta(minutes=within_minutes)
        summary = {"renewed": [], "deactivated": [], "errors": []}

        for subscription in await self.accounts.list_active_subscriptions(expiring_before=cutoff):
            subscription_id = subscription["subscription_id"]
            try:
                graph = await self._graph_for(subscription["email_account_id"])
                renewed = await graph.renew_subscription(subscription_id, self.expiry_minutes)
                expires_at = (parse_graph_datetime((renewed or {}).get("expirationDateTime"))
                              or self._wall_clock() + timedelta(minutes=self.expiry_minutes))
                await self.accounts.update_subscription_expiry(subscription_id, expires_at)
                summary["renewed"].append(subscription_id)
            except GraphNotFoundError:
                await self.accounts.deactivate_subscription(subscription_id)
                summary["deactivated"].append(subscription_id)
                logger.warning(f"Subscription {subscription_id} no longer exists; deactivated")
            except Exception as e:
                summary["errors"].append(f"{subscription_id}: {str(e)}")
                logger.error(f"Failed to renew subscription {subscription_id}: {str(e)}")

        logger.info(f"Renewed {len(summary['renewed'])} subscriptions")
        return summary

    async def list_provider_subscriptions(self, account_id: str) -> List[Dict[str, Any]]:
        """List the subscriptions the provider holds for a mailbox's token."""
        graph = await self._graph_for(account_id)
        return await graph.list_subscriptions()

    async def cleanup_bad_subscriptions(self, account_id: str) -> SweepResult:
        """Run the bad-subscription sweep and deactivate the matching local rows."""
        graph = await self._graph_for(account_id)
        result = await graph.cleanup_bad_subscriptions()
        for subscription_id in result.deleted:
            await self.accounts.deactivate_subscription(subscription_id)
        return result
