"""
Mail Account Repository

Data access for mailboxes, their owning clients and style profiles, and
the provider push subscriptions that map notifications back to them.

Design Considerations:
- Tokens are decrypted on read and encrypted on write inside this module;
  callers only ever see clear-text credentials in memory
- Access and refresh tokens are persisted together in one transaction
- All methods return dictionaries rather than ORM objects
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.storage.database import SessionScope, get_db_session
from src.storage.encryption import decrypt_value, encrypt_value
from src.storage.models import (
    MailAccount,
    NotificationSubscription,
    StyleProfile,
)

logger = logging.getLogger(__name__)


def _account_to_dict(account: MailAccount) -> Dict[str, Any]:
    client = account.client
    return {
        "id": account.id,
        "client_id": account.client_id,
        "client_name": client.name if client else "",
        "email_address": account.email_address,
        "access_token": decrypt_value(account.access_token),
        "refresh_token": decrypt_value(account.refresh_token) if account.refresh_token else None,
        "is_active": account.is_active,
    }


class MailAccountRepository:
    """Repository for mail accounts, style profiles and push subscriptions."""

    def __init__(self, session_scope: Optional[SessionScope] = None):
        self._session_scope = session_scope or get_db_session

    async def get_mail_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a mailbox with decrypted credentials.

        Args:
            account_id: Mailbox identifier

        Returns:
            Dictionary containing mailbox data if found, None otherwise
        """
        with self._session_scope() as session:
            account = session.get(MailAccount, account_id)
            return _account_to_dict(account) if account else None

    async def update_tokens(self, account_id: str, access_token: str,
                            refresh_token: Optional[str]) -> None:
        """
        Persist a refreshed credential pair atomically.

        Args:
            account_id: Mailbox identifier
            access_token: New access token
            refresh_token: New refresh token; when None the stored one is kept

        Raises:
            ValueError: If the mailbox does not exist
        """
        with self._session_scope() as session:
            account = session.get(MailAccount, account_id)
            if not account:
                raise ValueError(f"Mail account {account_id} not found")

            account.access_token = encrypt_value(access_token)
            if refresh_token:
                account.refresh_token = encrypt_value(refresh_token)
            account.updated_at = datetime.utcnow()

        logger.info(f"Stored refreshed tokens for mail account {account_id}")

    async def get_style_profile(self, client_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve the client's style profile together with the client name.

        Returns:
            Dictionary of profile fields, or None when the client has no profile
        """
        with self._session_scope() as session:
            profile = session.query(StyleProfile).filter(StyleProfile.client_id == client_id).first()
            if not profile:
                return None

            return {
                "client_id": profile.client_id,
                "client_name": profile.client.name if profile.client else "",
                "writing_style": profile.writing_style,
                "tone": profile.tone,
                "signature": profile.signature,
                "sample_emails": list(profile.sample_emails or []),
                "custom_instructions": profile.custom_instructions or "",
                "auto_response": profile.auto_response,
                "response_delay": profile.response_delay or 0,
                "email_filters": list(profile.email_filters or []),
            }

    async def resolve_subscription(self, client_state: str,
                                   change_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Map a correlation token back to its active subscription and mailbox.

        Args:
            client_state: Correlation token echoed by the provider
            change_type: Restrict the lookup to one subscription kind

        Returns:
            Dictionary with ``subscription`` and ``account`` entries, or None
            when no active subscription carries this token
        """
        if not client_state:
            return None

        with self._session_scope() as session:
            query = session.query(NotificationSubscription).filter(
                NotificationSubscription.client_state == client_state,
                NotificationSubscription.is_active.is_(True),
            )
            if change_type:
                query = query.filter(NotificationSubscription.change_type == change_type)

            subscription = query.first()
            if not subscription or not subscription.mail_account:
                return None

            return {
                "subscription": subscription.to_dict(),
                "account": _account_to_dict(subscription.mail_account),
            }

    async def save_subscription(
        self,
        email_account_id: str,
        subscription_id: str,
        change_type: str,
        resource: str,
        webhook_url: str,
        client_state: str,
        expires_at: datetime,
    ) -> Dict[str, Any]:
        """Record a subscription created at the provider."""
        with self._session_scope() as session:
            subscription = NotificationSubscription(
                email_account_id=email_account_id,
                subscription_id=subscription_id,
                change_type=change_type,
                resource=resource,
                webhook_url=webhook_url,
                client_state=client_state,
                expires_at=expires_at,
                is_active=True,
            )
            session.add(subscription)
            session.flush()
            return subscription.to_dict()

    async def list_active_subscriptions(self, expiring_before: Optional[datetime] = None,
                                        email_account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List active subscriptions, optionally only those expiring before a time."""
        with self._session_scope() as session:
            query = session.query(NotificationSubscription).filter(
                NotificationSubscription.is_active.is_(True)
            )
            if expiring_before is not None:
                query = query.filter(NotificationSubscription.expires_at <= expiring_before)
            if email_account_id is not None:
                query = query.filter(NotificationSubscription.email_account_id == email_account_id)
            return [subscription.to_dict() for subscription in query.all()]

    async def update_subscription_expiry(self, subscription_id: str, expires_at: datetime) -> None:
        """Store the new expiry returned by a renewal."""
        with self._session_scope() as session:
            session.query(NotificationSubscription).filter(
                NotificationSubscription.subscription_id == subscription_id
            ).update({
                NotificationSubscription.expires_at: expires_at,
                NotificationSubscription.updated_at: datetime.utcnow(),
            }, synchronize_session=False)

    async def deactivate_subscription(self, subscription_id: str) -> None:
        """Mark a subscription inactive so its notifications no longer resolve."""
        with self._session_scope() as session:
            session.query(NotificationSubscription).filter(
                NotificationSubscription.subscription_id == subscription_id
            ).update({
                NotificationSubscription.is_active: False,
                NotificationSubscription.updated_at: datetime.utcnow(),
            }, synchronize_session=False)
