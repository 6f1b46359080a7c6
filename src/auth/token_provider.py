"""
Token Provider

Supplies a working bearer credential for a mailbox, refreshing it through
the OAuth token endpoint when the stored access token no longer works.

Design Considerations:
- The stored token is probed first; a refresh only happens on failure
- Refreshed access and refresh tokens are persisted together
- A mailbox without a refresh token fails permanently with
  NoRefreshTokenError so operators can trigger re-authentication
- Concurrent callers for the same mailbox share one refresh
"""

import asyncio
import logging
from typing import Dict, Optional

from src.auth.microsoft_oauth import MicrosoftOAuthProvider, TokenRefreshError
from src.storage.account_repository import MailAccountRepository

logger = logging.getLogger(__name__)


class MailAccountNotFoundError(LookupError):
    """Raised when the requested mailbox does not exist."""


class NoRefreshTokenError(TokenRefreshError):
    """
    Raised when a mailbox has no stored refresh token.

    Not retryable: the mailbox owner has to sign in again.
    """

    retryable = False


class TokenProvider:
    """Resolves valid access tokens for mailboxes."""

    def __init__(self, oauth_provider: MicrosoftOAuthProvider,
                 account_repository: Optional[MailAccountRepository] = None):
        self.oauth_provider = oauth_provider
        self.account_repository = account_repository or MailAccountRepository()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    async def get_valid_access_token(self, account_id: str) -> str:
        """
        Return an access token that currently works for the mailbox.

        Args:
            account_id: Mailbox identifier

        Returns:
            Bearer access token

        Raises:
            MailAccountNotFoundError: If the mailbox does not exist
            NoRefreshTokenError: If a refresh is needed but impossible
            TokenRefreshError: If the token endpoint rejected the refresh
        """
        async with self._lock_for(account_id):
            account = await self.account_repository.get_mail_account(account_id)
            if not account:
                raise MailAccountNotFoundError(f"Mail account {account_id} not found")

            if await self.oauth_provider.validate_token(account["access_token"]):
                return account["access_token"]

            logger.info(f"Access token for mail account {account_id} is no longer valid, refreshing")
            return await self._refresh(account)

    async def refresh(self, account_id: str) -> str:
        """Force a refresh regardless of the stored token's state."""
        async with self._lock_for(account_id):
            account = await self.account_repository.get_mail_account(account_id)
            if not account:
                raise MailAccountNotFoundError(f"Mail account {account_id} not found")
            return await self._refresh(account)

    async def _refresh(self, account: Dict) -> str:
        account_id = account["id"]
        refresh_token = account.get("refresh_token")
        if not refresh_token:
            logger.error(f"Mail account {account_id} has no refresh token; re-authentication required")
            raise NoRefreshTokenError(
                f"No refresh token available for mail account {account_id}; "
                "the mailbox must be re-authenticated"
            )

        grant = await self.oauth_provider.refresh_access_token(refresh_token)
        await self.account_repository.update_tokens(
            account_id, grant.access_token, grant.refresh_token or refresh_token
        )

        logger.info(f"Token refreshed successfully for mail account {account_id}")
        return grant.access_token
