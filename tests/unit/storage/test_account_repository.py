"""
Unit tests for the mail account repository.

These tests validate credential encryption at rest, subscription
resolution by correlation token and subscription bookkeeping.
"""

from datetime import datetime, timedelta

import pytest

from src.storage.models import MailAccount


class TestMailAccounts:
    """Test suite for mailbox access."""

    @pytest.mark.asyncio
    async def test_get_mail_account_decrypts_tokens(self, accounts, seeded):
        """Test tokens come back decrypted with the client name."""
        account = await accounts.get_mail_account(seeded.account_id)

        assert account["access_token"] == "access-token-1"
        assert account["refresh_token"] == "refresh-token-1"
        assert account["client_name"] == "Acme Legal"
        assert account["is_active"] is True

    @pytest.mark.asyncio
    async def test_tokens_are_encrypted_at_rest(self, accounts, seeded, session_scope):
        """Test the stored columns never hold clear-text tokens."""
        await accounts.update_tokens(seeded.account_id, "access-token-2", "refresh-token-2")

        with session_scope() as session:
            row = session.get(MailAccount, seeded.account_id)
            assert "access-token-2" not in row.access_token
            assert "refresh-token-2" not in row.refresh_token

    @pytest.mark.asyncio
    async def test_update_tokens_keeps_refresh_token_when_not_rotated(self, accounts, seeded):
        """Test a grant without a new refresh token keeps the stored one."""
        await accounts.update_tokens(seeded.account_id, "access-token-2", None)

        account = await accounts.get_mail_account(seeded.account_id)
        assert account["access_token"] == "access-token-2"
        assert account["refresh_token"] == "refresh-token-1"

    @pytest.mark.asyncio
    async def test_update_tokens_unknown_account(self, accounts, seeded):
        """Test updating a missing mailbox raises."""
        with pytest.raises(ValueError):
            await accounts.update_tokens("missing", "a", "r")

    @pytest.mark.asyncio
    async def test_style_profile(self, accounts, seeded):
        """Test the style profile comes with the client name and filters."""
        profile = await accounts.get_style_profile(seeded.client_id)

        assert profile["client_name"] == "Acme Legal"
        assert profile["writing_style"] == "concise"
        assert profile["email_filters"] == ["@newsletter.test"]
        assert await accounts.get_style_profile("missing") is None


class TestSubscriptions:
    """Test suite for subscription bookkeeping."""

    @pytest.mark.asyncio
    async def test_resolve_subscription_by_change_type(self, accounts, seeded):
        """Test a correlation token only resolves for its own change type."""
        resolved = await accounts.resolve_subscription(seeded.created_client_state, "created")

        assert resolved["account"]["id"] == seeded.account_id
        assert resolved["subscription"]["change_type"] == "created"
        assert await accounts.resolve_subscription(seeded.created_client_state, "deleted") is None
        assert await accounts.resolve_subscription(None) is None
        assert await accounts.resolve_subscription("unknown-state") is None

    @pytest.mark.asyncio
    async def test_deactivated_subscription_does_not_resolve(self, accounts, seeded):
        """Test inactive subscriptions no longer map notifications."""
        await accounts.deactivate_subscription("sub-created-1")

        assert await accounts.resolve_subscription(seeded.created_client_state) is None

    @pytest.mark.asyncio
    async def test_list_expiring_and_update_expiry(self, accounts, seeded):
        """Test expiring subscriptions are listed until renewed."""
        soon = datetime.utcnow() + timedelta(hours=2)
        assert len(await accounts.list_active_subscriptions(expiring_before=soon)) == 2

        await accounts.update_subscription_expiry("sub-created-1", datetime.utcnow() + timedelta(hours=5))

        expiring = await accounts.list_active_subscriptions(expiring_before=soon)
        assert [s["subscription_id"] for s in expiring] == ["sub-deleted-1"]

    @pytest.mark.asyncio
    async def test_save_subscription(self, accounts, seeded):
        """Test a new subscription is recorded active."""
        saved = await accounts.save_subscription(
            email_account_id=seeded.account_id,
            subscription_id="sub-created-2",
            change_type="created",
            resource="/me/mailFolders('Inbox')/messages",
            webhook_url="https://hooks.acme.test/webhooks/email-received",
            client_state="email-agent-inbox@acme.test-1800000000000",
            expires_at=datetime.utcnow() + timedelta(minutes=60),
        )

        assert saved["is_active"] is True
        active = await accounts.list_active_subscriptions(email_account_id=seeded.account_id)
        assert len(active) == 3
