"""
Microsoft OAuth Provider Implementation

Implements the parts of the Microsoft identity platform the pipeline needs
after onboarding: checking whether a stored access token still works and
exchanging a refresh token for a new credential pair.

Design Considerations:
- One documented token-endpoint contract: ``access_token`` is required,
  ``refresh_token`` is optional and only present when Microsoft rotates it
- Liveness is checked with a cheap Graph ``/me`` request
- Detailed logging for troubleshooting without logging token material
"""

import os
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import aiohttp

logger = logging.getLogger(__name__)

GRAPH_SCOPES = [
    "https://graph.microsoft.com/Mail.Read",
    "https://graph.microsoft.com/Mail.ReadWrite",
    "https://graph.microsoft.com/Mail.Send",
    "https://graph.microsoft.com/User.Read",
    "https://graph.microsoft.com/Calendars.Read",
    "https://graph.microsoft.com/MailboxSettings.Read",
    "offline_access",
]


class TokenRefreshError(Exception):
    """Raised when a credential could not be refreshed."""

    retryable = True


@dataclass
class TokenGrant:
    """Result of a successful refresh-token exchange."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: str = "Bearer"


class MicrosoftOAuthProvider:
    """
    Microsoft OAuth2 client for token liveness checks and refreshes.

    Credentials default to the MICROSOFT_CLIENT_ID, MICROSOFT_CLIENT_SECRET
    and MICROSOFT_TENANT environment variables.
    """

    LOGIN_BASE_URL = "https://login.microsoftonline.com"
    USERINFO_URL = "https://graph.microsoft.com/v1.0/me"

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        tenant: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        timeout: float = 30.0,
    ):
        """
        Initialize the provider with client credentials.

        Raises:
            ValueError: If client id or secret are missing
        """
        self.client_id = client_id or os.getenv("MICROSOFT_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("MICROSOFT_CLIENT_SECRET")
        self.tenant = tenant or os.getenv("MICROSOFT_TENANT", "common")

        if not self.client_id or not self.client_secret:
            raise ValueError(
                "Microsoft OAuth configuration incomplete. "
                "Please set MICROSOFT_CLIENT_ID and MICROSOFT_CLIENT_SECRET environment variables."
            )

        self.scopes = scopes or list(GRAPH_SCOPES)
        self.timeout = aiohttp.ClientTimeout(total=timeout)

        logger.info("Microsoft OAuth provider initialized successfully")

    @property
    def token_url(self) -> str:
        return f"{self.LOGIN_BASE_URL}/{self.tenant}/oauth2/v2.0/token"

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Args:
            refresh_token: Stored refresh token

        Returns:
            TokenGrant with the new access token and, when Microsoft rotated
            it, a new refresh token

        Raises:
            TokenRefreshError: If the token endpoint rejects the request or
                the response lacks an access token
        """
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": " ".join(self.scopes),
        }

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.token_url, data=payload) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"Failed to refresh token: HTTP {response.status}")
                        raise TokenRefreshError(
                            f"Token endpoint returned {response.status}: {error_text[:200]}"
                        )

                    token_data = await response.json()
        except asyncio.TimeoutError:
            logger.error("Timed out refreshing access token")
            raise TokenRefreshError("Token endpoint timed out")
        except aiohttp.ClientError as e:
            logger.error(f"Error refreshing access token: {str(e)}")
            raise TokenRefreshError(f"Token endpoint unreachable: {str(e)}")

        access_token = token_data.get("access_token")
        if not access_token:
            raise TokenRefreshError("Token endpoint response did not contain an access_token")

        logger.info("Successfully refreshed Microsoft access token")
        return TokenGrant(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token"),
            expires_in=token_data.get("expires_in"),
            token_type=token_data.get("token_type", "Bearer"),
        )

    async def validate_token(self, access_token: str) -> bool:
        """
        Validate if access token is still valid.

        Microsoft has no introspection endpoint for these tokens, so the
        token is used against the profile endpoint.

        Args:
            access_token: Access token to validate

        Returns:
            Boolean indicating if token is valid
        """
        if not access_token:
            return False

        headers = {"Authorization": f"Bearer {access_token}"}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(self.USERINFO_URL, headers=headers) as response:
                    if response.status != 200:
                        logger.debug(f"Token validation failed with status: {response.status}")
                        return False
                    return True
        except asyncio.TimeoutError:
            logger.warning("Token validation request timed out")
            return False
        except aiohttp.ClientError as e:
            logger.warning(f"Token validation request failed: {str(e)}")
            return False
