from .microsoft_oauth import MicrosoftOAuthProvider, TokenGrant, TokenRefreshError
from .token_provider import MailAccountNotFoundError, NoRefreshTokenError, TokenProvider

__all__ = [
    'MicrosoftOAuthProvider',
    'TokenGrant',
    'TokenRefreshError',
    'TokenProvider',
    'MailAccountNotFoundError',
    'NoRefreshTokenError'
]
