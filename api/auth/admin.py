"""
Administrative Access

Guards operator endpoints (subscription management, processing ledger,
reprocessing) with a shared key sent in the ``X-Admin-Key`` header.

Design Considerations:
- Administrative endpoints are disabled, not open, when no key is configured
- Constant-time key comparison
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from api.config import APISettings, get_settings

logger = logging.getLogger(__name__)

admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


async def require_admin(
    admin_key: Optional[str] = Security(admin_key_header),
    settings: APISettings = Depends(get_settings),
) -> None:
    """
    Require a valid administrative key.

    Raises:
        HTTPException: 503 when no key is configured, 401 when the header
            is missing, 403 when it does not match
    """
    if settings.ADMIN_API_KEY is None or not settings.ADMIN_API_KEY.get_secret_value():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Administrative endpoints are disabled: ADMIN_API_KEY is not configured"
        )

    if not admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-Key header",
            headers={"WWW-Authenticate": "X-Admin-Key"},
        )

    if not secrets.compare_digest(admin_key, settings.ADMIN_API_KEY.get_secret_value()):
        logger.warning("Rejected administrative request with an invalid key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid administrative key",
        )
