"""
Subscription Administration Routes

Operator endpoints to onboard mailboxes onto push notifications, renew
subscriptions before they expire, and remove misconfigured ones.

Design Considerations:
- Every endpoint requires the administrative key
- Provider and credential failures map to 502 so callers can tell them
  apart from bad requests
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from api.auth.admin import require_admin
from api.models.processing import (
    SubscriptionCleanupResponse,
    SubscriptionRenewalResponse,
    SubscriptionSetupResponse,
    SubscriptionView,
)
from api.services.pipeline_service import Pipeline, get_pipeline
from src.auth.microsoft_oauth import TokenRefreshError
from src.auth.token_provider import MailAccountNotFoundError
from src.integrations.graph.client import GraphAPIError

# Configure logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/subscriptions",
    tags=["Subscriptions"],
    dependencies=[Depends(require_admin)]
)


def _upstream_error(action: str, error: Exception) -> HTTPException:
    logger.error(f"Failed to {action}: {str(error)}")
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Failed to {action}: {str(error)}"
    )


@router.get("/", response_model=List[SubscriptionView], summary="List active subscriptions")
async def list_subscriptions(pipeline: Pipeline = Depends(get_pipeline)):
    """List the locally recorded active subscriptions."""
    return await pipeline.accounts.list_active_subscriptions()


@router.post(
    "/accounts/{account_id}/setup",
    response_model=SubscriptionSetupResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create the subscription pair for a mailbox"
)
async def setup_subscriptions(
    account_id: str = Path(..., description="Mailbox identifier"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Replace a mailbox's subscriptions with a new created/deleted pair.

    Returns:
        The two subscriptions recorded for the mailbox
    """
    try:
        return await pipeline.subscription_manager.setup_for_account(account_id)
    except MailAccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (GraphAPIError, TokenRefreshError) as e:
        raise _upstream_error("create subscriptions", e)


@router.post("/renew", response_model=SubscriptionRenewalResponse, summary="Renew expiring subscriptions")
async def renew_subscriptions(
    within_minutes: int = Query(15, ge=1, le=1440, description="Renew subscriptions expiring within this window"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Renew every active subscription that expires within the window."""
    return await pipeline.subscription_manager.renew_expiring(within_minutes)


@router.get("/accounts/{account_id}/provider", summary="List the provider's subscriptions for a mailbox")
async def list_provider_subscriptions(
    account_id: str = Path(..., description="Mailbox identifier"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """List subscriptions as the provider reports them for the mailbox's credentials."""
    try:
        subscriptions = await pipeline.subscription_manager.list_provider_subscriptions(account_id)
    except MailAccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (GraphAPIError, TokenRefreshError) as e:
        raise _upstream_error("list subscriptions", e)
    return {"email_account_id": account_id, "subscriptions": subscriptions}


@router.post(
    "/accounts/{account_id}/cleanup",
    response_model=SubscriptionCleanupResponse,
    summary="Delete misconfigured subscriptions"
)
async def cleanup_subscriptions(
    account_id: str = Path(..., description="Mailbox identifier"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Delete subscriptions watching more than the inbox or mixing change types."""
    try:
        result = await pipeline.subscription_manager.cleanup_bad_subscriptions(account_id)
    except MailAccountNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (GraphAPIError, TokenRefreshError) as e:
        raise _upstream_error("clean up subscriptions", e)
    return result.to_dict()
