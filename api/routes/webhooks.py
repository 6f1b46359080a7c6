"""
Webhook API Routes

Receives provider push notifications for new and deleted inbox messages.

Design Considerations:
- The subscription validation handshake echoes the token as plain text
- A delivery is acknowledged with 200 once its body parsed; per-message
  failures are reported in the result list, never as HTTP errors
- Work is handed off to the pipeline; the request never waits for AI
  processing
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from api.models.webhooks import WebhookBatchResponse, WebhookStatusResponse
from api.services.pipeline_service import Pipeline, get_pipeline
from src.email_processing.models import HandleResult, NotificationEvent, NotificationStatus

# Configure logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

BatchHandler = Callable[[Iterable[NotificationEvent]], Awaitable[List[HandleResult]]]

_ERROR_STATUSES = (NotificationStatus.ERROR, NotificationStatus.DELETE_FAILED)


async def _read_notifications(request: Request) -> List[Any]:
    """
    Parse a push delivery body.

    Raises:
        HTTPException: 400 when the body is not JSON or ``value`` is not a list
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body is not valid JSON")

    if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid notification payload: 'value' must be a list"
        )
    return payload["value"]


def summarize_results(endpoint: str, results: List[HandleResult]) -> WebhookBatchResponse:
    """Build the batch summary returned to the provider."""
    return WebhookBatchResponse(
        endpoint=endpoint,
        total=len(results),
        scheduled=sum(1 for r in results if r.status == NotificationStatus.PENDING_DELAYED),
        processed=sum(1 for r in results if r.status == NotificationStatus.DRAFT_DELETED),
        skipped=sum(1 for r in results if r.status.is_skip),
        errors=sum(1 for r in results if r.status in _ERROR_STATUSES),
        results=[r.to_dict() for r in results],
    )


async def _dispatch(endpoint: str, items: List[Any], handle_batch: BatchHandler) -> WebhookBatchResponse:
    positions = [index for index, item in enumerate(items) if isinstance(item, dict)]
    events = [NotificationEvent.from_dict(items[index]) for index in positions]
    handled = await handle_batch(events)

    # Results are returned in delivery order; malformed items keep their slot
    results: List[HandleResult] = [
        HandleResult(status=NotificationStatus.ERROR, reason="Malformed notification")
        for _ in items
    ]
    for index, result in zip(positions, handled):
        results[index] = result

    malformed = len(items) - len(positions)
    if malformed:
        logger.warning(f"{malformed} malformed notification(s) in {endpoint} delivery")

    summary = summarize_results(endpoint, results)
    logger.info(
        f"{endpoint} delivery: {summary.total} notifications, {summary.scheduled} scheduled, "
        f"{summary.skipped} skipped, {summary.errors} errors"
    )
    return summary


@router.get("/email-received", summary="Validate or inspect the new-message webhook")
async def email_received_status(
    validationToken: Optional[str] = Query(None, description="Subscription validation token"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Answer the subscription validation handshake, or report endpoint status.

    Returns:
        The validation token as plain text when one is given, otherwise a
        status document
    """
    if validationToken is not None:
        logger.info("Webhook validation request received for email-received")
        return PlainTextResponse(content=validationToken, status_code=status.HTTP_200_OK)

    handler_status = pipeline.notification_handler.status()
    return WebhookStatusResponse(
        endpoint="email-received",
        cache_size=handler_status["cache_size"],
        scheduled_tasks=handler_status["scheduled_tasks"],
        running_tasks=handler_status["running_tasks"],
    )


@router.post("/email-received", summary="Receive new-message notifications")
async def email_received(
    request: Request,
    validationToken: Optional[str] = Query(None, description="Subscription validation token"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Deduplicate and schedule processing for each notified message.

    Returns:
        Batch summary with one result per notification
    """
    if validationToken is not None:
        return PlainTextResponse(content=validationToken, status_code=status.HTTP_200_OK)

    items = await _read_notifications(request)
    return await _dispatch("email-received", items, pipeline.notification_handler.handle_batch)


@router.get("/email-deleted", summary="Validate or inspect the deletion webhook")
async def email_deleted_status(
    validationToken: Optional[str] = Query(None, description="Subscription validation token"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Answer the validation handshake, or report the deletion endpoint's status."""
    if validationToken is not None:
        logger.info("Webhook validation request received for email-deleted")
        return PlainTextResponse(content=validationToken, status_code=status.HTTP_200_OK)

    deletion_status: Dict[str, int] = pipeline.deletion_sync.status()
    return WebhookStatusResponse(endpoint="email-deleted", cache_size=deletion_status["cache_size"])


@router.post("/email-deleted", summary="Receive deleted-message notifications")
async def email_deleted(
    request: Request,
    validationToken: Optional[str] = Query(None, description="Subscription validation token"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Remove the generated draft of every deleted message that has one."""
    if validationToken is not None:
        return PlainTextResponse(content=validationToken, status_code=status.HTTP_200_OK)

    items = await _read_notifications(request)
    return await _dispatch("email-deleted", items, pipeline.deletion_sync.handle_batch)
