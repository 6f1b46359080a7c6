"""
Processing Ledger Routes

Read access to processing records and the operator reprocessing path for
records stuck in pending or error.

Design Considerations:
- Listing is bounded and newest first
- Reprocessing reuses the existing record; it never creates a second one
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from api.auth.admin import require_admin
from api.models.processing import (
    ProcessingRecordView,
    ProcessingStatsResponse,
    RecordListResponse,
    ReprocessResponse,
)
from api.services.pipeline_service import Pipeline, get_pipeline
from src.email_processing.notifications.handler import RecordNotReprocessableError
from src.storage.models import ProcessingStatus

# Configure logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/processing",
    tags=["Processing"],
    dependencies=[Depends(require_admin)]
)


@router.get("/records", response_model=RecordListResponse, summary="List recent processing records")
async def list_records(
    limit: int = Query(50, ge=1, le=200, description="Maximum number of records to return"),
    status_filter: Optional[ProcessingStatus] = Query(None, alias="status", description="Filter by record status"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    List processing records, most recent first.

    Args:
        limit: Maximum number of records to return
        status_filter: Optional status filter

    Returns:
        Records with the count returned
    """
    records = await pipeline.records.list_recent(
        limit=limit, status=status_filter.value if status_filter else None
    )
    return RecordListResponse(records=records, count=len(records), limit=limit)


@router.get("/records/{record_id}", response_model=ProcessingRecordView, summary="Get one processing record")
async def get_record(
    record_id: str = Path(..., description="Processing record identifier"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    record = await pipeline.records.get_by_id(record_id)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Record {record_id} not found")
    return record


@router.get("/stats", response_model=ProcessingStatsResponse, summary="Processing statistics")
async def processing_stats(pipeline: Pipeline = Depends(get_pipeline)):
    """Aggregate record counts per status together with live cache and timer counts."""
    by_status = await pipeline.records.count_by_status()
    live = pipeline.status()
    if pipeline.groq_client is not None:
        live["llm"] = pipeline.groq_client.get_performance_metrics()
    return ProcessingStatsResponse(total=sum(by_status.values()), by_status=by_status, pipeline=live)


@router.post(
    "/records/{record_id}/reprocess",
    response_model=ReprocessResponse,
    summary="Re-run processing for a pending or failed record"
)
async def reprocess_record(
    record_id: str = Path(..., description="Processing record identifier"),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Run the processing step again for a record in pending or error.

    Raises:
        HTTPException: 404 when the record is missing or not reprocessable
    """
    try:
        outcome = await pipeline.notification_handler.reprocess(record_id)
    except RecordNotReprocessableError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    logger.info(f"Reprocessed record {record_id}: {outcome.status.value}")
    return ReprocessResponse(
        record_id=record_id,
        status=outcome.status.value,
        reason=outcome.reason,
        draft_message_id=outcome.draft_message_id,
        read_state_restored=outcome.read_state_restored,
    )
