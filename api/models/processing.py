"""
Processing Data Models

Response bodies for the processing ledger, subscription administration
and operator reprocessing endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProcessingRecordView(BaseModel):
    """One row of the processing ledger."""
    id: str
    email_account_id: str
    message_id: str
    subject: Optional[str] = None
    sender_email: Optional[str] = None
    original_body: Optional[str] = None
    status: str
    ai_response: Optional[str] = None
    error_reason: Optional[str] = None
    tokens_used: Optional[int] = None
    draft_message_id: Optional[str] = None
    is_draft_deleted: bool = False
    draft_delete_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RecordListResponse(BaseModel):
    """Most recent processing records, newest first."""
    records: List[ProcessingRecordView] = Field(default_factory=list)
    count: int = Field(..., ge=0, description="Number of records returned")
    limit: int = Field(..., ge=1, description="Maximum records requested")


class ProcessingStatsResponse(BaseModel):
    """Aggregate record counts and live pipeline state."""
    total: int = Field(..., ge=0)
    by_status: Dict[str, int] = Field(default_factory=dict)
    pipeline: Dict[str, Any] = Field(default_factory=dict)


class ReprocessResponse(BaseModel):
    """Outcome of an operator-triggered processing run."""
    record_id: str
    status: str
    reason: Optional[str] = None
    draft_message_id: Optional[str] = None
    read_state_restored: bool = True


class SubscriptionView(BaseModel):
    """A locally recorded push subscription."""
    id: str
    email_account_id: str
    subscription_id: str
    change_type: str
    resource: str
    webhook_url: str
    client_state: str
    expires_at: Optional[str] = None
    is_active: bool = True


class SubscriptionSetupResponse(BaseModel):
    email_account_id: str
    subscriptions: List[SubscriptionView] = Field(default_factory=list)


class SubscriptionRenewalResponse(BaseModel):
    renewed: List[str] = Field(default_factory=list)
    deactivated: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class SubscriptionCleanupResponse(BaseModel):
    deleted_count: int = Field(..., ge=0)
    deleted: List[str] = Field(default_factory=list)
    kept: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
