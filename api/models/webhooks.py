"""
Webhook Data Models

Response bodies of the provider push endpoints.

Design Considerations:
- Every notification of a batch gets its own result entry
- Batch counters let operators read a delivery at a glance
"""

from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class WebhookStatusResponse(BaseModel):
    """Status document returned by a GET without a validation token."""
    status: str = Field(default="active", description="Endpoint status")
    endpoint: str = Field(..., description="Endpoint name")
    cache_size: int = Field(..., ge=0, description="Entries in the endpoint's dedup cache")
    scheduled_tasks: int = Field(default=0, ge=0, description="Processing timers waiting to fire")
    running_tasks: int = Field(default=0, ge=0, description="Processing steps currently executing")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Status timestamp")


class WebhookBatchResponse(BaseModel):
    """Summary of one push delivery."""
    status: str = Field(default="success", description="Delivery status")
    endpoint: str = Field(..., description="Endpoint name")
    total: int = Field(..., ge=0, description="Notifications in the batch")
    scheduled: int = Field(default=0, ge=0, description="Messages claimed and scheduled for processing")
    processed: int = Field(default=0, ge=0, description="Notifications fully handled inline")
    skipped: int = Field(default=0, ge=0, description="Notifications skipped or deduplicated")
    errors: int = Field(default=0, ge=0, description="Notifications that failed")
    results: List[Dict[str, Any]] = Field(default_factory=list, description="Per-notification results")
