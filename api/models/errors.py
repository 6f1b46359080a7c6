"""
Error Response Models

Defines the error body every API failure is rendered as.

Design Considerations:
- One error structure for HTTP errors, validation errors and crashes
- Machine-readable error codes next to human-readable messages
"""

from datetime import datetime
from typing import Dict, Optional, Any, List

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standardized error response model for API errors."""
    status: str = Field(
        default="error",
        description="Error status indicator"
    )
    message: str = Field(
        ...,
        description="Human-readable error message"
    )
    error_code: str = Field(
        ...,
        description="Machine-readable error code, e.g. HTTP_404"
    )
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="Error timestamp"
    )


class ValidationErrorItem(BaseModel):
    """One failed field of a request validation."""
    loc: List[str] = Field(..., description="Error location (field path)")
    msg: str = Field(..., description="Error message")
    type: str = Field(..., description="Error type")


class ValidationErrorResponse(ErrorResponse):
    """Error response for request validation failures with per-field detail."""
    validation_errors: List[ValidationErrorItem] = Field(
        default_factory=list,
        description="List of specific validation errors"
    )
