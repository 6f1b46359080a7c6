"""
Shared data models for the notification pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class NotificationStatus(str, Enum):
    """Outcome of handling one push notification."""
    SKIPPED_BY_DESIGN = "skipped_by_design"
    DUPLICATE_PREVENTED_CACHE = "duplicate_prevented_cache"
    DUPLICATE_PREVENTED_DATABASE = "duplicate_prevented_database"
    DUPLICATE_PREVENTED_RACE = "duplicate_prevented_race"
    PENDING_DELAYED = "pending_delayed"
    ERROR = "error"
    # Deletion path
    DRAFT_DELETED = "draft_deleted"
    SKIPPED_NO_DRAFT = "skipped_no_draft"
    DELETE_FAILED = "delete_failed"
    DUPLICATE_PREVENTED = "duplicate_prevented"

    @property
    def is_skip(self) -> bool:
        return self.value.startswith("skipped") or self.value.startswith("duplicate")


@dataclass
class NotificationEvent:
    """One entry of a provider push batch."""
    change_type: str
    resource: str
    client_state: Optional[str] = None
    subscription_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationEvent":
        return cls(
            change_type=str(data.get("changeType") or ""),
            resource=str(data.get("resource") or ""),
            client_state=data.get("clientState"),
            subscription_id=data.get("subscriptionId"),
        )


@dataclass
class HandleResult:
    """Result of handling one notification, reported back in the webhook response."""
    status: NotificationStatus
    message_id: Optional[str] = None
    reason: Optional[str] = None
    delay_seconds: Optional[float] = None
    scheduled_for: Optional[datetime] = None
    record_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"status": self.status.value}
        if self.message_id:
            result["message_id"] = self.message_id
        if self.reason:
            result["reason"] = self.reason
        if self.delay_seconds is not None:
            result["delay_seconds"] = round(self.delay_seconds, 1)
        if self.scheduled_for is not None:
            result["scheduled_for"] = self.scheduled_for.isoformat()
        if self.record_id:
            result["record_id"] = self.record_id
        return result


@dataclass
class StyleProfileSettings:
    """A client's writing configuration with defaults applied."""
    writing_style: str = "professional"
    tone: str = "friendly"
    signature: str = ""
    sample_emails: List[str] = field(default_factory=list)
    custom_instructions: str = ""
    auto_response: bool = True
    response_delay: int = 0
    email_filters: List[str] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: Optional[Dict[str, Any]], client_name: str = "") -> "StyleProfileSettings":
        """Build settings from a stored profile, falling back to defaults."""
        default_signature = f"Best regards,\n{client_name}"
        if not record:
            return cls(signature=default_signature)

        return cls(
            writing_style=record.get("writing_style") or "professional",
            tone=record.get("tone") or "friendly",
            signature=record.get("signature") or default_signature,
            sample_emails=list(record.get("sample_emails") or []),
            custom_instructions=record.get("custom_instructions") or "",
            auto_response=record.get("auto_response") is not False,
            response_delay=int(record.get("response_delay") or 0),
            email_filters=list(record.get("email_filters") or []),
        )


@dataclass
class EmailContext:
    """Everything the response generator needs for one reply."""
    subject: str
    sender: str
    body: str
    style: StyleProfileSettings
    calendar_events: Optional[List[Dict[str, Any]]] = None
    conversation_history: str = ""


@dataclass
class EmailClassification:
    """Lightweight routing hints for an incoming email."""
    email_type: str = "general"
    urgency: str = "normal"
    requires_response: bool = True
