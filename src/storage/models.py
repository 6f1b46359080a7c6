"""
Database Models for the Notification Pipeline

Defines the persistent entities the draft pipeline reads and writes:
clients, the mailboxes under automation, per-client writing style,
provider push subscriptions and the processing ledger.

Design Considerations:
- OAuth credentials are stored Fernet-encrypted, never in clear text
- The processing ledger enforces uniqueness on the provider message id;
  that constraint is what makes the durable claim race-safe
- Creation and deletion subscriptions are separate rows distinguished
  by change type so the two paths cannot interfere
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class ProcessingStatus(str, Enum):
    """Lifecycle states of a processing record."""
    PENDING = "pending"
    PROCESSING = "processing"
    DRAFT_CREATED = "draft_created"
    ERROR = "error"
    SKIPPED = "skipped"
    FILTERED = "filtered"

    @classmethod
    def terminal(cls) -> set:
        return {cls.DRAFT_CREATED, cls.ERROR, cls.SKIPPED, cls.FILTERED}


class ChangeType(str, Enum):
    """Provider change types this service subscribes to."""
    CREATED = "created"
    DELETED = "deleted"


class Client(Base):
    """A customer whose mailboxes are automated."""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    mail_accounts = relationship("MailAccount", back_populates="client", cascade="all, delete-orphan")
    style_profile = relationship("StyleProfile", back_populates="client", uselist=False,
                                 cascade="all, delete-orphan")


class MailAccount(Base):
    """
    One mailbox under automation.

    Access and refresh tokens are stored encrypted; the Token Provider is
    the only writer of the token columns after onboarding.
    """
    __tablename__ = "email_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    email_address = Column(String(255), nullable=False, index=True)

    # Token data (encrypted in the database)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    client = relationship("Client", back_populates="mail_accounts")
    subscriptions = relationship("NotificationSubscription", back_populates="mail_account",
                                 cascade="all, delete-orphan")


class StyleProfile(Base):
    """Per-client writing configuration consumed by the response generator."""
    __tablename__ = "style_profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, unique=True)

    writing_style = Column(String(50), nullable=False, default="professional")
    tone = Column(String(50), nullable=False, default="friendly")
    signature = Column(Text, nullable=True)
    sample_emails = Column(JSON, nullable=False, default=list)
    custom_instructions = Column(Text, nullable=True)
    auto_response = Column(Boolean, nullable=False, default=True)
    # Minutes; only consulted when HONOR_CLIENT_RESPONSE_DELAY is enabled
    response_delay = Column(Integer, nullable=False, default=0)
    email_filters = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    client = relationship("Client", back_populates="style_profile")


class NotificationSubscription(Base):
    """A provider-side push registration mapped back to a mailbox by client_state."""
    __tablename__ = "webhook_subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    email_account_id = Column(String(36), ForeignKey("email_accounts.id", ondelete="CASCADE"),
                              nullable=False, index=True)
    subscription_id = Column(String(255), nullable=False, unique=True)
    change_type = Column(String(20), nullable=False, default=ChangeType.CREATED.value)
    resource = Column(String(255), nullable=False)
    webhook_url = Column(String(500), nullable=False)
    client_state = Column(String(255), nullable=False, unique=True, index=True)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    mail_account = relationship("MailAccount", back_populates="subscriptions")

    def to_dict(self) -> Dict[str, Any]:
        """Convert subscription to dictionary representation."""
        return {
            "id": self.id,
            "email_account_id": self.email_account_id,
            "subscription_id": self.subscription_id,
            "change_type": self.change_type,
            "resource": self.resource,
            "webhook_url": self.webhook_url,
            "client_state": self.client_state,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
        }


class ProcessingRecord(Base):
    """
    The dedup and audit ledger: one row per source message.

    Created as a pending placeholder when a notification is claimed and
    moved exactly once to a terminal status by the processing step.
    """
    __tablename__ = "email_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    email_account_id = Column(String(36), ForeignKey("email_accounts.id", ondelete="CASCADE"),
                              nullable=False, index=True)
    message_id = Column(String(512), nullable=False)

    subject = Column(Text, nullable=False, default="")
    sender_email = Column(String(255), nullable=False, default="")
    original_body = Column(Text, nullable=False, default="")

    status = Column(String(32), nullable=False, default=ProcessingStatus.PENDING.value, index=True)
    ai_response = Column(Text, nullable=True)
    error_reason = Column(Text, nullable=True)
    tokens_used = Column(Integer, nullable=False, default=0)

    draft_message_id = Column(String(512), nullable=True)
    is_draft_deleted = Column(Boolean, nullable=False, default=False)
    draft_delete_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("message_id", name="uq_email_logs_message_id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary representation for API responses."""
        return {
            "id": self.id,
            "email_account_id": self.email_account_id,
            "message_id": self.message_id,
            "subject": self.subject,
            "sender_email": self.sender_email,
            "original_body": self.original_body,
            "status": self.status,
            "ai_response": self.ai_response,
            "error_reason": self.error_reason,
            "tokens_used": self.tokens_used,
            "draft_message_id": self.draft_message_id,
            "is_draft_deleted": self.is_draft_deleted,
            "draft_delete_error": self.draft_delete_error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
