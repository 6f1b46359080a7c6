"""
Shared pytest fixtures.

The environment is prepared before any application module is imported:
the storage layer reads DATABASE_URL and the token encryption key from
the environment at import time.
"""

import os
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from cryptography.fernet import Fernet

os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ.setdefault("MICROSOFT_CLIENT_ID", "test-client-id")
os.environ.setdefault("MICROSOFT_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("GROQ_API_KEY", "test-groq-key")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from src.integrations.graph.client import INBOX_RESOURCE  # noqa: E402
from src.storage.account_repository import MailAccountRepository  # noqa: E402
from src.storage.database import create_db_engine, init_db, make_session_scope  # noqa: E402
from src.storage.encryption import encrypt_value  # noqa: E402
from src.storage.models import (  # noqa: E402
    Client,
    MailAccount,
    NotificationSubscription,
    StyleProfile,
)
from src.storage.processing_repository import ProcessingRecordRepository  # noqa: E402

MESSAGE_ID = "AAMkAGI2TG93AAAmessage0001="
CREATED_CLIENT_STATE = "email-agent-inbox@acme.test-1700000000000"
DELETED_CLIENT_STATE = "email-agent-delete-inbox@acme.test-1700000000000"


@pytest.fixture
def db_engine():
    """Isolated in-memory database with the full schema."""
    engine = create_db_engine("sqlite:///:memory:", echo=False)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_scope(db_engine):
    return make_session_scope(sessionmaker(autocommit=False, autoflush=False, bind=db_engine))


@pytest.fixture
def records(session_scope):
    return ProcessingRecordRepository(session_scope)


@pytest.fixture
def accounts(session_scope):
    return MailAccountRepository(session_scope)


@pytest.fixture
def seeded(session_scope):
    """
    One client with an active mailbox, a style profile and both
    push subscriptions.
    """
    with session_scope() as session:
        client = Client(name="Acme Legal", email="owner@acme.test")
        session.add(client)
        session.flush()

        account = MailAccount(
            client_id=client.id,
            email_address="inbox@acme.test",
            access_token=encrypt_value("access-token-1"),
            refresh_token=encrypt_value("refresh-token-1"),
        )
        session.add(account)
        session.flush()

        profile = StyleProfile(
            client_id=client.id,
            writing_style="concise",
            tone="warm",
            signature="Jane Doe\nAcme Legal",
            sample_emails=["Thanks for reaching out."],
            custom_instructions="Never promise a deadline.",
            auto_response=True,
            response_delay=0,
            email_filters=["@newsletter.test"],
        )
        expires_at = datetime.utcnow() + timedelta(minutes=60)
        created = NotificationSubscription(
            email_account_id=account.id,
            subscription_id="sub-created-1",
            change_type="created",
            resource=INBOX_RESOURCE,
            webhook_url="https://hooks.acme.test/webhooks/email-received",
            client_state=CREATED_CLIENT_STATE,
            expires_at=expires_at,
        )
        deleted = NotificationSubscription(
            email_account_id=account.id,
            subscription_id="sub-deleted-1",
            change_type="deleted",
            resource=INBOX_RESOURCE,
            webhook_url="https://hooks.acme.test/webhooks/email-deleted",
            client_state=DELETED_CLIENT_STATE,
            expires_at=expires_at,
        )
        session.add_all([profile, created, deleted])
        session.flush()

        data = SimpleNamespace(
            client_id=client.id,
            account_id=account.id,
            email_address=account.email_address,
            created_client_state=CREATED_CLIENT_STATE,
            deleted_client_state=DELETED_CLIENT_STATE,
            message_id=MESSAGE_ID,
        )
    return data
