"""
Pipeline Service

Builds and owns the long-lived components of the draft pipeline: dedup
caches, the delayed-task scheduler, the notification and deletion
handlers and the subscription manager.

Design Considerations:
- One pipeline instance per application; no module-level caches or
  timers live outside it
- Route handlers receive the pipeline through a FastAPI dependency so
  tests can substitute their own
- The periodic sweep runs as an asyncio task started at application
  startup and cancelled at shutdown
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import sessionmaker

from api.config import APISettings
from src.auth.microsoft_oauth import MicrosoftOAuthProvider
from src.auth.token_provider import TokenProvider
from src.email_processing.deletion import DeletionSync
from src.email_processing.handlers.response_generator import ResponseGenerator
from src.email_processing.notifications.dedup import NotificationDedupCache
from src.email_processing.notifications.handler import NotificationHandler
from src.email_processing.notifications.scheduler import DelayedTaskScheduler, ProcessingDelayPolicy
from src.email_processing.processor import DraftProcessor
from src.email_processing.subscriptions import SubscriptionManager
from src.integrations.groq.client import EnhancedGroqClient
from src.storage.account_repository import MailAccountRepository
from src.storage.database import SessionScope, create_db_engine, init_db, make_session_scope
from src.storage.processing_repository import ProcessingRecordRepository

logger = logging.getLogger(__name__)


@dataclass
class Pipeline:
    """Container for the components shared by every request."""
    notification_handler: NotificationHandler
    deletion_sync: DeletionSync
    subscription_manager: SubscriptionManager
    records: ProcessingRecordRepository
    accounts: MailAccountRepository
    scheduler: DelayedTaskScheduler
    groq_client: Optional[EnhancedGroqClient] = None
    sweep_interval_seconds: float = 60.0
    _sweep_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def sweep(self) -> Dict[str, int]:
        """Purge expired dedup entries from both caches and forget stale timers."""
        result = self.notification_handler.sweep()
        result["delete_cache_entries_purged"] = self.deletion_sync.sweep()
        if any(result.values()):
            logger.info(f"Sweep completed: {result}")
        return result

    def status(self) -> Dict[str, Any]:
        return {
            "created": self.notification_handler.status(),
            "deleted": self.deletion_sync.status(),
        }

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Sweep failed: {str(e)}")

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info(f"Sweep loop started (every {self.sweep_interval_seconds}s)")

    async def shutdown(self) -> None:
        """Stop the sweep and cancel every timer that has not fired yet."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.scheduler.shutdown(wait=False)
        logger.info("Pipeline shut down")


def build_pipeline(settings: APISettings, session_scope: Optional[SessionScope] = None) -> Pipeline:
    """
    Wire the pipeline from validated settings.

    Args:
        settings: Application settings
        session_scope: Session scope to use; defaults to one bound to
            ``settings.DATABASE_URL``

    Returns:
        Ready-to-start Pipeline

    Raises:
        ValueError: If Microsoft or Groq credentials are missing
    """
    if session_scope is None:
        engine = create_db_engine(settings.DATABASE_URL)
        init_db(engine)
        session_scope = make_session_scope(
            sessionmaker(autocommit=False, autoflush=False, bind=engine)
        )

    records = ProcessingRecordRepository(session_scope)
    accounts = MailAccountRepository(session_scope)

    oauth_provider = MicrosoftOAuthProvider(
        client_id=settings.MICROSOFT_CLIENT_ID,
        client_secret=(settings.MICROSOFT_CLIENT_SECRET.get_secret_value()
                       if settings.MICROSOFT_CLIENT_SECRET else None),
        tenant=settings.MICROSOFT_TENANT,
    )
    token_provider = TokenProvider(oauth_provider, accounts)

    groq_client = EnhancedGroqClient(
        api_key=settings.GROQ_API_KEY.get_secret_value() if settings.GROQ_API_KEY else None,
        model=settings.GROQ_MODEL,
    )
    response_generator = ResponseGenerator(
        groq_client,
        business_timezone=settings.BUSINESS_TIMEZONE,
        max_output_tokens=settings.LLM_MAX_OUTPUT_TOKENS,
        temperature=settings.LLM_TEMPERATURE,
        calendar_lookahead_days=settings.CALENDAR_LOOKAHEAD_DAYS,
    )

    processor = DraftProcessor(
        token_provider,
        response_generator,
        records=records,
        accounts=accounts,
        calendar_lookahead_days=settings.CALENDAR_LOOKAHEAD_DAYS,
        include_thread_history=settings.INCLUDE_THREAD_HISTORY,
    )
    scheduler = DelayedTaskScheduler(stale_after_seconds=settings.STALE_TIMER_SECONDS)
    delay_policy = ProcessingDelayPolicy(
        min_seconds=settings.PROCESSING_DELAY_MIN_SECONDS,
        max_seconds=settings.PROCESSING_DELAY_MAX_SECONDS,
        honor_client_delay=settings.HONOR_CLIENT_RESPONSE_DELAY,
    )

    notification_handler = NotificationHandler(
        processor,
        NotificationDedupCache(settings.CREATE_CACHE_TTL_SECONDS),
        scheduler,
        delay_policy,
        records=records,
        accounts=accounts,
    )
    deletion_sync = DeletionSync(
        token_provider,
        NotificationDedupCache(settings.DELETE_CACHE_TTL_SECONDS),
        records=records,
        accounts=accounts,
    )
    subscription_manager = SubscriptionManager(
        token_provider,
        settings.WEBHOOK_BASE_URL,
        accounts=accounts,
        expiry_minutes=settings.SUBSCRIPTION_EXPIRY_MINUTES,
    )

    logger.info("Draft pipeline initialized")
    return Pipeline(
        notification_handler=notification_handler,
        deletion_sync=deletion_sync,
        subscription_manager=subscription_manager,
        records=records,
        accounts=accounts,
        scheduler=scheduler,
        groq_client=groq_client,
        sweep_interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
    )


_pipeline: Optional[Pipeline] = None


def set_pipeline(pipeline: Optional[Pipeline]) -> None:
    global _pipeline
    _pipeline = pipeline


def current_pipeline() -> Optional[Pipeline]:
    return _pipeline


def get_pipeline() -> Pipeline:
    """
    Provide the application pipeline for dependency injection.

    Raises:
        HTTPException: 503 when the application has not finished starting
    """
    if _pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline is not initialized"
        )
    return _pipeline
