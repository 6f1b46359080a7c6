"""
Processing Record Repository

Data access for the processing ledger: the durable claim used as the
final dedup gate, the state transitions of the processing step, and the
draft-deletion bookkeeping of the deletion path.

Design Considerations:
- The claim is a plain INSERT guarded by the unique message_id constraint;
  a constraint violation is reported as DuplicateClaimError, not an error
- Terminal states are written with conditional UPDATEs so a late or
  repeated writer can never overwrite a finished record
- All methods return dictionaries rather than ORM objects to prevent
  session-related issues once the session closes
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from src.storage.database import SessionScope, get_db_session
from src.storage.models import ProcessingRecord, ProcessingStatus

logger = logging.getLogger(__name__)

PLACEHOLDER_SUBJECT = "Processing..."
PLACEHOLDER_SENDER = "system@processing"
PLACEHOLDER_BODY = "Processing email with notification preservation..."

_OPEN_STATES = (ProcessingStatus.PENDING.value, ProcessingStatus.PROCESSING.value)


class DuplicateClaimError(Exception):
    """Raised when another request already claimed the message."""

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} is already claimed")
        self.message_id = message_id


class ProcessingRecordRepository:
    """Repository for ProcessingRecord rows."""

    def __init__(self, session_scope: Optional[SessionScope] = None):
        """
        Args:
            session_scope: Session context manager factory; defaults to the
                module-level database session
        """
        self._session_scope = session_scope or get_db_session

    async def get_by_message_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        """Return the record for a provider message id, if any."""
        with self._session_scope() as session:
            record = session.query(ProcessingRecord).filter(
                ProcessingRecord.message_id == message_id
            ).first()
            return record.to_dict() if record else None

    async def get_by_id(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Return a record by its primary key, if any."""
        with self._session_scope() as session:
            record = session.get(ProcessingRecord, record_id)
            return record.to_dict() if record else None

    async def claim(self, message_id: str, email_account_id: str) -> Dict[str, Any]:
        """
        Insert the pending placeholder that grants exclusive processing rights.

        Args:
            message_id: Provider message identifier
            email_account_id: Owning mailbox

        Returns:
            The newly created record

        Raises:
            DuplicateClaimError: If a record for message_id already exists
        """
        duplicate = False
        with self._session_scope() as session:
            record = ProcessingRecord(
                email_account_id=email_account_id,
                message_id=message_id,
                subject=PLACEHOLDER_SUBJECT,
                sender_email=PLACEHOLDER_SENDER,
                original_body=PLACEHOLDER_BODY,
                status=ProcessingStatus.PENDING.value,
                tokens_used=0,
            )
            try:
                session.add(record)
                session.flush()
                result = record.to_dict()
            except IntegrityError:
                session.rollback()
                duplicate = True

        if duplicate:
            raise DuplicateClaimError(message_id)

        logger.debug(f"Claimed message {message_id[:15]}... as record {result['id']}")
        return result

    async def mark_processing(self, record_id: str, subject: str, sender_email: str,
                              original_body: str) -> bool:
        """
        Replace placeholder content with the fetched message snapshot.

        Only a pending record can move to processing, so at most one run
        of the processing step gets past this point.

        Returns:
            True if the record was pending and got updated
        """
        with self._session_scope() as session:
            updated = session.query(ProcessingRecord).filter(
                ProcessingRecord.id == record_id,
                ProcessingRecord.status == ProcessingStatus.PENDING.value,
            ).update({
                ProcessingRecord.subject: subject,
                ProcessingRecord.sender_email: sender_email,
                ProcessingRecord.original_body: original_body,
                ProcessingRecord.status: ProcessingStatus.PROCESSING.value,
                ProcessingRecord.updated_at: datetime.utcnow(),
            }, synchronize_session=False)
        return updated == 1

    async def finalize(
        self,
        record_id: str,
        status: ProcessingStatus,
        ai_response: Optional[str] = None,
        draft_message_id: Optional[str] = None,
        tokens_used: Optional[int] = None,
        error_reason: Optional[str] = None,
    ) -> bool:
        """
        Move an open record to a terminal status.

        Only pending or processing records are updated, so terminal
        status is written exactly once.

        Returns:
            True if the transition happened, False if the record was
            already terminal or does not exist
        """
        status = ProcessingStatus(status)
        if status not in ProcessingStatus.terminal():
            raise ValueError(f"{status.value} is not a terminal status")

        values = {
            ProcessingRecord.status: status.value,
            ProcessingRecord.updated_at: datetime.utcnow(),
        }
        if ai_response is not None:
            values[ProcessingRecord.ai_response] = ai_response
        if draft_message_id is not None:
            values[ProcessingRecord.draft_message_id] = draft_message_id
        if tokens_used is not None:
            values[ProcessingRecord.tokens_used] = tokens_used
        if error_reason is not None:
            values[ProcessingRecord.error_reason] = error_reason

        with self._session_scope() as session:
            updated = session.query(ProcessingRecord).filter(
                ProcessingRecord.id == record_id,
                ProcessingRecord.status.in_(_OPEN_STATES),
            ).update(values, synchronize_session=False)

        if updated != 1:
            logger.warning(f"Record {record_id} was not open; {status.value} not written")
        return updated == 1

    async def reopen_for_reprocessing(self, record_id: str) -> Optional[Dict[str, Any]]:
        """
        Reset a stuck pending or failed record back to pending.

        Returns:
            The reopened record, or None if it is not eligible
        """
        with self._session_scope() as session:
            updated = session.query(ProcessingRecord).filter(
                ProcessingRecord.id == record_id,
                ProcessingRecord.status.in_(
                    (ProcessingStatus.PENDING.value, ProcessingStatus.ERROR.value)
                ),
            ).update({
                ProcessingRecord.status: ProcessingStatus.PENDING.value,
                ProcessingRecord.error_reason: None,
                ProcessingRecord.updated_at: datetime.utcnow(),
            }, synchronize_session=False)
            if updated != 1:
                return None
            record = session.get(ProcessingRecord, record_id)
            return record.to_dict()

    async def find_draft_for_deletion(self, message_id: str) -> Optional[Dict[str, Any]]:
        """Return the record holding a live generated draft for message_id."""
        with self._session_scope() as session:
            record = session.query(ProcessingRecord).filter(
                ProcessingRecord.message_id == message_id,
                ProcessingRecord.status == ProcessingStatus.DRAFT_CREATED.value,
                ProcessingRecord.draft_message_id.isnot(None),
                ProcessingRecord.is_draft_deleted.is_(False),
            ).first()
            return record.to_dict() if record else None

    async def claim_draft_deletion(self, record_id: str) -> bool:
        """
        Atomically flag a record's draft as removed.

        Returns:
            True for the single caller that flipped the flag
        """
        with self._session_scope() as session:
            updated = session.query(ProcessingRecord).filter(
                ProcessingRecord.id == record_id,
                ProcessingRecord.is_draft_deleted.is_(False),
            ).update({
                ProcessingRecord.is_draft_deleted: True,
                ProcessingRecord.updated_at: datetime.utcnow(),
            }, synchronize_session=False)
        return updated == 1

    async def record_draft_deletion_failure(self, record_id: str, reason: str) -> None:
        """Store why deleting the draft failed; the record stays flagged deleted."""
        with self._session_scope() as session:
            session.query(ProcessingRecord).filter(
                ProcessingRecord.id == record_id
            ).update({
                ProcessingRecord.draft_delete_error: reason,
                ProcessingRecord.updated_at: datetime.utcnow(),
            }, synchronize_session=False)

    async def list_recent(self, limit: int = 50, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """List records, most recent first."""
        with self._session_scope() as session:
            query = session.query(ProcessingRecord)
            if status:
                query = query.filter(ProcessingRecord.status == status)
            records = query.order_by(ProcessingRecord.created_at.desc()).limit(limit).all()
            return [record.to_dict() for record in records]

    async def count_by_status(self) -> Dict[str, int]:
        """Aggregate record counts per status."""
        with self._session_scope() as session:
            rows = session.query(
                ProcessingRecord.status, func.count(ProcessingRecord.id)
            ).group_by(ProcessingRecord.status).all()
            return {status: count for status, count in rows}
