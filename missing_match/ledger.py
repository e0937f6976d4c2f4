"""
Match Ledger

Append-then-transition records of pipeline matches. A record is created
once per submission in `pending` state and only a reviewer's decision
moves it to `confirmed` or `false_positive`; both are terminal.
`alert_sent` flips false -> true at most once and is never reset.
"""
import logging
from typing import List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from missing_match.domain import (
    VerificationDecision,
    VerificationStatus,
    can_transition_verification,
    utcnow
)
from missing_match.errors import InvalidTransition, RecordNotFound
from missing_match.models import MatchRecordDB
from missing_match.repository import MatchRecordRepository

logger = logging.getLogger(__name__)


class MatchLedger:
    """Verification state machine over the match_records table."""

    @staticmethod
    async def append(
        session: AsyncSession,
        submission_id: str,
        case_id: str,
        confidence: float
    ) -> Tuple[MatchRecordDB, bool]:
        """
        Append a pending record for a submission inside the caller's transaction.

        Appending again for the same submission returns the existing record
        instead of creating a second one.

        Returns:
            Tuple of (record, created)
        """
        existing = await MatchRecordRepository.get_by_submission(session, submission_id)
        if existing is not None:
            logger.info(f"Submission {submission_id} already recorded as {existing.id}")
            return existing, False

        record = await MatchRecordRepository.add(
            session,
            submission_id=submission_id,
            case_id=case_id,
            confidence=confidence
        )

        logger.info(
            f"Recorded match {record.id}: submission {submission_id} -> case {case_id} "
            f"(confidence: {confidence:.2%})"
        )
        return record, True

    @staticmethod
    async def get(session: AsyncSession, record_id: str) -> MatchRecordDB:
        record = await MatchRecordRepository.get_by_id(session, record_id)
        if record is None:
            raise RecordNotFound(f"Match record '{record_id}' not found")
        return record

    @staticmethod
    async def list_records(
        session: AsyncSession,
        status: Optional[VerificationStatus] = None,
        case_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[MatchRecordDB]:
        return await MatchRecordRepository.get_all(
            session, status=status, case_id=case_id, skip=skip, limit=limit
        )

    @staticmethod
    async def count_records(
        session: AsyncSession,
        status: Optional[VerificationStatus] = None,
        case_id: Optional[str] = None
    ) -> int:
        return await MatchRecordRepository.count(session, status=status, case_id=case_id)

    @staticmethod
    async def pending_count(session: AsyncSession) -> int:
        return await MatchRecordRepository.count(session, status=VerificationStatus.PENDING)

    @staticmethod
    async def verify(
        session: AsyncSession,
        record_id: str,
        decision: Union[VerificationDecision, VerificationStatus, str]
    ) -> MatchRecordDB:
        """
        Record a reviewer's decision on a pending match and commit it.

        Raises:
            RecordNotFound: Unknown record id
            InvalidTransition: Record already verified, or decision is not terminal
        """
        try:
            target = VerificationStatus(getattr(decision, "value", decision))
        except ValueError:
            raise InvalidTransition(f"Unknown verification decision '{decision}'")

        record = await MatchLedger.get(session, record_id)
        current = VerificationStatus(record.verification_status)

        if not can_transition_verification(current, target):
            raise InvalidTransition(
                f"Match record {record.id} cannot move from {current.value} to {target.value}"
            )

        updated = await MatchRecordRepository.set_verification(
            session, record.id, target, verified_at=utcnow()
        )
        if not updated:
            await session.rollback()
            raise InvalidTransition(f"Match record {record.id} was verified concurrently")

        await session.commit()
        await session.refresh(record)

        logger.info(f"Match record {record.id} verified as {target.value}")
        return record

    @staticmethod
    async def mark_alert_sent(session: AsyncSession, record_id) -> bool:
        """Flip and commit alert_sent. True only for the call that flipped it."""
        flipped = await MatchRecordRepository.mark_alert_sent(session, record_id)
        await session.commit()
        return flipped
