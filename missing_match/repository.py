"""
Repositories

Database operations for the cases, submissions and match_records tables
using SQLAlchemy async. Methods flush but never commit; the registry,
ledger and pipeline decide transaction boundaries.
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from missing_match.domain import CaseStatus, VerificationStatus
from missing_match.models import CaseDB, MatchRecordDB, SubmissionDB
from missing_match.schemas import Case, CaseSummary, MatchRecord

logger = logging.getLogger(__name__)


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class CaseRepository:
    """Repository class for cases table operations."""

    @staticmethod
    async def create(session: AsyncSession, **fields) -> CaseDB:
        """Insert a new active case."""
        db_case = CaseDB(id=uuid.uuid4(), status=CaseStatus.ACTIVE, **fields)
        session.add(db_case)
        await session.flush()
        return db_case

    @staticmethod
    async def get_by_id(session: AsyncSession, case_id: str) -> Optional[CaseDB]:
        """Get a case by its UUID."""
        case_uuid = _parse_uuid(case_id)
        if case_uuid is None:
            return None
        result = await session.execute(select(CaseDB).where(CaseDB.id == case_uuid))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_report_number(session: AsyncSession, report_number: str) -> Optional[CaseDB]:
        result = await session.execute(select(CaseDB).where(CaseDB.report_number == report_number))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_all(
        session: AsyncSession,
        status: Optional[CaseStatus] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[CaseDB]:
        """Get cases, newest first, with pagination."""
        query = select(CaseDB)
        if status is not None:
            query = query.where(CaseDB.status == status)
        query = query.order_by(CaseDB.created_at.desc()).offset(skip).limit(limit)

        result = await session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def count(session: AsyncSession, status: Optional[CaseStatus] = None) -> int:
        query = select(func.count(CaseDB.id))
        if status is not None:
            query = query.where(CaseDB.status == status)
        result = await session.execute(query)
        return result.scalar() or 0

    @staticmethod
    async def update_status(
        session: AsyncSession,
        case_id: uuid.UUID,
        current: CaseStatus,
        target: CaseStatus,
        **values
    ) -> bool:
        """
        Move a case from `current` to `target`.

        The update only applies while the row still has `current` status, so
        concurrent transitions cannot both succeed.

        Returns:
            True if the row was updated
        """
        result = await session.execute(
            update(CaseDB)
            .where(CaseDB.id == case_id)
            .where(CaseDB.status == current)
            .values(status=target, **values)
        )
        return result.rowcount > 0

    @staticmethod
    async def get_due_for_purge(session: AsyncSession, now: datetime) -> List[CaseDB]:
        """Closed cases whose purge deadline has passed and are not purged yet."""
        result = await session.execute(
            select(CaseDB)
            .where(CaseDB.status == CaseStatus.CLOSED)
            .where(CaseDB.purged_at.is_(None))
            .where(CaseDB.purge_due_at <= now)
            .order_by(CaseDB.purge_due_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_purged_among(session: AsyncSession, case_ids) -> List[CaseDB]:
        """Closed, already purged cases among `case_ids`; ids that are not UUIDs are skipped."""
        case_uuids = [u for u in (_parse_uuid(case_id) for case_id in case_ids) if u is not None]
        if not case_uuids:
            return []
        result = await session.execute(
            select(CaseDB)
            .where(CaseDB.id.in_(case_uuids))
            .where(CaseDB.status == CaseStatus.CLOSED)
            .where(CaseDB.purged_at.is_not(None))
        )
        return list(result.scalars().all())

    @staticmethod
    async def mark_purged(session: AsyncSession, case_id: uuid.UUID, when: datetime) -> None:
        await session.execute(
            update(CaseDB).where(CaseDB.id == case_id).values(purged_at=when)
        )

    @staticmethod
    def db_to_schema(db_case: CaseDB) -> Case:
        """Convert database model to Pydantic schema."""
        return Case(
            id=str(db_case.id),
            report_number=db_case.report_number,
            full_name=db_case.full_name,
            age_at_missing=db_case.age_at_missing,
            gender=db_case.gender,
            category=db_case.category,
            last_seen_location=db_case.last_seen_location,
            last_seen_date=db_case.last_seen_date,
            description=db_case.description,
            police_station=db_case.police_station,
            contact_number=db_case.contact_number,
            status=db_case.status,
            created_at=db_case.created_at,
            updated_at=db_case.updated_at,
            closed_at=db_case.closed_at,
            purge_due_at=db_case.purge_due_at,
            purged_at=db_case.purged_at
        )

    @staticmethod
    def db_to_summary(db_case: CaseDB) -> CaseSummary:
        return CaseSummary(
            id=str(db_case.id),
            report_number=db_case.report_number,
            full_name=db_case.full_name,
            status=db_case.status
        )


class SubmissionRepository:
    """Repository class for submissions table operations."""

    @staticmethod
    async def add(
        session: AsyncSession,
        submission_code: str,
        quality_score: float,
        match_found: bool,
        fingerprint: Optional[str] = None
    ) -> SubmissionDB:
        db_submission = SubmissionDB(
            id=uuid.uuid4(),
            submission_code=submission_code,
            fingerprint=fingerprint,
            quality_score=quality_score,
            match_found=match_found
        )
        session.add(db_submission)
        await session.flush()
        return db_submission

    @staticmethod
    async def get_by_code(session: AsyncSession, submission_code: str) -> Optional[SubmissionDB]:
        result = await session.execute(
            select(SubmissionDB).where(SubmissionDB.submission_code == submission_code)
        )
        return result.scalar_one_or_none()


class MatchRecordRepository:
    """Repository class for match_records table operations."""

    @staticmethod
    async def add(
        session: AsyncSession,
        submission_id: str,
        case_id: str,
        confidence: float
    ) -> MatchRecordDB:
        db_record = MatchRecordDB(
            id=uuid.uuid4(),
            submission_id=submission_id,
            case_id=str(case_id),
            confidence=confidence,
            verification_status=VerificationStatus.PENDING,
            alert_sent=False
        )
        session.add(db_record)
        await session.flush()
        return db_record

    @staticmethod
    async def get_by_id(session: AsyncSession, record_id: str) -> Optional[MatchRecordDB]:
        """Get a match record by its UUID."""
        record_uuid = _parse_uuid(record_id)
        if record_uuid is None:
            return None
        result = await session.execute(select(MatchRecordDB).where(MatchRecordDB.id == record_uuid))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_submission(session: AsyncSession, submission_id: str) -> Optional[MatchRecordDB]:
        result = await session.execute(
            select(MatchRecordDB).where(MatchRecordDB.submission_id == submission_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_all(
        session: AsyncSession,
        status: Optional[VerificationStatus] = None,
        case_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[MatchRecordDB]:
        """Get match records, most confident first within newest."""
        query = select(MatchRecordDB)
        if status is not None:
            query = query.where(MatchRecordDB.verification_status == status)
        if case_id is not None:
            query = query.where(MatchRecordDB.case_id == str(case_id))
        query = query.order_by(
            MatchRecordDB.created_at.desc(),
            MatchRecordDB.confidence.desc()
        ).offset(skip).limit(limit)

        result = await session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def count(
        session: AsyncSession,
        status: Optional[VerificationStatus] = None,
        case_id: Optional[str] = None
    ) -> int:
        query = select(func.count(MatchRecordDB.id))
        if status is not None:
            query = query.where(MatchRecordDB.verification_status == status)
        if case_id is not None:
            query = query.where(MatchRecordDB.case_id == str(case_id))
        result = await session.execute(query)
        return result.scalar() or 0

    @staticmethod
    async def set_verification(
        session: AsyncSession,
        record_id: uuid.UUID,
        status: VerificationStatus,
        verified_at: datetime
    ) -> bool:
        """Move a pending record to `status`. Returns False if it is no longer pending."""
        result = await session.execute(
            update(MatchRecordDB)
            .where(MatchRecordDB.id == record_id)
            .where(MatchRecordDB.verification_status == VerificationStatus.PENDING)
            .values(verification_status=status, verified_at=verified_at)
        )
        return result.rowcount > 0

    @staticmethod
    async def mark_alert_sent(session: AsyncSession, record_id: uuid.UUID) -> bool:
        """Flip alert_sent to true. Returns True only for the call that flipped it."""
        result = await session.execute(
            update(MatchRecordDB)
            .where(MatchRecordDB.id == record_id)
            .where(MatchRecordDB.alert_sent == False)  # noqa: E712
            .values(alert_sent=True)
        )
        return result.rowcount > 0

    @staticmethod
    def db_to_schema(db_record: MatchRecordDB) -> MatchRecord:
        """Convert database model to Pydantic schema."""
        return MatchRecord(
            id=str(db_record.id),
            submission_id=db_record.submission_id,
            case_id=db_record.case_id,
            confidence=db_record.confidence,
            created_at=db_record.created_at,
            verification_status=db_record.verification_status,
            verified_at=db_record.verified_at,
            alert_sent=db_record.alert_sent
        )
