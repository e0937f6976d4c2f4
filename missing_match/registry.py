"""
Case Registry

Owns missing-person cases and their lifecycle:

    active -> found -> active (reopened)
    active | found -> closed   (terminal)

Closing a case schedules erasure of its embeddings: immediately when the
grace period is zero, otherwise by `purge_expired` once the deadline passes.
The matching pipeline only reads cases; it never changes their status.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from missing_match.domain import CaseStatus, can_transition_case, to_naive_utc, utcnow
from missing_match.errors import CaseNotFound, DuplicateReportNumber, InvalidTransition, StoreUnavailable
from missing_match.models import CaseDB
from missing_match.repository import CaseRepository
from missing_match.schemas import CaseCreate
from missing_match.vector_store import EmbeddingStore

logger = logging.getLogger(__name__)


class CaseRegistry:
    """Case lifecycle and the privacy purge of closed cases."""

    def __init__(self, store: EmbeddingStore, grace_period: timedelta = timedelta(0)):
        self.store = store
        self.grace_period = grace_period

    async def create_case(self, session: AsyncSession, data: CaseCreate) -> CaseDB:
        """
        Register a new active case.

        Raises:
            DuplicateReportNumber: A case with the same report number exists
        """
        if await CaseRepository.get_by_report_number(session, data.report_number):
            raise DuplicateReportNumber(f"Report number '{data.report_number}' is already registered")

        now = utcnow()
        fields = data.model_dump()
        fields["last_seen_date"] = to_naive_utc(data.last_seen_date)
        try:
            db_case = await CaseRepository.create(session, created_at=now, updated_at=now, **fields)
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise DuplicateReportNumber(f"Report number '{data.report_number}' is already registered")

        logger.info(f"Created case {db_case.id} (report {db_case.report_number})")
        return db_case

    async def get_case(self, session: AsyncSession, case_id: str) -> CaseDB:
        db_case = await CaseRepository.get_by_id(session, case_id)
        if db_case is None:
            raise CaseNotFound(f"Case '{case_id}' not found")
        return db_case

    async def list_cases(
        self,
        session: AsyncSession,
        status: Optional[CaseStatus] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[CaseDB]:
        return await CaseRepository.get_all(session, status=status, skip=skip, limit=limit)

    async def count_cases(self, session: AsyncSession, status: Optional[CaseStatus] = None) -> int:
        return await CaseRepository.count(session, status=status)

    async def transition_status(self, session: AsyncSession, case_id: str, target: CaseStatus) -> CaseDB:
        """
        Move a case to `target`. Closing goes through `close_case`.

        Raises:
            CaseNotFound: Unknown case
            InvalidTransition: `target` is not reachable from the current status
        """
        target = CaseStatus(target)
        if target == CaseStatus.CLOSED:
            db_case, _ = await self.close_case(session, case_id)
            return db_case

        db_case = await self.get_case(session, case_id)
        current = CaseStatus(db_case.status)
        if not can_transition_case(current, target):
            raise InvalidTransition(f"Case {db_case.id} cannot move from {current.value} to {target.value}")

        updated = await CaseRepository.update_status(
            session, db_case.id, current, target, updated_at=utcnow()
        )
        if not updated:
            await session.rollback()
            raise InvalidTransition(f"Case {db_case.id} changed status concurrently")

        await session.commit()
        await session.refresh(db_case)
        logger.info(f"Case {db_case.id} moved from {current.value} to {target.value}")
        return db_case

    async def close_case(
        self,
        session: AsyncSession,
        case_id: str,
        now: Optional[datetime] = None
    ) -> Tuple[CaseDB, int]:
        """
        Close a case and schedule the purge of its embeddings.

        Closing an already closed case is a no-op.

        Returns:
            Tuple of (case, number of embeddings purged right away)
        """
        now = now or utcnow()
        db_case = await self.get_case(session, case_id)
        current = CaseStatus(db_case.status)

        if current == CaseStatus.CLOSED:
            return db_case, 0

        updated = await CaseRepository.update_status(
            session,
            db_case.id,
            current,
            CaseStatus.CLOSED,
            updated_at=now,
            closed_at=now,
            purge_due_at=now + self.grace_period
        )
        if not updated:
            await session.rollback()
            raise InvalidTransition(f"Case {db_case.id} changed status concurrently")

        await session.commit()
        await session.refresh(db_case)
        logger.info(f"Closed case {db_case.id}, embeddings due for purge at {db_case.purge_due_at}")

        purged = 0
        if self.grace_period <= timedelta(0):
            purged = await self._purge(session, db_case, now)
        return db_case, purged

    async def _purge(self, session: AsyncSession, db_case: CaseDB, now: datetime) -> int:
        # Store first: if it fails the case stays due and the next sweep retries
        purged = self.store.purge(str(db_case.id))
        await CaseRepository.mark_purged(session, db_case.id, now)
        await session.commit()
        await session.refresh(db_case)
        return purged

    async def purge_expired(self, session: AsyncSession, now: Optional[datetime] = None) -> List[str]:
        """
        Erase embeddings of every closed case whose grace period has ended.

        A case whose purge fails stays due and is retried by the next sweep;
        the others are still purged.

        Returns:
            Ids of the purged cases
        """
        now = now or utcnow()
        due = await CaseRepository.get_due_for_purge(session, now)

        # Already purged cases that regained vectors, e.g. a registration racing the close
        due_ids = {str(db_case.id) for db_case in due}
        due += await CaseRepository.get_purged_among(session, self.store.case_ids() - due_ids)

        purged_ids = []
        for db_case in due:
            try:
                await self._purge(session, db_case, now)
            except StoreUnavailable as e:
                logger.error(f"Privacy purge of case {db_case.id} failed, retrying next sweep: {e}")
                continue
            purged_ids.append(str(db_case.id))

        if purged_ids:
            logger.info(f"Privacy purge erased embeddings of {len(purged_ids)} closed cases")
        return purged_ids

    async def stats(self, session: AsyncSession) -> Dict[str, int]:
        """Case counts per status."""
        return {
            status.value: await CaseRepository.count(session, status=status)
            for status in CaseStatus
        }
