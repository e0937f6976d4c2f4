"""
Matching Service

Explicitly constructed facade over the store, registry, ledger and
pipeline. The process entry point builds one instance and owns its
lifecycle; nothing here is a module-level singleton.
"""
import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from missing_match.config import MatchingSettings
from missing_match.domain import CaseStatus, VerificationDecision
from missing_match.errors import InvalidTransition, StoreUnavailable
from missing_match.ledger import MatchLedger
from missing_match.models import CaseDB, MatchRecordDB
from missing_match.notifier import Notifier
from missing_match.pipeline import MatchingPipeline
from missing_match.registry import CaseRegistry
from missing_match.schemas import PipelineOutcome
from missing_match.vector_store import EmbeddingStore
from missing_match.vectors import VectorLike

logger = logging.getLogger(__name__)


class MatchingService:
    """Operations exposed to collaborators (API, case management, reviewers)."""

    def __init__(
        self,
        settings: MatchingSettings,
        session_maker: async_sessionmaker,
        store: Optional[EmbeddingStore] = None,
        notifier: Optional[Notifier] = None
    ):
        self.settings = settings
        self.session_maker = session_maker
        self.store = store or EmbeddingStore(
            dimension=settings.vector_dimension,
            index_path=settings.index_path,
            metadata_path=settings.metadata_path
        )
        self.registry = CaseRegistry(self.store, grace_period=settings.privacy_purge_grace_period)
        self.pipeline = MatchingPipeline(
            store=self.store,
            session_maker=session_maker,
            registry=self.registry,
            settings=settings,
            notifier=notifier
        )

    async def submit_query(
        self,
        vector: VectorLike,
        quality_score: float,
        fingerprint: Optional[str] = None
    ) -> PipelineOutcome:
        """Match a query embedding against the registry."""
        return await self.pipeline.submit(vector, quality_score, fingerprint=fingerprint)

    async def register_embedding(
        self,
        session: AsyncSession,
        case_id: str,
        vector: VectorLike,
        quality_score: float,
        is_age_progressed: bool = False,
        captured_at: Optional[datetime] = None
    ) -> str:
        """
        Store a face embedding for an open case.

        Raises:
            CaseNotFound: Unknown case
            InvalidTransition: The case is closed
            InvalidVectorKind: Vector cannot be normalized
        """
        db_case = await self.registry.get_case(session, case_id)
        if CaseStatus(db_case.status) == CaseStatus.CLOSED:
            raise InvalidTransition(f"Case {db_case.id} is closed and cannot receive embeddings")

        embedding_id = self.store.insert(
            str(db_case.id),
            vector,
            quality_score=quality_score,
            is_age_progressed=is_age_progressed,
            captured_at=captured_at
        )

        # close_case commits the status before purging, so a close that raced
        # the insert is visible here
        await session.refresh(db_case)
        if CaseStatus(db_case.status) == CaseStatus.CLOSED:
            self.store.purge(str(db_case.id))
            logger.warning(f"Case {db_case.id} was closed during registration; embedding discarded")
            raise InvalidTransition(f"Case {db_case.id} is closed and cannot receive embeddings")

        return embedding_id

    async def verify_match(
        self,
        session: AsyncSession,
        record_id: str,
        decision: Union[VerificationDecision, str]
    ) -> MatchRecordDB:
        return await MatchLedger.verify(session, record_id, decision)

    async def close_case(self, session: AsyncSession, case_id: str) -> Tuple[CaseDB, int]:
        """Close a case and purge (or schedule the purge of) its embeddings."""
        return await self.registry.close_case(session, case_id)

    async def purge_expired(self) -> List[str]:
        async with self.session_maker() as session:
            return await self.registry.purge_expired(session)

    async def run_purge_sweeper(self, interval: float):
        """Sweep for closed cases past their grace period until cancelled."""
        logger.info(f"Privacy purge sweeper running every {interval}s")
        while True:
            await asyncio.sleep(interval)
            try:
                await self.purge_expired()
            except (StoreUnavailable, SQLAlchemyError) as e:
                logger.error(f"Privacy purge sweep failed, retrying next interval: {e}")

    async def shutdown(self):
        """Let in-flight alerts finish, then close the store."""
        await self.pipeline.drain()
        self.close()

    def close(self):
        self.store.close()
