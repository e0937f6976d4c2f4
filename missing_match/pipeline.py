"""
Matching Pipeline

Runs one submission through an explicit state machine:

    received -> validating -> searching -> deciding -> recorded
         \\___________\\____________\\___________\\-> failed

Stage functions (`validate`, `search`, `decide`) are pure transitions on a
PipelineRun so they can be stepped synchronously. MatchingPipeline adds the
I/O: the store snapshot (off the event loop, with a timeout), the single
ledger transaction and background alert delivery. Nothing durable is
written before `recorded`, so a failed run can always be retried from scratch.
"""
import asyncio
import logging
import math
import secrets
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

import numpy as np
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from missing_match.config import SUBMISSION_CODE_LENGTH, MatchingSettings
from missing_match.domain import MatchCandidate
from missing_match.errors import (
    CaseNotFound,
    InvalidQuery,
    InvalidTransition,
    MatchingError,
    NotifierFailure,
    SearchTimeout,
    StoreUnavailable
)
from missing_match.ledger import MatchLedger
from missing_match.models import MatchRecordDB
from missing_match.notifier import LoggingNotifier, Notifier
from missing_match.registry import CaseRegistry
from missing_match.repository import CaseRepository, MatchRecordRepository, SubmissionRepository
from missing_match.schemas import CaseSummary, MatchRecord, PipelineOutcome
from missing_match.similarity import rank_candidates
from missing_match.vector_store import EmbeddingStore, StoreSnapshot
from missing_match.vectors import VectorLike, as_vector, normalize

logger = logging.getLogger(__name__)

SUBMISSION_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_submission_code(length: int = SUBMISSION_CODE_LENGTH) -> str:
    """Public reference handed back to the submitter, e.g. 'K3Z9QX1B'."""
    return "".join(secrets.choice(SUBMISSION_CODE_ALPHABET) for _ in range(length))


class PipelineState(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    SEARCHING = "searching"
    DECIDING = "deciding"
    RECORDED = "recorded"
    FAILED = "failed"


PIPELINE_TRANSITIONS = {
    PipelineState.RECEIVED: {PipelineState.VALIDATING, PipelineState.FAILED},
    PipelineState.VALIDATING: {PipelineState.SEARCHING, PipelineState.FAILED},
    PipelineState.SEARCHING: {PipelineState.DECIDING, PipelineState.FAILED},
    PipelineState.DECIDING: {PipelineState.RECORDED, PipelineState.FAILED},
    PipelineState.RECORDED: set(),
    PipelineState.FAILED: set(),
}


@dataclass
class PipelineRun:
    """Mutable state of one submission moving through the pipeline."""

    vector: VectorLike
    quality_score: float
    fingerprint: Optional[str] = None
    submission_ref: str = field(default_factory=generate_submission_code)
    state: PipelineState = PipelineState.RECEIVED
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])
    query: Optional[np.ndarray] = None
    snapshot_generation: Optional[int] = None
    candidates: List[MatchCandidate] = field(default_factory=list)
    decision: Optional[MatchCandidate] = None
    error: Optional[MatchingError] = None

    @property
    def terminal(self) -> bool:
        return not PIPELINE_TRANSITIONS[self.state]

    @property
    def matched(self) -> bool:
        return self.decision is not None

    def advance(self, target: PipelineState):
        if target not in PIPELINE_TRANSITIONS[self.state]:
            raise InvalidTransition(f"Pipeline cannot move from {self.state.value} to {target.value}")
        self.state = target
        self.history.append(target)

    def fail(self, error: MatchingError):
        if self.terminal:
            return
        self.error = error
        self.advance(PipelineState.FAILED)


def validate(run: PipelineRun, dimension: int) -> PipelineRun:
    """
    Received -> Validating: check the query vector and quality score.

    The query is re-normalized so similarity stays on the [0, 1] scale
    even if the extractor output drifted from unit length.
    """
    run.advance(PipelineState.VALIDATING)
    try:
        quality = float(run.quality_score)
    except (TypeError, ValueError):
        raise InvalidQuery(f"quality_score is not a number: {run.quality_score!r}")
    if not math.isfinite(quality) or not 0.0 <= quality <= 1.0:
        raise InvalidQuery(f"quality_score must be within [0, 1], got {quality}")

    vector = as_vector(run.vector, dimension, error=InvalidQuery)
    run.query = normalize(vector, error=InvalidQuery)
    run.quality_score = quality
    return run


def search(run: PipelineRun, snapshot: StoreSnapshot, threshold: float) -> PipelineRun:
    """Validating -> Searching: rank the snapshot against the query."""
    run.advance(PipelineState.SEARCHING)
    return apply_ranking(run, snapshot.generation, rank_candidates(run.query, snapshot, threshold))


def apply_ranking(run: PipelineRun, generation: int, candidates: List[MatchCandidate]) -> PipelineRun:
    """Attach a ranking computed for `run` while it is in the searching state."""
    if run.state != PipelineState.SEARCHING:
        raise InvalidTransition(f"Ranking cannot be applied to a {run.state.value} run")
    run.snapshot_generation = generation
    run.candidates = candidates
    return run


def decide(run: PipelineRun) -> PipelineRun:
    """Searching -> Deciding: only the top-ranked candidate can become a match."""
    run.advance(PipelineState.DECIDING)
    run.decision = run.candidates[0] if run.candidates else None
    return run


class MatchingPipeline:
    """
    Orchestrates submissions against an embedding store and the ledger.

    Each `submit` call is independent; many may run concurrently on the
    same instance. A run that decides "match" always creates a new record,
    so callers deduplicate repeated photos themselves (via the fingerprint).
    """

    def __init__(
        self,
        store: EmbeddingStore,
        session_maker: async_sessionmaker,
        registry: CaseRegistry,
        settings: MatchingSettings,
        notifier: Optional[Notifier] = None
    ):
        self.store = store
        self.session_maker = session_maker
        self.registry = registry
        self.settings = settings
        self.notifier = notifier or LoggingNotifier()
        self._pending_alerts: Set[asyncio.Task] = set()

    async def submit(
        self,
        vector: VectorLike,
        quality_score: float,
        fingerprint: Optional[str] = None
    ) -> PipelineOutcome:
        """
        Match a query embedding and record the decision.

        Raises:
            InvalidQuery: Malformed query; nothing was written
            StoreUnavailable: Snapshot, search or ledger write failed; safe to retry
        """
        run = PipelineRun(vector=vector, quality_score=quality_score, fingerprint=fingerprint)
        return await self.execute(run)

    async def execute(self, run: PipelineRun) -> PipelineOutcome:
        start_time = time.time()
        try:
            validate(run, self.settings.vector_dimension)
            await self._search(run)
            decide(run)
            # A write that has started must finish even if the caller goes away
            outcome = await asyncio.shield(self._record(run))
        except MatchingError as e:
            run.fail(e)
            logger.warning(f"Submission {run.submission_ref} failed: {e.__class__.__name__}: {e}")
            raise
        except asyncio.CancelledError:
            if run.state != PipelineState.DECIDING:
                run.fail(MatchingError("Submission cancelled"))
            raise

        processing_time = (time.time() - start_time) * 1000
        if outcome.matched:
            logger.info(
                f"Submission {run.submission_ref} matched case {outcome.case_id} "
                f"(confidence: {outcome.confidence:.2%}) in {processing_time:.1f}ms"
            )
        else:
            logger.info(
                f"Submission {run.submission_ref}: no match among {len(run.candidates)} candidates "
                f"in {processing_time:.1f}ms"
            )
        return outcome

    async def _search(self, run: PipelineRun):
        run.advance(PipelineState.SEARCHING)
        query = run.query
        threshold = self.settings.match_threshold

        # The worker thread only sees local values; an abandoned scan cannot touch the run
        def scan():
            snapshot = self.store.snapshot()
            return snapshot.generation, rank_candidates(query, snapshot, threshold)

        try:
            generation, candidates = await asyncio.wait_for(
                asyncio.to_thread(scan),
                timeout=self.settings.search_timeout
            )
        except asyncio.TimeoutError:
            raise SearchTimeout(f"Search exceeded {self.settings.search_timeout}s")
        apply_ranking(run, generation, candidates)

    async def _record(self, run: PipelineRun) -> PipelineOutcome:
        """Deciding -> Recorded: one transaction for the submission and its match record."""
        async with self.session_maker() as session:
            record: Optional[MatchRecordDB] = None
            try:
                await SubmissionRepository.add(
                    session,
                    submission_code=run.submission_ref,
                    quality_score=run.quality_score,
                    match_found=run.matched,
                    fingerprint=run.fingerprint
                )
                if run.matched:
                    record, _ = await MatchLedger.append(
                        session,
                        submission_id=run.submission_ref,
                        case_id=run.decision.case_id,
                        confidence=run.decision.similarity
                    )
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to record submission {run.submission_ref}: {e}")
                raise StoreUnavailable(f"Failed to record submission: {e}")

            run.advance(PipelineState.RECORDED)

            if record is None:
                return PipelineOutcome(matched=False, submission_ref=run.submission_ref)

            alert_sent = False
            if record.confidence >= self.settings.alert_threshold:
                alert_sent = await self._alert(session, record)

            return PipelineOutcome(
                matched=True,
                submission_ref=run.submission_ref,
                case_id=record.case_id,
                confidence=record.confidence,
                record_id=str(record.id),
                alert_sent=alert_sent,
                case=await self._enrich(session, record.case_id)
            )

    async def _alert(self, session, record: MatchRecordDB) -> bool:
        """
        Flip alert_sent and dispatch the notifier in the background.

        The submission never waits for delivery; failures here never undo
        the record.
        """
        try:
            flipped = await MatchLedger.mark_alert_sent(session, record.id)
            if not flipped:
                return False
            await session.refresh(record)
        except SQLAlchemyError as e:
            logger.error(f"Failed to flag alert for match record {record.id}: {e}")
            return False

        task = asyncio.create_task(self._deliver(MatchRecordRepository.db_to_schema(record)))
        self._pending_alerts.add(task)
        task.add_done_callback(self._pending_alerts.discard)
        return True

    async def _deliver(self, record: MatchRecord):
        try:
            await asyncio.wait_for(self.notifier.notify(record), timeout=self.settings.notify_timeout)
        except asyncio.TimeoutError:
            failure = NotifierFailure(f"Notifier did not finish within {self.settings.notify_timeout}s")
            logger.error(f"Notifier failed for match record {record.id}: {failure}")
        except Exception as e:
            failure = NotifierFailure(str(e))
            logger.error(f"Notifier failed for match record {record.id}: {failure}", exc_info=True)

    async def drain(self):
        """Wait for in-flight notifications; each is bounded by the notify timeout."""
        if self._pending_alerts:
            await asyncio.gather(*list(self._pending_alerts), return_exceptions=True)

    async def _enrich(self, session, case_id: str) -> Optional[CaseSummary]:
        """Attach case details; degrades to case_id only when the case is unknown."""
        try:
            db_case = await self.registry.get_case(session, case_id)
        except CaseNotFound:
            logger.warning(f"Matched case {case_id} not found in registry; returning id only")
            return None
        except SQLAlchemyError as e:
            logger.error(f"Case lookup for {case_id} failed: {e}")
            return None
        return CaseRepository.db_to_summary(db_case)
