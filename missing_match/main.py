"""
Missing Person Matching API

HTTP surface of the matching engine, with PostgreSQL for cases and the
match ledger and a FAISS-backed embedding store.

Endpoints:
- POST /cases - Register a missing-person case
- POST /cases/{case_id}/embeddings - Register a face embedding for a case
- POST /cases/{case_id}/close - Close a case and purge its embeddings
- POST /submissions - Match a submitted face embedding
- POST /matches/{record_id}/verify - Confirm or reject a match
"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from missing_match.config import API_DESCRIPTION, API_TITLE, API_VERSION, MatchingSettings
from missing_match.database import close_db, create_engine, create_session_maker, init_db
from missing_match.domain import CaseStatus, VerificationStatus
from missing_match.errors import MatchingError
from missing_match.ledger import MatchLedger
from missing_match.notifier import Notifier
from missing_match.repository import CaseRepository, MatchRecordRepository
from missing_match.schemas import (
    Case,
    CaseCreate,
    CaseList,
    CaseStatusUpdate,
    CloseCaseResponse,
    EmbeddingCreate,
    EmbeddingResponse,
    ErrorResponse,
    MatchRecord,
    MatchRecordList,
    PipelineOutcome,
    PurgeResponse,
    StatsResponse,
    SubmissionRequest,
    VerifyRequest
)
from missing_match.service import MatchingService

logger = logging.getLogger(__name__)


def get_service(request: Request) -> MatchingService:
    """Dependency returning the service built by the lifespan handler."""
    return request.app.state.service


async def get_db(request: Request) -> AsyncSession:
    """Dependency to get database session."""
    async with request.app.state.service.session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def create_app(settings: Optional[MatchingSettings] = None, notifier: Optional[Notifier] = None) -> FastAPI:
    """Build the API; the engine, store and service live for the app's lifespan."""
    settings = settings or MatchingSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting Missing Person Matching API...")
        logger.info(f"Vector dimension: {settings.vector_dimension}")
        logger.info(f"Match threshold: {settings.match_threshold}, alert threshold: {settings.alert_threshold}")

        engine = create_engine(settings.database_url)
        await init_db(engine)

        service = MatchingService(settings, create_session_maker(engine), notifier=notifier)
        app.state.service = service
        logger.info(f"Embedding store has {service.store.count} vectors")

        sweeper = None
        if settings.purge_sweep_interval > 0 and settings.privacy_purge_grace_period > timedelta(0):
            sweeper = asyncio.create_task(service.run_purge_sweeper(settings.purge_sweep_interval))

        yield

        # Shutdown
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        await service.shutdown()
        await close_db(engine)
        logger.info("Shutting down Missing Person Matching API...")

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    register_exception_handlers(app)
    return app


def register_routes(app: FastAPI):

    @app.get("/health")
    async def health_check(
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        """Health check endpoint."""
        try:
            case_count = await CaseRepository.count(db)
            db_status = "healthy"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            case_count = 0
            db_status = "unhealthy"

        return {
            "status": "healthy" if db_status == "healthy" else "degraded",
            "database_status": db_status,
            "total_cases": case_count,
            "stored_embeddings": service.store.count,
            "vector_dimension": service.settings.vector_dimension
        }

    # ========================================================================
    # CASES
    # ========================================================================
    @app.post(
        "/cases",
        response_model=Case,
        status_code=201,
        responses={409: {"model": ErrorResponse, "description": "Report number already registered"}},
        summary="Register a missing-person case"
    )
    async def create_case(
        payload: CaseCreate,
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        db_case = await service.registry.create_case(db, payload)
        return CaseRepository.db_to_schema(db_case)

    @app.get("/cases", response_model=CaseList, summary="List cases")
    async def list_cases(
        status: Optional[CaseStatus] = Query(None, description="Filter by lifecycle status"),
        skip: int = Query(0, ge=0, description="Number of cases to skip"),
        limit: int = Query(100, ge=1, le=1000, description="Maximum number of cases to return"),
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        total_count = await service.registry.count_cases(db, status=status)
        db_cases = await service.registry.list_cases(db, status=status, skip=skip, limit=limit)
        return CaseList(
            total_count=total_count,
            records=[CaseRepository.db_to_schema(c) for c in db_cases]
        )

    @app.get(
        "/cases/{case_id}",
        response_model=Case,
        responses={404: {"model": ErrorResponse, "description": "Case not found"}},
        summary="Get a case"
    )
    async def get_case(
        case_id: str,
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        return CaseRepository.db_to_schema(await service.registry.get_case(db, case_id))

    @app.post(
        "/cases/{case_id}/status",
        response_model=Case,
        responses={
            404: {"model": ErrorResponse, "description": "Case not found"},
            409: {"model": ErrorResponse, "description": "Transition not allowed"}
        },
        summary="Change a case's lifecycle status"
    )
    async def update_case_status(
        case_id: str,
        payload: CaseStatusUpdate,
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        db_case = await service.registry.transition_status(db, case_id, payload.status)
        return CaseRepository.db_to_schema(db_case)

    @app.post(
        "/cases/{case_id}/close",
        response_model=CloseCaseResponse,
        responses={404: {"model": ErrorResponse, "description": "Case not found"}},
        summary="Close a case and purge its embeddings"
    )
    async def close_case(
        case_id: str,
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        db_case, purged = await service.close_case(db, case_id)
        return CloseCaseResponse(
            success=True,
            message=f"Case '{db_case.report_number}' closed",
            case=CaseRepository.db_to_schema(db_case),
            purged_embeddings=purged
        )

    @app.post(
        "/cases/{case_id}/embeddings",
        response_model=EmbeddingResponse,
        status_code=201,
        responses={
            404: {"model": ErrorResponse, "description": "Case not found"},
            409: {"model": ErrorResponse, "description": "Case is closed"},
            422: {"model": ErrorResponse, "description": "Vector cannot be stored"}
        },
        summary="Register a face embedding for a case"
    )
    async def register_embedding(
        case_id: str,
        payload: EmbeddingCreate,
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        embedding_id = await service.register_embedding(
            db,
            case_id,
            payload.vector,
            quality_score=payload.quality_score,
            is_age_progressed=payload.is_age_progressed,
            captured_at=payload.captured_at
        )
        return EmbeddingResponse(
            success=True,
            message="Embedding stored",
            embedding_id=embedding_id,
            case_id=case_id
        )

    # ========================================================================
    # SUBMISSIONS
    # ========================================================================
    @app.post(
        "/submissions",
        response_model=PipelineOutcome,
        responses={
            422: {"model": ErrorResponse, "description": "Invalid query embedding"},
            503: {"model": ErrorResponse, "description": "Store unavailable, retry"}
        },
        summary="Match a face embedding against the registry",
        description="""
    Run a submitted face embedding through the matching pipeline.

    **Pipeline:**
    1. Validate dimension, finiteness and quality score
    2. Snapshot the embedding store
    3. Rank candidates by remapped cosine similarity
    4. Record the single best candidate at or above the threshold
    5. Notify when the match clears the alert threshold

    An invalid embedding is rejected with 422; a valid embedding without a
    match returns `matched: false`.
    """
    )
    async def submit_query(payload: SubmissionRequest, service: MatchingService = Depends(get_service)):
        return await service.submit_query(
            payload.vector,
            payload.quality_score,
            fingerprint=payload.fingerprint
        )

    # ========================================================================
    # MATCHES
    # ========================================================================
    @app.get("/matches", response_model=MatchRecordList, summary="List match records")
    async def list_matches(
        status: Optional[VerificationStatus] = Query(None, description="Filter by verification status"),
        case_id: Optional[str] = Query(None, description="Filter by case"),
        skip: int = Query(0, ge=0),
        limit: int = Query(100, ge=1, le=1000),
        db: AsyncSession = Depends(get_db)
    ):
        total_count = await MatchLedger.count_records(db, status=status, case_id=case_id)
        db_records = await MatchLedger.list_records(db, status=status, case_id=case_id, skip=skip, limit=limit)
        return MatchRecordList(
            total_count=total_count,
            records=[MatchRecordRepository.db_to_schema(r) for r in db_records]
        )

    @app.get(
        "/matches/{record_id}",
        response_model=MatchRecord,
        responses={404: {"model": ErrorResponse, "description": "Record not found"}},
        summary="Get a match record"
    )
    async def get_match(record_id: str, db: AsyncSession = Depends(get_db)):
        return MatchRecordRepository.db_to_schema(await MatchLedger.get(db, record_id))

    @app.post(
        "/matches/{record_id}/verify",
        response_model=MatchRecord,
        responses={
            404: {"model": ErrorResponse, "description": "Record not found"},
            409: {"model": ErrorResponse, "description": "Record already verified"}
        },
        summary="Confirm or reject a pending match"
    )
    async def verify_match(
        record_id: str,
        payload: VerifyRequest,
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        db_record = await service.verify_match(db, record_id, payload.decision)
        return MatchRecordRepository.db_to_schema(db_record)

    # ========================================================================
    # Dashboard & maintenance
    # ========================================================================
    @app.get("/stats", response_model=StatsResponse, summary="Dashboard counters")
    async def stats(
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        counts = await service.registry.stats(db)
        return StatsResponse(
            active_cases=counts[CaseStatus.ACTIVE.value],
            found_cases=counts[CaseStatus.FOUND.value],
            closed_cases=counts[CaseStatus.CLOSED.value],
            pending_matches=await MatchLedger.pending_count(db),
            stored_embeddings=service.store.count
        )

    @app.post(
        "/maintenance/purge-expired",
        response_model=PurgeResponse,
        summary="Erase embeddings of closed cases past their grace period"
    )
    async def purge_expired(
        service: MatchingService = Depends(get_service),
        db: AsyncSession = Depends(get_db)
    ):
        purged = await service.registry.purge_expired(db)
        return PurgeResponse(success=True, purged_cases=purged)


def register_exception_handlers(app: FastAPI):

    @app.exception_handler(MatchingError)
    async def matching_error_handler(request, exc: MatchingError):
        """Domain errors carry their own HTTP status."""
        if exc.status_code >= 500:
            logger.error(f"{exc.__class__.__name__}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.__class__.__name__,
                "detail": exc.message
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc):
        """Custom HTTP exception handler."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "HTTPException",
                "detail": exc.detail
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        """General exception handler."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "InternalServerError",
                "detail": "An unexpected error occurred"
            }
        )


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
