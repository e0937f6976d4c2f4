"""
Shared fixtures: small 8-dimensional vectors, a throwaway SQLite database
per test and a service wired to both.
"""
from datetime import datetime
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest
import pytest_asyncio

from missing_match.config import MatchingSettings
from missing_match.database import close_db, create_engine, create_session_maker, init_db
from missing_match.domain import CaseCategory
from missing_match.registry import CaseRegistry
from missing_match.schemas import CaseCreate
from missing_match.service import MatchingService
from missing_match.vector_store import EmbeddingStore

DIM = 8


def basis(i: int, dim: int = DIM) -> list:
    """Unit vector along axis i."""
    vector = [0.0] * dim
    vector[i] = 1.0
    return vector


@pytest.fixture
def unit():
    return basis


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def settings(tmp_path):
    return MatchingSettings(
        vector_dimension=DIM,
        match_threshold=0.75,
        alert_threshold=0.75,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        index_path=None,
        metadata_path=None,
        purge_sweep_interval=0,
    )


@pytest.fixture
def store():
    return EmbeddingStore(dimension=DIM)


@pytest.fixture
def notifier():
    mock_notifier = Mock()
    mock_notifier.notify = AsyncMock(return_value=None)
    return mock_notifier


@pytest_asyncio.fixture
async def engine(settings):
    db_engine = create_engine(settings.database_url)
    await init_db(db_engine)
    yield db_engine
    await close_db(db_engine)


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as db_session:
        yield db_session


@pytest.fixture
def registry(store):
    return CaseRegistry(store)


@pytest.fixture
def service(settings, session_maker, store, notifier):
    return MatchingService(settings, session_maker, store=store, notifier=notifier)


def case_payload(report_number: str = "FIR-001", **overrides) -> CaseCreate:
    data = {
        "report_number": report_number,
        "full_name": "Jane Doe",
        "age_at_missing": 12,
        "gender": "female",
        "category": CaseCategory.CHILD,
        "last_seen_location": "Central Station",
        "last_seen_date": datetime(2024, 1, 15, 10, 30),
        "police_station": "Central Police Station",
    }
    data.update(overrides)
    return CaseCreate(**data)


@pytest.fixture
def make_case(registry, session):
    """Create a case through the registry and return it."""
    async def _make(report_number: str = "FIR-001", **overrides):
        return await registry.create_case(session, case_payload(report_number, **overrides))
    return _make
