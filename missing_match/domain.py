"""
Domain types shared by the store, similarity engine, pipeline and ledger.

Status fields are closed enums; unknown values are rejected when they are
parsed instead of being carried around as free strings.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import numpy as np


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns of the ORM models."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware timestamp to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CaseStatus(str, Enum):
    ACTIVE = "active"
    FOUND = "found"
    CLOSED = "closed"


class CaseCategory(str, Enum):
    CHILD = "child"
    WOMAN = "woman"
    MAN = "man"
    ELDERLY = "elderly"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FALSE_POSITIVE = "false_positive"


CASE_TRANSITIONS = {
    CaseStatus.ACTIVE: {CaseStatus.FOUND, CaseStatus.CLOSED},
    CaseStatus.FOUND: {CaseStatus.ACTIVE, CaseStatus.CLOSED},
    CaseStatus.CLOSED: set(),
}

VERIFICATION_TRANSITIONS = {
    VerificationStatus.PENDING: {VerificationStatus.CONFIRMED, VerificationStatus.FALSE_POSITIVE},
    VerificationStatus.CONFIRMED: set(),
    VerificationStatus.FALSE_POSITIVE: set(),
}


def can_transition_case(current: CaseStatus, target: CaseStatus) -> bool:
    return target in CASE_TRANSITIONS[current]


def can_transition_verification(current: VerificationStatus, target: VerificationStatus) -> bool:
    return target in VERIFICATION_TRANSITIONS[current]


@dataclass(frozen=True)
class EmbeddingEntry:
    """A stored, unit-normalized face embedding owned by one case."""

    embedding_id: str
    case_id: str
    vector: np.ndarray
    quality_score: float
    is_age_progressed: bool
    captured_at: datetime

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True)
class MatchCandidate:
    """Similarity engine output for one stored embedding. Never persisted."""

    case_id: str
    similarity: float
    embedding_id: str
    captured_at: datetime
    is_age_progressed: bool = False


class VerificationDecision(str, Enum):
    """Outcomes a reviewer may record for a pending match."""

    CONFIRMED = "confirmed"
    FALSE_POSITIVE = "false_positive"
