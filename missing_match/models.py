"""
SQLAlchemy ORM Models for the Missing Person Matching Database

Tables:
- cases: missing-person records and their lifecycle
- submissions: processed public submissions (no image, no vector)
- match_records: ledger of pipeline matches awaiting human verification
"""
import uuid

from sqlalchemy import Boolean, Column, DateTime, Enum, Float, Integer, String, Text, Uuid

from missing_match.database import Base
from missing_match.domain import CaseCategory, CaseStatus, VerificationStatus, utcnow


def _enum_column(enum_cls):
    # Store enum values ("false_positive"), not member names
    return Enum(
        enum_cls,
        native_enum=False,
        validate_strings=True,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class CaseDB(Base):
    """A missing-person case. `report_number` is unique and never updated."""
    __tablename__ = "cases"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    report_number = Column(String(64), nullable=False, unique=True, index=True)
    full_name = Column(Text, nullable=False)
    age_at_missing = Column(Integer, nullable=False)
    gender = Column(String(32), nullable=False)
    category = Column(_enum_column(CaseCategory), nullable=False)
    last_seen_location = Column(Text, nullable=False)
    last_seen_date = Column(DateTime, nullable=False)
    description = Column(Text, nullable=True)
    police_station = Column(Text, nullable=False)
    contact_number = Column(String(32), nullable=True)
    status = Column(_enum_column(CaseStatus), nullable=False, default=CaseStatus.ACTIVE, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)
    purge_due_at = Column(DateTime, nullable=True, index=True)
    purged_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<CaseDB(id={self.id}, report_number='{self.report_number}', status={self.status})>"


class SubmissionDB(Base):
    """
    A processed submission.

    Only the opaque photo fingerprint is kept, for external duplicate
    tracking. The photo and its embedding are never stored.
    """
    __tablename__ = "submissions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    submission_code = Column(String(16), nullable=False, unique=True, index=True)
    fingerprint = Column(String(128), nullable=True, index=True)
    quality_score = Column(Float, nullable=False)
    match_found = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<SubmissionDB(code='{self.submission_code}', match_found={self.match_found})>"


class MatchRecordDB(Base):
    """
    Ledger entry for a submission matched to a case.

    Only `verification_status`, `verified_at` and `alert_sent` ever change.
    """
    __tablename__ = "match_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    submission_id = Column(String(16), nullable=False, unique=True, index=True)
    case_id = Column(String(64), nullable=False, index=True)
    confidence = Column(Float, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    verification_status = Column(
        _enum_column(VerificationStatus),
        nullable=False,
        default=VerificationStatus.PENDING,
        index=True
    )
    verified_at = Column(DateTime, nullable=True)
    alert_sent = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return (
            f"<MatchRecordDB(id={self.id}, case_id={self.case_id}, "
            f"confidence={self.confidence:.4f}, status={self.verification_status})>"
        )
