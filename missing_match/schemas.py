"""
Pydantic models for API request/response schemas
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from missing_match.domain import CaseCategory, CaseStatus, VerificationDecision, VerificationStatus


class CaseCreate(BaseModel):
    """Schema for registering a new missing-person case"""
    report_number: str = Field(..., min_length=1, max_length=64, description="External police report number (unique)")
    full_name: str = Field(..., min_length=1, max_length=255, description="Full name of the missing person")
    age_at_missing: int = Field(..., ge=0, le=130, description="Age when the person went missing")
    gender: str = Field(..., min_length=1, max_length=32, description="Gender")
    category: CaseCategory = Field(..., description="Case category")
    last_seen_location: str = Field(..., min_length=1, description="Last known location")
    last_seen_date: datetime = Field(..., description="When the person was last seen")
    description: Optional[str] = Field(default=None, description="Physical description and other details")
    police_station: str = Field(..., min_length=1, description="Police station handling the case")
    contact_number: Optional[str] = Field(default=None, max_length=32, description="Contact number")

    class Config:
        json_schema_extra = {
            "example": {
                "report_number": "FIR-2024-00123",
                "full_name": "Jane Doe",
                "age_at_missing": 12,
                "gender": "female",
                "category": "child",
                "last_seen_location": "Central Station, Platform 3",
                "last_seen_date": "2024-01-15T10:30:00",
                "description": "Blue school uniform, red backpack",
                "police_station": "Central Police Station",
                "contact_number": "+1-555-0100"
            }
        }


class Case(BaseModel):
    """Schema for a case response"""
    id: str = Field(..., description="Case UUID")
    report_number: str = Field(..., description="External police report number")
    full_name: str = Field(..., description="Full name")
    age_at_missing: int = Field(..., description="Age when the person went missing")
    gender: str = Field(..., description="Gender")
    category: CaseCategory = Field(..., description="Case category")
    last_seen_location: str = Field(..., description="Last known location")
    last_seen_date: datetime = Field(..., description="When the person was last seen")
    description: Optional[str] = Field(default=None, description="Description")
    police_station: str = Field(..., description="Police station handling the case")
    contact_number: Optional[str] = Field(default=None, description="Contact number")
    status: CaseStatus = Field(..., description="Lifecycle status")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last status change")
    closed_at: Optional[datetime] = Field(default=None, description="When the case was closed")
    purge_due_at: Optional[datetime] = Field(default=None, description="Deadline for embedding erasure")
    purged_at: Optional[datetime] = Field(default=None, description="When embeddings were erased")


class CaseList(BaseModel):
    """Schema for listing cases"""
    total_count: int = Field(..., description="Total number of cases")
    records: List[Case] = Field(..., description="List of cases")


class CaseSummary(BaseModel):
    """Case fields attached to a match outcome"""
    id: str = Field(..., description="Case UUID")
    report_number: str = Field(..., description="External police report number")
    full_name: str = Field(..., description="Full name")
    status: CaseStatus = Field(..., description="Lifecycle status")


class CaseStatusUpdate(BaseModel):
    """Schema for a case status transition"""
    status: CaseStatus = Field(..., description="Target status")


class CloseCaseResponse(BaseModel):
    """Schema for close case response"""
    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Status message")
    case: Case = Field(..., description="Closed case")
    purged_embeddings: int = Field(..., description="Embeddings erased immediately")


class EmbeddingCreate(BaseModel):
    """Schema for registering a face embedding for a case"""
    vector: List[float] = Field(..., description="Face embedding produced by the extraction service")
    quality_score: float = Field(..., description="Extractor quality score (0-1)")
    is_age_progressed: bool = Field(default=False, description="Whether the photo is an age-progressed variant")
    captured_at: Optional[datetime] = Field(default=None, description="When the source photo was taken")


class EmbeddingResponse(BaseModel):
    """Schema for register embedding response"""
    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Status message")
    embedding_id: str = Field(..., description="Identifier of the stored embedding")
    case_id: str = Field(..., description="Owning case UUID")


class SubmissionRequest(BaseModel):
    """Schema for a match submission"""
    vector: List[float] = Field(..., description="Query face embedding")
    quality_score: float = Field(..., description="Extractor quality score (0-1)")
    fingerprint: Optional[str] = Field(
        default=None,
        max_length=128,
        description="Opaque photo fingerprint, stored for duplicate tracking only"
    )


class PipelineOutcome(BaseModel):
    """Schema for a processed submission"""
    matched: bool = Field(..., description="Whether a case scored at or above the match threshold")
    submission_ref: str = Field(..., description="Public reference code of the submission")
    case_id: Optional[str] = Field(default=None, description="Matched case")
    confidence: Optional[float] = Field(default=None, ge=0, le=1, description="Similarity of the best candidate")
    record_id: Optional[str] = Field(default=None, description="Created match record")
    alert_sent: bool = Field(default=False, description="Whether the notifier was triggered")
    case: Optional[CaseSummary] = Field(default=None, description="Case details, when available")

    class Config:
        json_schema_extra = {
            "example": {
                "matched": True,
                "submission_ref": "K3Z9QX1B",
                "case_id": "550e8400-e29b-41d4-a716-446655440000",
                "confidence": 0.91,
                "record_id": "0b7f8a9e-3a0e-4c35-9b8e-3f1f3c1f9c11",
                "alert_sent": True,
                "case": {
                    "id": "550e8400-e29b-41d4-a716-446655440000",
                    "report_number": "FIR-2024-00123",
                    "full_name": "Jane Doe",
                    "status": "active"
                }
            }
        }


class MatchRecord(BaseModel):
    """Schema for a match ledger entry"""
    id: str = Field(..., description="Match record UUID")
    submission_id: str = Field(..., description="Submission reference code")
    case_id: str = Field(..., description="Matched case")
    confidence: float = Field(..., ge=0, le=1, description="Similarity at creation time")
    created_at: datetime = Field(..., description="Creation timestamp")
    verification_status: VerificationStatus = Field(..., description="Human verification state")
    verified_at: Optional[datetime] = Field(default=None, description="When the record was verified")
    alert_sent: bool = Field(..., description="Whether an alert was triggered")


class MatchRecordList(BaseModel):
    """Schema for listing match records"""
    total_count: int = Field(..., description="Number of records returned")
    records: List[MatchRecord] = Field(..., description="Match records")


class VerifyRequest(BaseModel):
    """Schema for a verification decision"""
    decision: VerificationDecision = Field(..., description="confirmed or false_positive")


class PurgeResponse(BaseModel):
    """Schema for purge sweep response"""
    success: bool = Field(..., description="Whether the sweep succeeded")
    purged_cases: List[str] = Field(..., description="Cases whose embeddings were erased")


class StatsResponse(BaseModel):
    """Dashboard counters"""
    active_cases: int
    found_cases: int
    closed_cases: int
    pending_matches: int
    stored_embeddings: int


class ErrorResponse(BaseModel):
    """Schema for error responses"""
    error: str = Field(..., description="Error type")
    detail: str = Field(..., description="Detailed error message")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "InvalidQuery",
                "detail": "Expected dimension 512, got 128"
            }
        }
