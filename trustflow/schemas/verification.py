"""Schemas for document verification, comparison and trust scoring."""

import json
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def clamp_confidence(value: Any) -> float:
    """Clamp any numeric confidence into [0, 1]; non-numbers become 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def _coerce_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [item if isinstance(item, str) else json.dumps(item) for item in value if item is not None]
    return [str(value)]


def flatten_fields(value: Any) -> Dict[str, Optional[str]]:
    """Reduce a model-provided field map to ``{name: str | None}``."""
    if not isinstance(value, dict):
        return {}
    flattened: Dict[str, Optional[str]] = {}
    for key, item in value.items():
        if item is None or isinstance(item, str):
            flattened[str(key)] = item
        elif isinstance(item, (dict, list)):
            flattened[str(key)] = json.dumps(item, sort_keys=True)
        else:
            flattened[str(key)] = str(item)
    return flattened


class RequirementStatus(str, Enum):
    """Per-requirement verification state."""

    EMPTY = "empty"
    UPLOADED_PENDING_REVIEW = "uploaded_pending_review"
    AI_REVIEWED = "ai_reviewed"
    VERIFIED = "verified"
    REJECTED = "rejected"


class OverallStatus(str, Enum):
    """Company-level verification status."""

    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AdminDecision(str, Enum):
    """Outcome an admin reviewer can record for a requirement."""

    VERIFIED = "verified"
    REJECTED = "rejected"


class VerificationRequirement(BaseModel):
    """One checklist item of the verification catalog."""

    model_config = ConfigDict(frozen=True)

    id: str
    document_type: str
    required: bool = True


DEFAULT_REQUIREMENT_CATALOG = (
    VerificationRequirement(id="business_registration", document_type="business_registration"),
    VerificationRequirement(id="kyc", document_type="kyc"),
    VerificationRequirement(id="bank_statement", document_type="bank_statement"),
    VerificationRequirement(id="tax_certificate", document_type="tax_certificate", required=False),
)


class DocumentSubmission(BaseModel):
    """An uploaded document for one requirement. Never mutated once created."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    company_id: str
    requirement_id: str
    file_url: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CompanyContext(BaseModel):
    """Company details used to ground the verification prompt."""

    company_name: Optional[str] = None
    country: Optional[str] = None
    business_id_number: Optional[str] = None


class ComparisonResult(BaseModel):
    """Outcome of comparing two submissions for the same requirement."""

    model_config = ConfigDict(frozen=True)

    matches: bool = False
    confidence: float = 0.0
    is_same_document: bool = False
    is_updated_version: bool = False
    differences: List[str] = Field(default_factory=list)
    similarities: List[str] = Field(default_factory=list)
    summary: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence_value(cls, value: Any) -> float:
        return clamp_confidence(value)

    @field_validator("differences", "similarities", mode="before")
    @classmethod
    def coerce_string_lists(cls, value: Any) -> List[str]:
        return _coerce_str_list(value)


class VerificationResult(BaseModel):
    """AI verification outcome for exactly one submission."""

    model_config = ConfigDict(frozen=True)

    submission_id: UUID
    verified: bool = False
    confidence: float = 0.0
    document_type_match: bool = True
    extracted_fields: Dict[str, Optional[str]] = Field(default_factory=dict)
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    summary: str = ""
    matches_previous: bool = False
    comparison: Optional[ComparisonResult] = None
    is_fallback: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence_value(cls, value: Any) -> float:
        return clamp_confidence(value)

    @field_validator("issues", "recommendations", mode="before")
    @classmethod
    def coerce_string_lists(cls, value: Any) -> List[str]:
        return _coerce_str_list(value)

    @field_validator("extracted_fields", mode="before")
    @classmethod
    def flatten_extracted_fields(cls, value: Any) -> Dict[str, Optional[str]]:
        return flatten_fields(value)


class DocumentExtraction(BaseModel):
    """Key fields read from a document without verifying it."""

    extracted_fields: Dict[str, Optional[str]] = Field(default_factory=dict)
    confidence: float = 0.5
    readable: bool = True
    complete: bool = False
    summary: str = ""
    is_fallback: bool = False

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence_value(cls, value: Any) -> float:
        return clamp_confidence(value)

    @field_validator("extracted_fields", mode="before")
    @classmethod
    def flatten_extracted_fields(cls, value: Any) -> Dict[str, Optional[str]]:
        return flatten_fields(value)


class RequirementState(BaseModel):
    """State-machine value for one requirement of one company."""

    model_config = ConfigDict(frozen=True)

    requirement_id: str
    document_type: str
    required: bool = True
    status: RequirementStatus = RequirementStatus.EMPTY
    current_submission_id: Optional[UUID] = None
    current_file_url: Optional[str] = None
    current_result: Optional[VerificationResult] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


def reduce_overall_status(states: Iterable["RequirementState"]) -> "OverallStatus":
    """Fold requirement states into the company-level status.

    Unverified until anything has been submitted; Rejected if any required
    requirement is rejected; Verified once every required one is verified.
    """
    states = list(states)
    if all(state.status == RequirementStatus.EMPTY for state in states):
        return OverallStatus.UNVERIFIED

    required = [state for state in states if state.required]
    if any(state.status == RequirementStatus.REJECTED for state in required):
        return OverallStatus.REJECTED
    if all(state.status == RequirementStatus.VERIFIED for state in required):
        return OverallStatus.VERIFIED
    return OverallStatus.PENDING


class VerificationRecord(BaseModel):
    """Per-company verification state."""

    model_config = ConfigDict(frozen=True)

    company_id: str
    per_requirement: Dict[str, RequirementState] = Field(default_factory=dict)
    business_id_number: Optional[str] = None
    country_of_registration: Optional[str] = None
    # Storage revision the record was read at; 0 until it is first saved.
    version: int = 0

    @computed_field
    @property
    def overall_status(self) -> OverallStatus:
        return reduce_overall_status(self.per_requirement.values())

    def to_persisted(self) -> Dict[str, Any]:
        """Project the record onto the external store's row shape."""
        documents = {
            state.document_type: state.current_file_url
            for state in self.per_requirement.values()
            if state.current_file_url
        }
        return {
            "company_id": self.company_id,
            "documents": documents,
            "business_id_number": self.business_id_number,
            "country_of_registration": self.country_of_registration,
            "status": self.overall_status.value,
        }


class TrustSignals(BaseModel):
    """Behavioural inputs to the trust score that live outside this core."""

    response_rate: float = 0.0
    total_orders: int = 0


class TrustScore(BaseModel):
    """Derived 0-100 score. Reproducible from its inputs alone."""

    model_config = ConfigDict(frozen=True)

    company_id: str
    score: int = Field(ge=0, le=100)
    factors: Dict[str, float] = Field(default_factory=dict)


class VerificationEventKind(str, Enum):
    """Kinds of events published by the verification core."""

    SUBMISSION_RECORDED = "submission_recorded"
    AI_REVIEW_COMPLETED = "ai_review_completed"
    STALE_RESULT_DISCARDED = "stale_result_discarded"
    ADMIN_DECISION_RECORDED = "admin_decision_recorded"
    OVERALL_STATUS_CHANGED = "overall_status_changed"
    TRUST_SCORE_UPDATED = "trust_score_updated"


class VerificationEvent(BaseModel):
    """Event emitted for presentation layers to subscribe to."""

    kind: VerificationEventKind
    company_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SubmissionReceipt(BaseModel):
    """Returned to the uploader as soon as the submission is stored."""

    success: bool = True
    submission: DocumentSubmission
    previous_submission_id: Optional[UUID] = None
    record: VerificationRecord
