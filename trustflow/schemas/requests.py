"""Request bodies accepted by the verification API."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from trustflow.schemas.verification import AdminDecision, CompanyContext


class DocumentSubmissionRequest(BaseModel):
    requirement_id: str = Field(..., description="Catalog requirement the document satisfies")
    file_url: Optional[str] = Field(None, description="Stable URL returned by the storage service")
    company_name: Optional[str] = None
    country: Optional[str] = None
    business_id_number: Optional[str] = None

    def company_context(self) -> CompanyContext:
        return CompanyContext(
            company_name=self.company_name,
            country=self.country,
            business_id_number=self.business_id_number,
        )


class AdminDecisionRequest(BaseModel):
    decision: AdminDecision
    reviewer_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, description="Required when rejecting")
    submission_id: Optional[UUID] = Field(
        None, description="Submission the reviewer looked at; rejected if no longer current"
    )
