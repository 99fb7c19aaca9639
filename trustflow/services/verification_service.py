"""AI verification of a single document submission.

The orchestrator asks the reasoning service to verify (and extract fields
from) one submission and, when a previous submission exists, runs the
comparison engine against it. Every failure on the AI path resolves to a
documented fallback result: an unavailable or misbehaving model must never
block an upload that has already been stored.
"""

from typing import Any, Dict, Optional

from trustflow.core.gateway import ModelRequest, ResilientModelGateway
from trustflow.prompts.verification_prompts import (
    build_extraction_prompt,
    build_verification_prompt,
)
from trustflow.schemas.verification import (
    CompanyContext,
    DocumentExtraction,
    DocumentSubmission,
    VerificationResult,
)
from trustflow.services.comparison_service import DocumentComparisonService
from trustflow.utils.json_parser import enforce
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

VERIFICATION_MAX_TOKENS = 1000
VERIFICATION_TEMPERATURE = 0.3
EXTRACTION_MAX_TOKENS = 600
EXTRACTION_TEMPERATURE = 0.2

VERIFICATION_DEFAULT_SHAPE: Dict[str, Any] = {
    "verified": False,
    "confidence": 0.5,
    "matches_previous": False,
    "document_type_match": True,
    "extracted_info": {},
    "issues": [],
    "recommendations": [],
    "summary": "Document verification completed",
}

VERIFICATION_FALLBACK: Dict[str, Any] = {
    "verified": False,
    "confidence": 0.5,
    "matches_previous": False,
    "document_type_match": True,
    "extracted_fields": {},
    "issues": ["Unable to analyze document - manual review required"],
    "recommendations": ["Please ensure document is clear and readable"],
    "summary": "Document uploaded but requires manual verification",
}

EXTRACTION_DEFAULT_SHAPE: Dict[str, Any] = {
    "extracted_fields": {},
    "confidence": 0.5,
    "readable": True,
    "complete": False,
    "summary": "Information extraction completed with limited data",
}

EXTRACTION_FALLBACK: Dict[str, Any] = {
    "extracted_fields": {},
    "confidence": 0.5,
    "readable": True,
    "complete": False,
    "summary": "Extraction unavailable",
}


def fallback_result(submission_id, **overrides: Any) -> VerificationResult:
    """The manual-review result used whenever the model cannot be consulted."""
    data = dict(VERIFICATION_FALLBACK, **overrides)
    return VerificationResult(submission_id=submission_id, is_fallback=True, **data)


class DocumentVerificationService:
    """Drives extraction + verification for one submission."""

    def __init__(
        self,
        gateway: ResilientModelGateway,
        comparison_service: Optional[DocumentComparisonService] = None,
    ):
        self.gateway = gateway
        self.comparison_service = comparison_service or DocumentComparisonService(gateway)

    async def verify(
        self,
        submission: DocumentSubmission,
        previous_submission: Optional[DocumentSubmission] = None,
        company_context: Optional[CompanyContext] = None,
        document_type: Optional[str] = None,
        auth_token: Optional[str] = None,
        previous_result: Optional[VerificationResult] = None,
    ) -> VerificationResult:
        """Verify one submission. Never raises.

        Args:
            submission: The newly uploaded document
            previous_submission: The submission it supersedes, if any
            company_context: Company details to check the document against
            document_type: Requirement document type (defaults to requirement id)
            auth_token: Session bearer token forwarded to the gateway
            previous_result: Result of the previous submission, whose
                extracted fields ground the comparison

        Returns:
            VerificationResult for ``submission``
        """
        document_type = document_type or submission.requirement_id
        log_extra = {
            "company_id": submission.company_id,
            "requirement_id": submission.requirement_id,
            "submission_id": str(submission.id),
        }

        if not submission.file_url:
            LOGGER.warning("Submission has no document URL", extra=log_extra)
            return fallback_result(
                submission.id,
                confidence=0.0,
                issues=["Document URL is required"],
                recommendations=["Please upload the document again"],
            )

        try:
            result = await self._verify_with_model(
                submission, previous_submission, company_context, document_type, auth_token
            )
        except Exception as e:
            # Result construction must not turn model misbehaviour into an error.
            LOGGER.error(f"Verification failed unexpectedly: {e}", exc_info=True, extra=log_extra)
            result = fallback_result(submission.id)

        if previous_submission is None:
            return result

        comparison = await self.comparison_service.compare(
            previous_submission,
            submission,
            document_type,
            auth_token=auth_token,
            previous_fields=previous_result.extracted_fields if previous_result else None,
            current_fields=result.extracted_fields,
        )
        return result.model_copy(
            update={"comparison": comparison, "matches_previous": comparison.matches}
        )

    async def _verify_with_model(
        self,
        submission: DocumentSubmission,
        previous_submission: Optional[DocumentSubmission],
        company_context: Optional[CompanyContext],
        document_type: str,
        auth_token: Optional[str],
    ) -> VerificationResult:
        prompt = build_verification_prompt(
            document_type, submission, company_context, previous_submission
        )
        response = await self.gateway.call(
            ModelRequest(
                system_prompt=prompt.system,
                user_prompt=prompt.user,
                max_tokens=VERIFICATION_MAX_TOKENS,
                temperature=VERIFICATION_TEMPERATURE,
            ),
            auth_token,
        )

        if not response.success:
            LOGGER.warning(
                f"Verification fell back to manual review: {response.error}",
                extra={"submission_id": str(submission.id)},
            )
            return fallback_result(submission.id)

        data = enforce(response.content, VERIFICATION_DEFAULT_SHAPE)
        result = VerificationResult(
            submission_id=submission.id,
            verified=data["verified"],
            confidence=data["confidence"],
            document_type_match=data["document_type_match"],
            extracted_fields=data["extracted_info"],
            issues=data["issues"],
            recommendations=data["recommendations"],
            summary=data["summary"],
            # Replaced by the comparison outcome when a previous submission exists.
            matches_previous=False,
        )
        LOGGER.info(
            "Document verification completed",
            extra={
                "submission_id": str(submission.id),
                "verified": result.verified,
                "confidence": result.confidence,
            },
        )
        return result

    async def extract_document_info(
        self,
        submission: DocumentSubmission,
        document_type: Optional[str] = None,
        auth_token: Optional[str] = None,
    ) -> DocumentExtraction:
        """Extract key fields from a document without verifying it. Never raises."""
        document_type = document_type or submission.requirement_id
        if not submission.file_url:
            return DocumentExtraction(is_fallback=True, **EXTRACTION_FALLBACK)

        prompt = build_extraction_prompt(document_type, submission)
        response = await self.gateway.call(
            ModelRequest(
                system_prompt=prompt.system,
                user_prompt=prompt.user,
                max_tokens=EXTRACTION_MAX_TOKENS,
                temperature=EXTRACTION_TEMPERATURE,
            ),
            auth_token,
        )
        if not response.success:
            LOGGER.warning(
                f"Extraction fell back to defaults: {response.error}",
                extra={"submission_id": str(submission.id)},
            )
            return DocumentExtraction(is_fallback=True, **EXTRACTION_FALLBACK)

        return DocumentExtraction(**enforce(response.content, EXTRACTION_DEFAULT_SHAPE))
