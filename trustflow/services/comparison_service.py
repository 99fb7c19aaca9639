"""Comparison of a new submission against the previous one for a requirement."""

from typing import Any, Dict, Mapping, Optional

from trustflow.core.gateway import ModelRequest, ResilientModelGateway
from trustflow.prompts.verification_prompts import build_comparison_prompt
from trustflow.schemas.verification import ComparisonResult, DocumentSubmission
from trustflow.utils.json_parser import enforce
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

COMPARISON_MAX_TOKENS = 800
COMPARISON_TEMPERATURE = 0.3

# Keys mirror the reasoning service's comparison schema.
COMPARISON_DEFAULT_SHAPE: Dict[str, Any] = {
    "matches": False,
    "confidence": 0.5,
    "differences": [],
    "similarities": [],
    "is_same_document": False,
    "is_updated_version": False,
    "summary": "Comparison completed",
}

NO_PREVIOUS_DOCUMENT = ComparisonResult(
    matches=False,
    confidence=0.0,
    is_same_document=False,
    is_updated_version=False,
    differences=["no previous document"],
    similarities=[],
    summary="No previous document to compare against",
)

COMPARISON_FALLBACK = ComparisonResult(
    matches=False,
    confidence=0.5,
    is_same_document=False,
    is_updated_version=False,
    differences=["Unable to compare - manual review required"],
    similarities=[],
    summary="Documents require manual comparison",
)


class DocumentComparisonService:
    """Classifies two submissions as the same, an update, or different."""

    def __init__(self, gateway: ResilientModelGateway):
        self.gateway = gateway

    async def compare(
        self,
        previous_submission: Optional[DocumentSubmission],
        current_submission: Optional[DocumentSubmission],
        document_type: str,
        auth_token: Optional[str] = None,
        previous_fields: Optional[Mapping[str, Any]] = None,
        current_fields: Optional[Mapping[str, Any]] = None,
    ) -> ComparisonResult:
        """Compare two submissions of the same requirement.

        Returns the no-previous-document result without calling the model if
        either submission or URL is missing, and the manual-comparison
        fallback if the gateway call fails. Never raises.
        """
        if (
            previous_submission is None
            or current_submission is None
            or not previous_submission.file_url
            or not current_submission.file_url
        ):
            return NO_PREVIOUS_DOCUMENT

        prompt = build_comparison_prompt(
            document_type,
            previous_submission,
            current_submission,
            previous_fields=previous_fields,
            current_fields=current_fields,
        )
        response = await self.gateway.call(
            ModelRequest(
                system_prompt=prompt.system,
                user_prompt=prompt.user,
                max_tokens=COMPARISON_MAX_TOKENS,
                temperature=COMPARISON_TEMPERATURE,
            ),
            auth_token,
        )

        if not response.success:
            LOGGER.warning(
                f"Document comparison fell back to manual review: {response.error}",
                extra={
                    "previous_submission_id": str(previous_submission.id),
                    "submission_id": str(current_submission.id),
                },
            )
            return COMPARISON_FALLBACK

        data = enforce(response.content, COMPARISON_DEFAULT_SHAPE)
        result = ComparisonResult(**data)
        LOGGER.info(
            "Document comparison completed",
            extra={
                "submission_id": str(current_submission.id),
                "matches": result.matches,
                "confidence": result.confidence,
            },
        )
        return result
