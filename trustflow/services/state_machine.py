"""Per-requirement verification state machine.

    Empty -> UploadedPendingReview -> AIReviewed -> Verified | Rejected

Any new submission moves a requirement back to UploadedPendingReview,
whatever its current state. Only an admin decision reaches Verified or
Rejected; the AI review merely records that the model has looked.

Every transition returns a new ``VerificationRecord``; records are never
mutated in place.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, Optional
from uuid import UUID

from trustflow.core.exceptions import (
    InvalidTransitionError,
    StaleResultError,
    ValidationError,
)
from trustflow.schemas.verification import (
    DEFAULT_REQUIREMENT_CATALOG,
    AdminDecision,
    DocumentSubmission,
    OverallStatus,
    RequirementState,
    RequirementStatus,
    VerificationRecord,
    VerificationRequirement,
    VerificationResult,
    reduce_overall_status,
)
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class VerificationStateMachine:
    """Applies verification transitions to company records."""

    def __init__(self, catalog: Iterable[VerificationRequirement] = DEFAULT_REQUIREMENT_CATALOG):
        self.catalog: Dict[str, VerificationRequirement] = {
            requirement.id: requirement for requirement in catalog
        }
        if not self.catalog:
            raise ValueError("Requirement catalog must not be empty")

    def requirement(self, requirement_id: str) -> VerificationRequirement:
        """Look up a catalog entry.

        Raises:
            ValidationError: If the requirement is not in the catalog
        """
        try:
            return self.catalog[requirement_id]
        except KeyError:
            raise ValidationError(f"Unknown verification requirement: {requirement_id}") from None

    def new_record(
        self,
        company_id: str,
        business_id_number: Optional[str] = None,
        country_of_registration: Optional[str] = None,
    ) -> VerificationRecord:
        """A record with every catalog requirement Empty."""
        return VerificationRecord(
            company_id=company_id,
            per_requirement={
                requirement.id: RequirementState(
                    requirement_id=requirement.id,
                    document_type=requirement.document_type,
                    required=requirement.required,
                )
                for requirement in self.catalog.values()
            },
            business_id_number=business_id_number,
            country_of_registration=country_of_registration,
        )

    def state_of(self, record: VerificationRecord, requirement_id: str) -> RequirementState:
        """Current state of a requirement, Empty if the record predates it."""
        requirement = self.requirement(requirement_id)
        return record.per_requirement.get(requirement_id) or RequirementState(
            requirement_id=requirement.id,
            document_type=requirement.document_type,
            required=requirement.required,
        )

    @staticmethod
    def overall_status(record: VerificationRecord) -> OverallStatus:
        return reduce_overall_status(record.per_requirement.values())

    @staticmethod
    def is_current(record: VerificationRecord, requirement_id: str, submission_id: UUID) -> bool:
        """Whether ``submission_id`` is the latest submission for the requirement."""
        state = record.per_requirement.get(requirement_id)
        return state is not None and state.current_submission_id == submission_id

    def _replace(self, record: VerificationRecord, state: RequirementState) -> VerificationRecord:
        per_requirement = dict(record.per_requirement)
        per_requirement[state.requirement_id] = state
        return record.model_copy(update={"per_requirement": per_requirement})

    def record_submission(
        self, record: VerificationRecord, submission: DocumentSubmission
    ) -> VerificationRecord:
        """Any state -> UploadedPendingReview for the submission's requirement.

        The new submission becomes current; its predecessor's result and the
        previous admin decision no longer apply.
        """
        if submission.company_id != record.company_id:
            raise ValidationError(
                f"Submission belongs to company {submission.company_id}, not {record.company_id}"
            )
        previous = self.state_of(record, submission.requirement_id)
        state = previous.model_copy(
            update={
                "status": RequirementStatus.UPLOADED_PENDING_REVIEW,
                "current_submission_id": submission.id,
                "current_file_url": submission.file_url,
                "current_result": None,
                "reviewed_by": None,
                "review_notes": None,
                "reviewed_at": None,
                "updated_at": _now(),
            }
        )
        LOGGER.debug(
            f"Requirement {submission.requirement_id}: {previous.status.value} -> {state.status.value}",
            extra={"company_id": record.company_id, "submission_id": str(submission.id)},
        )
        return self._replace(record, state)

    def record_ai_review(
        self,
        record: VerificationRecord,
        requirement_id: str,
        result: VerificationResult,
    ) -> VerificationRecord:
        """UploadedPendingReview -> AIReviewed, whatever the AI concluded.

        Raises:
            StaleResultError: If the result is for a superseded submission
            InvalidTransitionError: If the requirement is not awaiting review
        """
        state = self.state_of(record, requirement_id)
        if state.current_submission_id != result.submission_id:
            raise StaleResultError(
                f"Result for submission {result.submission_id} is stale; "
                f"current submission is {state.current_submission_id}"
            )
        if state.status != RequirementStatus.UPLOADED_PENDING_REVIEW:
            raise InvalidTransitionError(
                f"Cannot record AI review for {requirement_id} in status {state.status.value}"
            )
        return self._replace(
            record,
            state.model_copy(
                update={
                    "status": RequirementStatus.AI_REVIEWED,
                    "current_result": result,
                    "updated_at": _now(),
                }
            ),
        )

    def record_admin_decision(
        self,
        record: VerificationRecord,
        requirement_id: str,
        decision: AdminDecision,
        reviewer_id: str,
        notes: Optional[str] = None,
        submission_id: Optional[UUID] = None,
    ) -> VerificationRecord:
        """AIReviewed -> Verified | Rejected on an explicit admin decision.

        Raises:
            ValidationError: If the reviewer is missing or a rejection has no reason
            StaleResultError: If ``submission_id`` is given and no longer current
            InvalidTransitionError: If the requirement has not been AI-reviewed
        """
        if not reviewer_id:
            raise ValidationError("An admin decision requires a reviewer")
        if decision == AdminDecision.REJECTED and not (notes and notes.strip()):
            raise ValidationError("Please provide a reason for rejection")

        state = self.state_of(record, requirement_id)
        if submission_id is not None and state.current_submission_id != submission_id:
            raise StaleResultError(
                f"Decision targets submission {submission_id}; "
                f"current submission is {state.current_submission_id}"
            )
        if state.status != RequirementStatus.AI_REVIEWED:
            raise InvalidTransitionError(
                f"Cannot record an admin decision for {requirement_id} in status {state.status.value}"
            )

        new_status = (
            RequirementStatus.VERIFIED
            if decision == AdminDecision.VERIFIED
            else RequirementStatus.REJECTED
        )
        now = _now()
        return self._replace(
            record,
            state.model_copy(
                update={
                    "status": new_status,
                    "reviewed_by": reviewer_id,
                    "review_notes": notes.strip() if notes else None,
                    "reviewed_at": now,
                    "updated_at": now,
                }
            ),
        )
