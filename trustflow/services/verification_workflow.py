"""Upload and review workflow for company verification.

Uploads are stored and acknowledged first; the AI review runs afterwards
against whatever submission is current when it finishes. An older
submission's result is written to the store but never applied to the record
once a newer submission for the same requirement exists.
"""

from typing import Awaitable, Callable, Optional, Tuple
from uuid import UUID

from trustflow.core.exceptions import (
    ConcurrentUpdateError,
    RecordNotFoundError,
    StaleResultError,
)
from trustflow.repositories.verification_repository import VerificationStore
from trustflow.schemas.verification import (
    AdminDecision,
    CompanyContext,
    DocumentSubmission,
    OverallStatus,
    SubmissionReceipt,
    TrustScore,
    TrustSignals,
    VerificationEventKind,
    VerificationRecord,
    VerificationResult,
)
from trustflow.services.events import VerificationEventPublisher
from trustflow.services.notification_service import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from trustflow.services.state_machine import VerificationStateMachine
from trustflow.services.trust_score_service import TrustScoreAggregator
from trustflow.services.verification_service import DocumentVerificationService
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

SignalsProvider = Callable[[str], Awaitable[TrustSignals]]
RecordTransition = Callable[[VerificationRecord], VerificationRecord]

MAX_RECORD_WRITE_ATTEMPTS = 5


async def no_signals(company_id: str) -> TrustSignals:
    return TrustSignals()


class VerificationWorkflowService:
    """Coordinates storage, AI review, admin review and scoring for a company."""

    def __init__(
        self,
        store: VerificationStore,
        verifier: DocumentVerificationService,
        state_machine: Optional[VerificationStateMachine] = None,
        aggregator: Optional[TrustScoreAggregator] = None,
        publisher: Optional[VerificationEventPublisher] = None,
        notifier: Optional[NotificationDispatcher] = None,
        signals_provider: Optional[SignalsProvider] = None,
    ):
        self.store = store
        self.verifier = verifier
        self.state_machine = state_machine or VerificationStateMachine()
        self.aggregator = aggregator or TrustScoreAggregator()
        self.publisher = publisher or VerificationEventPublisher()
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.signals_provider = signals_provider or no_signals

    async def get_record(self, company_id: str) -> VerificationRecord:
        """The company's record, or an all-Empty one if nothing was submitted yet."""
        record = await self.store.get_record(company_id)
        return record or self.state_machine.new_record(company_id)

    async def _require_record(self, company_id: str) -> VerificationRecord:
        record = await self.store.get_record(company_id)
        if record is None:
            raise RecordNotFoundError(f"No verification record for company {company_id}")
        return record

    async def _update_record(
        self,
        company_id: str,
        transition: RecordTransition,
        new_record_context: Optional[CompanyContext] = None,
    ) -> Tuple[VerificationRecord, VerificationRecord]:
        """Read the company's record, apply ``transition`` and save it.

        The save only succeeds against the revision that was read. When another
        writer got there first, the record is read again and the transition
        re-applied, so neither change is lost. Errors raised by the transition
        (e.g. ``StaleResultError``) propagate unchanged.

        Args:
            company_id: Company whose record changes
            transition: Pure state-machine step from the current record
            new_record_context: Creates a missing record from these details;
                without it a missing record is an error

        Returns:
            The record as read and the record as saved

        Raises:
            RecordNotFoundError: If the record is missing and may not be created
            ConcurrentUpdateError: If every attempt lost the race
        """
        attempt = 1
        while True:
            record = await self.store.get_record(company_id)
            if record is None:
                if new_record_context is None:
                    raise RecordNotFoundError(f"No verification record for company {company_id}")
                record = self.state_machine.new_record(
                    company_id,
                    business_id_number=new_record_context.business_id_number,
                    country_of_registration=new_record_context.country,
                )

            try:
                return record, await self.store.save_record(transition(record))
            except ConcurrentUpdateError:
                if attempt >= MAX_RECORD_WRITE_ATTEMPTS:
                    LOGGER.error(
                        "Giving up on verification record update after concurrent writes",
                        extra={"company_id": company_id, "attempts": attempt},
                    )
                    raise
                LOGGER.info(
                    "Verification record changed concurrently, re-applying update",
                    extra={"company_id": company_id, "attempt": attempt},
                )
                attempt += 1

    async def submit_document(
        self,
        company_id: str,
        requirement_id: str,
        file_url: Optional[str],
        company_context: Optional[CompanyContext] = None,
    ) -> SubmissionReceipt:
        """Store a new submission and move its requirement to UploadedPendingReview.

        Does not call the reasoning service; see ``run_verification``.

        Raises:
            ValidationError: If the requirement is not in the catalog
            PersistenceError: If the submission or record cannot be stored
            ConcurrentUpdateError: If the record kept changing under concurrent writes
        """
        self.state_machine.requirement(requirement_id)

        submission = DocumentSubmission(
            company_id=company_id,
            requirement_id=requirement_id,
            file_url=file_url,
        )
        await self.store.add_submission(submission)

        record, updated = await self._update_record(
            company_id,
            lambda current: self.state_machine.record_submission(current, submission),
            new_record_context=company_context or CompanyContext(),
        )
        # Only the write that created the record sees revision 0.
        is_first_submission = record.version == 0
        previous_submission_id = self.state_machine.state_of(
            record, requirement_id
        ).current_submission_id

        LOGGER.info(
            "Document submission recorded",
            extra={
                "company_id": company_id,
                "requirement_id": requirement_id,
                "submission_id": str(submission.id),
            },
        )
        await self.publisher.publish(
            VerificationEventKind.SUBMISSION_RECORDED,
            company_id,
            {
                "requirement_id": requirement_id,
                "submission_id": str(submission.id),
                "previous_submission_id": str(previous_submission_id) if previous_submission_id else None,
            },
        )
        await self._after_status_change(record.overall_status, updated)

        if is_first_submission:
            await self._notify(company_id, "pending")

        return SubmissionReceipt(
            submission=submission,
            previous_submission_id=previous_submission_id,
            record=updated,
        )

    async def run_verification(
        self,
        submission_id: UUID,
        auth_token: Optional[str] = None,
        company_context: Optional[CompanyContext] = None,
    ) -> Optional[VerificationResult]:
        """AI-review a stored submission and apply the result if still current.

        Returns ``None`` without calling the model when the submission was
        already superseded; otherwise the stored result, even if it arrived
        too late to be applied.

        Raises:
            RecordNotFoundError: If the submission or its company record is unknown
            PersistenceError: If the result or record cannot be stored
            ConcurrentUpdateError: If the record kept changing under concurrent writes
        """
        submission = await self.store.get_submission(submission_id)
        if submission is None:
            raise RecordNotFoundError(f"Unknown submission {submission_id}")
        company_id = submission.company_id
        requirement = self.state_machine.requirement(submission.requirement_id)

        record = await self._require_record(company_id)
        if not self.state_machine.is_current(record, requirement.id, submission.id):
            await self._discard_stale(submission, "superseded before review")
            return None

        previous = await self.store.get_previous_submission(submission)
        previous_result = await self.store.get_result(previous.id) if previous else None
        result = await self.verifier.verify(
            submission,
            previous_submission=previous,
            company_context=company_context,
            document_type=requirement.document_type,
            auth_token=auth_token,
            previous_result=previous_result,
        )
        await self.store.save_result(result)

        # Another upload may have landed while the model was working; the
        # currency check is re-run against every fresh read of the record.
        try:
            record, updated = await self._update_record(
                company_id,
                lambda current: self.state_machine.record_ai_review(
                    current, requirement.id, result
                ),
            )
        except StaleResultError:
            await self._discard_stale(submission, "superseded during review")
            return result

        await self.publisher.publish(
            VerificationEventKind.AI_REVIEW_COMPLETED,
            company_id,
            {
                "requirement_id": requirement.id,
                "submission_id": str(submission.id),
                "verified": result.verified,
                "confidence": result.confidence,
                "matches_previous": result.matches_previous,
                "is_fallback": result.is_fallback,
                "issues": list(result.issues),
            },
        )
        await self._after_status_change(record.overall_status, updated)
        return result

    async def verify_in_background(
        self,
        submission_id: UUID,
        auth_token: Optional[str] = None,
        company_context: Optional[CompanyContext] = None,
    ) -> None:
        """``run_verification`` for a detached task; failures are logged only."""
        try:
            await self.run_verification(submission_id, auth_token, company_context)
        except Exception as e:
            LOGGER.error(
                f"Background verification failed: {e}",
                exc_info=True,
                extra={"submission_id": str(submission_id)},
            )

    async def record_admin_decision(
        self,
        company_id: str,
        requirement_id: str,
        decision: AdminDecision,
        reviewer_id: str,
        notes: Optional[str] = None,
        submission_id: Optional[UUID] = None,
    ) -> VerificationRecord:
        """Apply an admin's Verified/Rejected decision to a reviewed requirement.

        Raises:
            RecordNotFoundError: If the company has no record
            ValidationError: If the reviewer or a rejection reason is missing
            InvalidTransitionError: If the requirement is not AI-reviewed
            StaleResultError: If ``submission_id`` is no longer current
            PersistenceError: If the record cannot be stored
            ConcurrentUpdateError: If the record kept changing under concurrent writes
        """
        record, updated = await self._update_record(
            company_id,
            lambda current: self.state_machine.record_admin_decision(
                current,
                requirement_id,
                decision,
                reviewer_id,
                notes=notes,
                submission_id=submission_id,
            ),
        )

        state = updated.per_requirement[requirement_id]
        LOGGER.info(
            f"Admin decision recorded: {decision.value}",
            extra={
                "company_id": company_id,
                "requirement_id": requirement_id,
                "reviewer_id": reviewer_id,
            },
        )
        await self.publisher.publish(
            VerificationEventKind.ADMIN_DECISION_RECORDED,
            company_id,
            {
                "requirement_id": requirement_id,
                "submission_id": str(state.current_submission_id),
                "decision": decision.value,
                "reviewer_id": reviewer_id,
                "notes": state.review_notes,
            },
        )
        await self._after_status_change(record.overall_status, updated)

        await self._notify(
            company_id,
            "approved" if decision == AdminDecision.VERIFIED else "rejected",
            state.review_notes,
        )
        return updated

    async def get_trust_score(
        self, company_id: str, signals: Optional[TrustSignals] = None
    ) -> TrustScore:
        record = await self.get_record(company_id)
        if signals is None:
            signals = await self.signals_provider(company_id)
        return self.aggregator.score(record, signals)

    async def _after_status_change(
        self, previous_status: OverallStatus, record: VerificationRecord
    ) -> None:
        if record.overall_status != previous_status:
            await self.publisher.publish(
                VerificationEventKind.OVERALL_STATUS_CHANGED,
                record.company_id,
                {"from": previous_status.value, "to": record.overall_status.value},
            )
        trust_score = self.aggregator.score(
            record, await self.signals_provider(record.company_id)
        )
        await self.publisher.publish(
            VerificationEventKind.TRUST_SCORE_UPDATED,
            record.company_id,
            {"score": trust_score.score, "factors": trust_score.factors},
        )

    async def _discard_stale(self, submission: DocumentSubmission, reason: str) -> None:
        LOGGER.info(
            f"Discarding stale verification result: {reason}",
            extra={
                "company_id": submission.company_id,
                "requirement_id": submission.requirement_id,
                "submission_id": str(submission.id),
            },
        )
        await self.publisher.publish(
            VerificationEventKind.STALE_RESULT_DISCARDED,
            submission.company_id,
            {
                "requirement_id": submission.requirement_id,
                "submission_id": str(submission.id),
                "reason": reason,
            },
        )

    async def _notify(self, company_id: str, status: str, notes: Optional[str] = None) -> None:
        try:
            await self.notifier.notify_verification_status(company_id, status, notes)
        except Exception as e:
            LOGGER.error(
                f"Failed to send verification notification: {e}",
                exc_info=True,
                extra={"company_id": company_id, "status": status},
            )
