"""Tests for the upload and review workflow."""

import asyncio
import json
from unittest.mock import AsyncMock
from uuid import uuid4

import httpx
import pytest

from trustflow.core.exceptions import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)
from trustflow.core.gateway import GatewayResponse
from trustflow.schemas.verification import (
    AdminDecision,
    CompanyContext,
    OverallStatus,
    RequirementStatus,
    TrustSignals,
    VerificationEventKind,
)
from trustflow.services.verification_service import DocumentVerificationService
from trustflow.services.verification_workflow import (
    MAX_RECORD_WRITE_ATTEMPTS,
    VerificationWorkflowService,
)

COMPANY_ID = "company-1"
REQUIRED = ("business_registration", "kyc", "bank_statement")


def _reply(**fields) -> GatewayResponse:
    return GatewayResponse(success=True, content=json.dumps({"verified": True, "confidence": 0.9, **fields}))


@pytest.fixture
def workflow(store, mock_gateway, publisher, notifier) -> VerificationWorkflowService:
    return VerificationWorkflowService(
        store=store,
        verifier=DocumentVerificationService(mock_gateway),
        publisher=publisher,
        notifier=notifier,
    )


def _kinds(events):
    return [event.kind for event in events]


@pytest.mark.asyncio
async def test_submit_stores_submission_and_marks_pending(workflow, store, events):
    receipt = await workflow.submit_document(
        COMPANY_ID,
        "business_registration",
        "https://storage.test/reg.pdf",
        company_context=CompanyContext(country="KE", business_id_number="PVT-1"),
    )

    assert receipt.success is True
    assert receipt.previous_submission_id is None
    assert receipt.submission.id in store.submissions
    record = store.records[COMPANY_ID]
    assert record.per_requirement["business_registration"].status == RequirementStatus.UPLOADED_PENDING_REVIEW
    assert record.overall_status == OverallStatus.PENDING
    assert record.country_of_registration == "KE"
    assert _kinds(events) == [
        VerificationEventKind.SUBMISSION_RECORDED,
        VerificationEventKind.OVERALL_STATUS_CHANGED,
        VerificationEventKind.TRUST_SCORE_UPDATED,
    ]


@pytest.mark.asyncio
async def test_pending_notification_only_on_first_submission(workflow, notifier):
    await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-1.pdf")
    await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-2.pdf")
    await workflow.submit_document(COMPANY_ID, "bank_statement", "https://storage.test/bank.pdf")

    assert notifier.calls == [(COMPANY_ID, "pending", None)]


@pytest.mark.asyncio
async def test_submit_does_not_call_the_model(workflow, mock_gateway):
    await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")

    mock_gateway.call.assert_not_called()


@pytest.mark.asyncio
async def test_persistence_failure_is_surfaced(workflow, store, notifier, events):
    store.fail_writes = True

    with pytest.raises(PersistenceError):
        await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")

    assert notifier.calls == []
    assert events == []


@pytest.mark.asyncio
async def test_unknown_requirement_is_refused(workflow, store):
    with pytest.raises(ValidationError):
        await workflow.submit_document(COMPANY_ID, "passport_photo", "https://storage.test/p.pdf")

    assert store.submissions == {}


@pytest.mark.asyncio
async def test_notification_failure_does_not_block_upload(store, mock_gateway, publisher):
    class FailingNotifier:
        async def notify_verification_status(self, company_id, status, notes=None):
            raise httpx.ConnectError("notification service down")

    workflow = VerificationWorkflowService(
        store=store,
        verifier=DocumentVerificationService(mock_gateway),
        publisher=publisher,
        notifier=FailingNotifier(),
    )

    receipt = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")

    assert receipt.success is True
    assert COMPANY_ID in store.records


@pytest.mark.asyncio
async def test_first_upload_is_verified_once_without_comparison(workflow, store, mock_gateway, session_token):
    mock_gateway.call.return_value = _reply(summary="Valid certificate")
    receipt = await workflow.submit_document(COMPANY_ID, "business_registration", "https://storage.test/reg.pdf")

    result = await workflow.run_verification(receipt.submission.id, auth_token=session_token)

    assert mock_gateway.call.await_count == 1
    assert result.comparison is None
    assert result.matches_previous is False
    state = store.records[COMPANY_ID].per_requirement["business_registration"]
    assert state.status == RequirementStatus.AI_REVIEWED
    assert state.current_result == result
    assert store.results[receipt.submission.id] == result


@pytest.mark.asyncio
async def test_resubmission_is_compared_with_previous_fields(workflow, mock_gateway, session_token):
    mock_gateway.call.side_effect = [
        _reply(extracted_info={"full_name": "Jane Doe"}),
        _reply(extracted_info={"full_name": "John Roe"}),
        GatewayResponse(
            success=True,
            content=json.dumps({"matches": False, "confidence": 0.8, "differences": ["Name differs"]}),
        ),
    ]
    first = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-1.pdf")
    await workflow.run_verification(first.submission.id, auth_token=session_token)
    second = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-2.pdf")

    result = await workflow.run_verification(second.submission.id, auth_token=session_token)

    assert second.previous_submission_id == first.submission.id
    assert mock_gateway.call.await_count == 3
    assert result.comparison.matches is False
    assert result.comparison.differences == ["Name differs"]
    comparison_prompt = mock_gateway.call.await_args_list[2].args[0].user_prompt
    assert "Jane Doe" in comparison_prompt and "John Roe" in comparison_prompt


@pytest.mark.asyncio
async def test_gateway_500_still_leaves_upload_successful(store, make_gateway, publisher, notifier, session_token):
    workflow = VerificationWorkflowService(
        store=store,
        verifier=DocumentVerificationService(
            make_gateway(lambda request: httpx.Response(500, text="boom"))
        ),
        publisher=publisher,
        notifier=notifier,
    )

    receipt = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")
    result = await workflow.run_verification(receipt.submission.id, auth_token=session_token)

    assert receipt.success is True
    assert result.is_fallback is True
    assert result.verified is False
    assert result.confidence == 0.5
    assert result.issues == ["Unable to analyze document - manual review required"]
    assert store.records[COMPANY_ID].per_requirement["kyc"].status == RequirementStatus.AI_REVIEWED


@pytest.mark.asyncio
async def test_superseded_submission_is_not_reviewed(workflow, store, mock_gateway, events, session_token):
    first = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-1.pdf")
    second = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-2.pdf")

    result = await workflow.run_verification(first.submission.id, auth_token=session_token)

    assert result is None
    mock_gateway.call.assert_not_called()
    state = store.records[COMPANY_ID].per_requirement["kyc"]
    assert state.current_submission_id == second.submission.id
    assert state.status == RequirementStatus.UPLOADED_PENDING_REVIEW
    assert events[-1].kind == VerificationEventKind.STALE_RESULT_DISCARDED


@pytest.mark.asyncio
async def test_late_result_never_overwrites_newer_submission(workflow, store, mock_gateway, events, session_token):
    newer = {}

    async def upload_during_review(request, token):
        newer["receipt"] = await workflow.submit_document(
            COMPANY_ID, "kyc", "https://storage.test/kyc-2.pdf"
        )
        return _reply(summary="Reviewed the old document")

    mock_gateway.call.side_effect = upload_during_review
    first = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-1.pdf")

    result = await workflow.run_verification(first.submission.id, auth_token=session_token)

    state = store.records[COMPANY_ID].per_requirement["kyc"]
    assert state.current_submission_id == newer["receipt"].submission.id
    assert state.status == RequirementStatus.UPLOADED_PENDING_REVIEW
    assert state.current_result is None
    assert store.results[first.submission.id] == result
    assert events[-1].kind == VerificationEventKind.STALE_RESULT_DISCARDED
    assert VerificationEventKind.AI_REVIEW_COMPLETED not in _kinds(events)


@pytest.mark.asyncio
async def test_unknown_submission_is_not_found(workflow):
    with pytest.raises(RecordNotFoundError):
        await workflow.run_verification(uuid4())


@pytest.mark.asyncio
async def test_background_verification_logs_instead_of_raising(workflow, store, session_token):
    receipt = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")
    store.fail_writes = True

    await workflow.verify_in_background(receipt.submission.id, auth_token=session_token)

    assert store.results == {}


async def _reviewed(workflow, requirement_id, token):
    receipt = await workflow.submit_document(
        COMPANY_ID, requirement_id, f"https://storage.test/{requirement_id}.pdf"
    )
    await workflow.run_verification(receipt.submission.id, auth_token=token)
    return receipt


@pytest.mark.asyncio
async def test_admin_approval_verifies_company_and_notifies(workflow, notifier, events, session_token):
    for requirement_id in REQUIRED:
        await _reviewed(workflow, requirement_id, session_token)

    for requirement_id in REQUIRED:
        record = await workflow.record_admin_decision(
            COMPANY_ID, requirement_id, AdminDecision.VERIFIED, "admin-1"
        )

    assert record.overall_status == OverallStatus.VERIFIED
    assert notifier.calls[-1] == (COMPANY_ID, "approved", None)
    status_changes = [e for e in events if e.kind == VerificationEventKind.OVERALL_STATUS_CHANGED]
    assert status_changes[-1].payload == {"from": "pending", "to": "verified"}
    score_events = [e for e in events if e.kind == VerificationEventKind.TRUST_SCORE_UPDATED]
    assert score_events[-1].payload["score"] == 80


@pytest.mark.asyncio
async def test_admin_rejection_notifies_with_reason(workflow, notifier, session_token):
    await _reviewed(workflow, "kyc", session_token)

    record = await workflow.record_admin_decision(
        COMPANY_ID, "kyc", AdminDecision.REJECTED, "admin-2", notes="Name does not match registration"
    )

    assert record.overall_status == OverallStatus.REJECTED
    assert notifier.calls[-1] == (COMPANY_ID, "rejected", "Name does not match registration")


@pytest.mark.asyncio
async def test_admin_decision_before_ai_review_is_refused(workflow):
    await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")

    with pytest.raises(InvalidTransitionError):
        await workflow.record_admin_decision(COMPANY_ID, "kyc", AdminDecision.VERIFIED, "admin-1")


@pytest.mark.asyncio
async def test_admin_decision_for_unknown_company_is_not_found(workflow):
    with pytest.raises(RecordNotFoundError):
        await workflow.record_admin_decision("nobody", "kyc", AdminDecision.VERIFIED, "admin-1")


@pytest.mark.asyncio
async def test_trust_score_for_company_without_record(workflow):
    trust_score = await workflow.get_trust_score("new-company", TrustSignals(response_rate=80, total_orders=120))

    assert trust_score.score == 68


@pytest.mark.asyncio
async def test_concurrent_uploads_for_different_requirements_are_both_kept(workflow, store, notifier):
    kyc, bank = await asyncio.gather(
        workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf"),
        workflow.submit_document(COMPANY_ID, "bank_statement", "https://storage.test/bank.pdf"),
    )

    record = store.records[COMPANY_ID]
    assert record.per_requirement["kyc"].current_submission_id == kyc.submission.id
    assert record.per_requirement["bank_statement"].current_submission_id == bank.submission.id
    assert record.per_requirement["kyc"].status == RequirementStatus.UPLOADED_PENDING_REVIEW
    assert record.per_requirement["bank_statement"].status == RequirementStatus.UPLOADED_PENDING_REVIEW
    assert store.conflicts >= 1
    assert notifier.calls == [(COMPANY_ID, "pending", None)]


@pytest.mark.asyncio
async def test_concurrent_reviews_for_different_requirements_are_both_applied(workflow, store, session_token):
    kyc = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")
    bank = await workflow.submit_document(COMPANY_ID, "bank_statement", "https://storage.test/bank.pdf")

    await asyncio.gather(
        workflow.run_verification(kyc.submission.id, auth_token=session_token),
        workflow.run_verification(bank.submission.id, auth_token=session_token),
    )

    record = store.records[COMPANY_ID]
    assert record.per_requirement["kyc"].status == RequirementStatus.AI_REVIEWED
    assert record.per_requirement["bank_statement"].status == RequirementStatus.AI_REVIEWED


@pytest.mark.asyncio
async def test_concurrent_uploads_for_one_requirement_leave_a_single_current(workflow, store, session_token):
    receipts = await asyncio.gather(
        workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-1.pdf"),
        workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-2.pdf"),
    )

    current_id = store.records[COMPANY_ID].per_requirement["kyc"].current_submission_id
    current = next(r for r in receipts if r.submission.id == current_id)
    superseded = next(r for r in receipts if r.submission.id != current_id)
    assert current.previous_submission_id == superseded.submission.id

    results = await asyncio.gather(
        workflow.run_verification(superseded.submission.id, auth_token=session_token),
        workflow.run_verification(current.submission.id, auth_token=session_token),
    )

    state = store.records[COMPANY_ID].per_requirement["kyc"]
    assert results[0] is None
    assert state.status == RequirementStatus.AI_REVIEWED
    assert state.current_submission_id == current.submission.id
    assert state.current_result.submission_id == current.submission.id


@pytest.mark.asyncio
async def test_upload_racing_a_finishing_review_wins(workflow, store, session_token):
    first = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-1.pdf")

    _, second = await asyncio.gather(
        workflow.run_verification(first.submission.id, auth_token=session_token),
        workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc-2.pdf"),
    )

    state = store.records[COMPANY_ID].per_requirement["kyc"]
    assert state.current_submission_id == second.submission.id
    assert state.status == RequirementStatus.UPLOADED_PENDING_REVIEW
    assert state.current_result is None
    assert first.submission.id in store.results


@pytest.mark.asyncio
async def test_review_racing_an_upload_for_another_requirement_is_kept(workflow, store, session_token):
    kyc = await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")

    await asyncio.gather(
        workflow.run_verification(kyc.submission.id, auth_token=session_token),
        workflow.submit_document(COMPANY_ID, "bank_statement", "https://storage.test/bank.pdf"),
    )

    record = store.records[COMPANY_ID]
    assert record.per_requirement["kyc"].status == RequirementStatus.AI_REVIEWED
    assert record.per_requirement["bank_statement"].status == RequirementStatus.UPLOADED_PENDING_REVIEW


@pytest.mark.asyncio
async def test_persistent_write_conflicts_are_surfaced(workflow, store):
    store.save_record = AsyncMock(side_effect=ConcurrentUpdateError("record keeps moving"))

    with pytest.raises(ConcurrentUpdateError):
        await workflow.submit_document(COMPANY_ID, "kyc", "https://storage.test/kyc.pdf")

    assert store.save_record.await_count == MAX_RECORD_WRITE_ATTEMPTS
