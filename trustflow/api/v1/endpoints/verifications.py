"""Company verification API endpoints."""

from typing import Annotated, NoReturn, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status

from trustflow.core.exceptions import (
    AppError,
    ConcurrentUpdateError,
    InvalidTransitionError,
    PersistenceError,
    RecordNotFoundError,
    StaleResultError,
    ValidationError,
)
from trustflow.dependencies import (
    VerificationRunner,
    get_bearer_token,
    get_verification_runner,
    get_verification_workflow,
)
from trustflow.schemas.requests import AdminDecisionRequest, DocumentSubmissionRequest
from trustflow.schemas.responses import ApiResponse
from trustflow.schemas.verification import TrustSignals
from trustflow.services.verification_workflow import VerificationWorkflowService
from trustflow.utils.logging import get_logger
from trustflow.utils.responses import create_api_response, create_error_detail

LOGGER = get_logger(__name__)

router = APIRouter()

WorkflowDep = Annotated[VerificationWorkflowService, Depends(get_verification_workflow)]

# Most specific first; StaleResultError is an InvalidTransitionError.
ERROR_STATUS = (
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND, "Not Found"),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error"),
    (StaleResultError, status.HTTP_409_CONFLICT, "Stale Submission"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "Invalid Transition"),
    (ConcurrentUpdateError, status.HTTP_409_CONFLICT, "Concurrent Update"),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR, "Persistence Error"),
)


def raise_http_error(request: Request, error: AppError) -> NoReturn:
    for error_cls, status_code, title in ERROR_STATUS:
        if isinstance(error, error_cls):
            break
    else:
        status_code, title = status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Error"

    if status_code >= 500:
        LOGGER.error(f"{title}: {error.message}", exc_info=error)
    error_detail = create_error_detail(
        title=title,
        status=status_code,
        detail=error.message,
        request=request,
    )
    raise HTTPException(status_code=status_code, detail=error_detail.model_dump(mode="json"))


@router.post(
    "/{company_id}/documents",
    response_model=ApiResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a verification document",
    operation_id="submit_verification_document",
)
async def submit_document(
    request: Request,
    company_id: str,
    body: DocumentSubmissionRequest,
    background_tasks: BackgroundTasks,
    workflow: WorkflowDep,
    runner: Annotated[VerificationRunner, Depends(get_verification_runner)],
    auth_token: Annotated[Optional[str], Depends(get_bearer_token)],
) -> ApiResponse:
    """Record the submission and queue its AI review.

    The response is sent as soon as the submission is stored; the review
    result is attached to the record later.
    """
    context = body.company_context()
    try:
        receipt = await workflow.submit_document(
            company_id, body.requirement_id, body.file_url, company_context=context
        )
    except AppError as e:
        raise_http_error(request, e)

    background_tasks.add_task(runner, receipt.submission.id, auth_token, context)

    return create_api_response(
        data=receipt,
        message="Document uploaded; verification in progress",
        request=request,
    )


@router.get(
    "/{company_id}",
    response_model=ApiResponse,
    summary="Get verification record",
    operation_id="get_verification_record",
)
async def get_record(
    request: Request,
    company_id: str,
    workflow: WorkflowDep,
) -> ApiResponse:
    """Per-requirement statuses, current results and overall status."""
    try:
        record = await workflow.get_record(company_id)
    except AppError as e:
        raise_http_error(request, e)

    data = record.model_dump(mode="json")
    data["persisted"] = record.to_persisted()
    return create_api_response(
        data=data,
        message="Verification record retrieved successfully",
        request=request,
    )


@router.post(
    "/{company_id}/requirements/{requirement_id}/decision",
    response_model=ApiResponse,
    summary="Record an admin review decision",
    operation_id="record_admin_decision",
)
async def record_decision(
    request: Request,
    company_id: str,
    requirement_id: str,
    body: AdminDecisionRequest,
    workflow: WorkflowDep,
) -> ApiResponse:
    try:
        record = await workflow.record_admin_decision(
            company_id,
            requirement_id,
            body.decision,
            body.reviewer_id,
            notes=body.notes,
            submission_id=body.submission_id,
        )
    except AppError as e:
        raise_http_error(request, e)

    return create_api_response(
        data=record,
        message=f"Requirement {requirement_id} marked {body.decision.value}",
        request=request,
    )


@router.get(
    "/{company_id}/trust-score",
    response_model=ApiResponse,
    summary="Compute trust score",
    operation_id="get_trust_score",
)
async def get_trust_score(
    request: Request,
    company_id: str,
    workflow: WorkflowDep,
    response_rate: float = Query(0.0, ge=0, description="Response rate percentage"),
    total_orders: int = Query(0, ge=0, description="Completed order count"),
) -> ApiResponse:
    try:
        trust_score = await workflow.get_trust_score(
            company_id,
            TrustSignals(response_rate=response_rate, total_orders=total_orders),
        )
    except AppError as e:
        raise_http_error(request, e)

    return create_api_response(
        data=trust_score,
        message="Trust score computed successfully",
        request=request,
    )
