"""Dependency wiring for the FastAPI application.

The gateway, event publisher and notifier are process-wide so the request
budget and event subscriptions outlive a single request. Repositories and
workflows are built per database session.
"""

from functools import lru_cache
from typing import Annotated, Awaitable, Callable, Optional
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from trustflow.core.config import settings
from trustflow.core.database import get_async_session, get_session_maker
from trustflow.core.gateway import ResilientModelGateway
from trustflow.repositories.verification_repository import VerificationRepository
from trustflow.schemas.verification import CompanyContext
from trustflow.services.events import VerificationEventPublisher
from trustflow.services.notification_service import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    WebhookNotificationDispatcher,
)
from trustflow.services.verification_service import DocumentVerificationService
from trustflow.services.verification_workflow import VerificationWorkflowService
from trustflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

VerificationRunner = Callable[[UUID, Optional[str], Optional[CompanyContext]], Awaitable[None]]

# Session tokens are optional here; the gateway refuses to call without one.
security = HTTPBearer(auto_error=False)


@lru_cache(maxsize=1)
def get_model_gateway() -> ResilientModelGateway:
    return ResilientModelGateway(settings.gateway.to_config())


@lru_cache(maxsize=1)
def get_event_publisher() -> VerificationEventPublisher:
    return VerificationEventPublisher()


@lru_cache(maxsize=1)
def get_notifier() -> NotificationDispatcher:
    if settings.notification_webhook_url:
        return WebhookNotificationDispatcher(settings.notification_webhook_url)
    return LoggingNotificationDispatcher()


def build_workflow(session: AsyncSession) -> VerificationWorkflowService:
    """Workflow bound to one database session."""
    return VerificationWorkflowService(
        store=VerificationRepository(session),
        verifier=DocumentVerificationService(get_model_gateway()),
        publisher=get_event_publisher(),
        notifier=get_notifier(),
    )


async def get_verification_workflow(
    db_session: Annotated[AsyncSession, Depends(get_async_session)]
) -> VerificationWorkflowService:
    """Get the verification workflow for the request's session."""
    return build_workflow(db_session)


async def run_verification_task(
    submission_id: UUID,
    auth_token: Optional[str] = None,
    company_context: Optional[CompanyContext] = None,
) -> None:
    """AI-review a submission in its own session, after the response is sent."""
    async with get_session_maker()() as session:
        await build_workflow(session).verify_in_background(
            submission_id, auth_token, company_context
        )


def get_verification_runner() -> VerificationRunner:
    return run_verification_task


async def get_bearer_token(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)]
) -> Optional[str]:
    """The caller's session token, if one was sent."""
    return credentials.credentials if credentials else None
