"""Health check API endpoints."""

from fastapi import APIRouter
from pydantic import BaseModel, Field

from trustflow.core.config import settings

router = APIRouter()


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="Health check status")
    version: str = Field(..., description="Running application version")
    service: str = Field(..., description="Service name")
    model_gateway_configured: bool = Field(
        ..., description="Whether AI review can reach a reasoning service"
    )


@router.get(
    "/",
    response_model=HealthCheckResponse,
    summary="Health check endpoint",
    description="Check if the service is running",
    operation_id="get_service_health_status",
)
async def health_check() -> HealthCheckResponse:
    return HealthCheckResponse(
        status="healthy",
        version=settings.app_version,
        service=settings.app_name,
        model_gateway_configured=bool(settings.gateway.base_url),
    )
