from fastapi import APIRouter

from trustflow.api.v1.endpoints import verifications

api_router = APIRouter()

api_router.include_router(verifications.router, prefix="/verifications", tags=["Verifications"])

__all__ = ["api_router"]
