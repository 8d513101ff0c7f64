from fastapi import APIRouter

from factcheck.api.v1.endpoints import health, validation

api_router = APIRouter()

api_router.include_router(validation.router, prefix="/validation", tags=["Validation"])
api_router.include_router(health.router, prefix="", tags=["Health"])

__all__ = ["api_router"]
