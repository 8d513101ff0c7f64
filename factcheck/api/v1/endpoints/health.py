"""Health check API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from factcheck.core.config import settings
from factcheck.core.database import db_client
from factcheck.core.dependencies import get_audit_logger
from factcheck.services.verification.audit_logger import AuditLogger
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

router = APIRouter()


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="Health check status")
    version: str = Field(..., description="Running application version")
    service: str = Field(..., description="Service name")
    database: dict = Field(default_factory=dict, description="Database connectivity details")
    audit: dict = Field(default_factory=dict, description="Audit entries awaiting reconciliation")


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check endpoint",
    description="Check if the service is running, its database is reachable and the audit trail is complete",
    operation_id="get_service_health_status",
)
async def health_check(
    audit_logger: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> HealthCheckResponse:
    """Health check endpoint.

    Reports ``degraded`` when the database is unreachable or audit entries
    are waiting in the reconciliation buffer.
    """
    db_health = await db_client.health_check()

    unrecorded = list(audit_logger.failed_entries)
    if unrecorded:
        LOGGER.warning(f"[HEALTH] {len(unrecorded)} audit entries awaiting reconciliation")

    healthy = db_health["status"] == "healthy" and not unrecorded
    return HealthCheckResponse(
        status="healthy" if healthy else "degraded",
        version=settings.app_version,
        service=settings.app_name,
        database=db_health,
        audit={
            "failed_entries": len(unrecorded),
            "oldest_failure": unrecorded[0]["failed_at"].isoformat() if unrecorded else None,
        },
    )
