"""Temporal activities for the validation pipeline and expiry sweep."""

from typing import Dict, Optional
from uuid import UUID

from temporalio import activity

from factcheck.core.database import async_session_maker
from factcheck.core.dependencies import get_audit_logger, get_llm_client
from factcheck.services.validation_pipeline import ValidationPipeline
from factcheck.services.validation_service import ValidationService
from factcheck.utils.logging import get_logger

logger = get_logger(__name__)


@activity.defn
async def run_validation_stage(session_id: str, stage: str) -> Dict[str, Optional[str]]:
    """Run one pipeline stage for a session.

    Returns:
        ``{"stage", "status", "reason"}`` of the stage outcome
    """
    activity.logger.info(
        f"[VALIDATION] Running stage {stage} for session {session_id}",
        extra={"session_id": session_id, "stage": stage}
    )
    activity.heartbeat(stage)

    async with async_session_maker() as db_session:
        pipeline = ValidationPipeline(db_session, get_llm_client(), get_audit_logger())
        outcome = await pipeline.run_stage(UUID(session_id), stage)

    return {"stage": stage, "status": outcome.status.value, "reason": outcome.reason}


@activity.defn
async def mark_validation_failed(session_id: str, reason: str) -> bool:
    async with async_session_maker() as db_session:
        pipeline = ValidationPipeline(db_session, get_llm_client(), get_audit_logger())
        return await pipeline.mark_failed(UUID(session_id), reason)


@activity.defn
async def expire_validation_sessions() -> int:
    """Expire sessions past their TTL or stuck in the pipeline.

    Also retries audit entries this worker failed to record since the last sweep.
    """
    audit_logger = get_audit_logger()
    async with async_session_maker() as db_session:
        service = ValidationService(db_session, audit_logger)
        expired = await service.expire_sessions()

    reconciled = await audit_logger.reconcile_failed()
    activity.logger.info(
        f"[EXPIRY] {expired} sessions expired, {reconciled} audit entries reconciled",
        extra={"unreconciled": len(audit_logger.failed_entries)}
    )
    return expired
