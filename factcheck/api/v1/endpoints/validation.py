"""Validation session endpoints.

Creating a session starts the verification pipeline (on Temporal when it is
enabled, otherwise as an in-process background task). The remaining routes
drive human review.
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from temporalio.exceptions import WorkflowAlreadyStartedError

from factcheck.api.deps import RequestContext, get_audit_logger, get_llm_client, get_request_context, get_validation_service
from factcheck.core.config import settings
from factcheck.core.temporal_client import get_temporal_client
from factcheck.core.unified_llm import TextGenerator
from factcheck.schemas.validation import (
    ClaimResponse,
    ClaimReviewRequest,
    CreateSessionRequest,
    MarkdownUpdateRequest,
    SessionDecisionRequest,
)
from factcheck.services.validation_pipeline import run_validation_pipeline
from factcheck.services.validation_service import ValidationService
from factcheck.services.verification.audit_logger import AuditLogger
from factcheck.temporal.workflows.validate_document import ValidateDocumentWorkflow
from factcheck.utils.logging import get_logger
from factcheck.utils.responses import create_api_response

LOGGER = get_logger(__name__)

router = APIRouter()

DISPATCH_TEMPORAL = "temporal"
DISPATCH_IN_PROCESS = "in_process"


async def _dispatch_pipeline(
    session_id: UUID,
    background_tasks: BackgroundTasks,
    llm: TextGenerator,
    audit_logger: AuditLogger,
) -> str:
    if not settings.temporal.enabled:
        background_tasks.add_task(run_validation_pipeline, session_id, llm, audit_logger)
        return DISPATCH_IN_PROCESS

    temporal_client = await get_temporal_client()
    try:
        handle = await temporal_client.start_workflow(
            ValidateDocumentWorkflow.run,
            str(session_id),
            id=f"validation-{session_id}",
            task_queue=settings.temporal.task_queue,
        )
        LOGGER.info(
            f"Started validation workflow {handle.id}",
            extra={"session_id": str(session_id), "workflow_id": handle.id}
        )
    except WorkflowAlreadyStartedError:
        LOGGER.warning("Validation workflow already running", extra={"session_id": str(session_id)})
    return DISPATCH_TEMPORAL


@router.post(
    "/sessions",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=dict,
    summary="Create a validation session",
    operation_id="create_validation_session",
)
async def create_session(
    request: Request,
    payload: CreateSessionRequest,
    background_tasks: BackgroundTasks,
    context: Annotated[RequestContext, Depends(get_request_context)],
    service: Annotated[ValidationService, Depends(get_validation_service)],
    llm: Annotated[TextGenerator, Depends(get_llm_client)],
    audit_logger: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> dict:
    """Create a session for a converted document and start verification.

    Raises:
        InputValidationError (422): Empty or too-short document text
    """
    session = await service.create_session(payload, context.actor, context.meta)
    dispatch = await _dispatch_pipeline(session.id, background_tasks, llm, audit_logger)

    return create_api_response(
        data={
            "session_id": str(session.id),
            "status": session.status,
            "expires_at": session.expires_at.isoformat() if session.expires_at else None,
            "dispatch": dispatch,
        },
        message="Validation session created",
        request=request,
    )


@router.get(
    "/sessions/{session_id}",
    response_model=dict,
    summary="Get a validation session snapshot",
    operation_id="get_validation_session",
)
async def get_session(
    request: Request,
    session_id: UUID,
    context: Annotated[RequestContext, Depends(get_request_context)],
    service: Annotated[ValidationService, Depends(get_validation_service)],
    masked: bool = Query(False, description="Mask personal data in the original text"),
) -> dict:
    snapshot = await service.get_snapshot(session_id, context.actor, context.meta, masked=masked)
    return create_api_response(data=snapshot, message="Validation session retrieved", request=request)


@router.post(
    "/sessions/{session_id}/reveal",
    response_model=dict,
    summary="Reveal the unmasked original text",
    operation_id="reveal_validation_original",
)
async def reveal_original(
    request: Request,
    session_id: UUID,
    context: Annotated[RequestContext, Depends(get_request_context)],
    service: Annotated[ValidationService, Depends(get_validation_service)],
) -> dict:
    """Privileged roles only; every reveal is audited."""
    original_text = await service.reveal_original(session_id, context.actor, context.meta)
    return create_api_response(
        data={"session_id": str(session_id), "original_text": original_text},
        message="Original text revealed",
        request=request,
    )


@router.post(
    "/sessions/{session_id}/review/start",
    response_model=dict,
    summary="Start reviewing a session",
    operation_id="start_validation_review",
)
async def start_review(
    request: Request,
    session_id: UUID,
    context: Annotated[RequestContext, Depends(get_request_context)],
    service: Annotated[ValidationService, Depends(get_validation_service)],
) -> dict:
    current = await service.start_review(session_id, context.actor, context.meta)
    return create_api_response(
        data={"session_id": str(session_id), "status": current.value},
        message="Review started",
        request=request,
    )


@router.post(
    "/sessions/{session_id}/claims/{claim_id}/review",
    response_model=dict,
    summary="Record a human verdict on a claim",
    operation_id="review_validation_claim",
)
async def review_claim(
    request: Request,
    session_id: UUID,
    claim_id: UUID,
    payload: ClaimReviewRequest,
    context: Annotated[RequestContext, Depends(get_request_context)],
    service: Annotated[ValidationService, Depends(get_validation_service)],
) -> dict:
    claim = await service.review_claim(session_id, claim_id, payload, context.actor, context.meta)
    return create_api_response(
        data=ClaimResponse.model_validate(claim),
        message=f"Claim marked {payload.verdict.value}",
        request=request,
    )


@router.put(
    "/sessions/{session_id}/markdown",
    response_model=dict,
    summary="Edit the reconstructed markdown",
    operation_id="update_validation_markdown",
)
async def update_markdown(
    request: Request,
    session_id: UUID,
    payload: MarkdownUpdateRequest,
    context: Annotated[RequestContext, Depends(get_request_context)],
    service: Annotated[ValidationService, Depends(get_validation_service)],
) -> dict:
    await service.update_markdown(session_id, payload.markdown, context.actor, context.meta)
    return create_api_response(
        data={"session_id": str(session_id), "length": len(payload.markdown)},
        message="Markdown updated",
        request=request,
    )


@router.post(
    "/sessions/{session_id}/decision",
    response_model=dict,
    summary="Approve or reject a session",
    operation_id="decide_validation_session",
)
async def decide(
    request: Request,
    session_id: UUID,
    payload: SessionDecisionRequest,
    context: Annotated[RequestContext, Depends(get_request_context)],
    service: Annotated[ValidationService, Depends(get_validation_service)],
) -> dict:
    """Final human decision; approval returns the generated page drafts.

    Raises:
        PermissionDeniedError (403): Request carries no reviewer identity
        StateTransitionError (409): Session is not under review or was already decided
    """
    result = await service.decide(session_id, payload, context.actor, context.meta)
    return create_api_response(
        data=result,
        message=f"Session {result.status.value}",
        request=request,
    )


@router.get(
    "/sessions/{session_id}/audit",
    response_model=dict,
    summary="Get the audit trail of a session",
    operation_id="get_validation_audit",
)
async def get_audit_history(
    request: Request,
    session_id: UUID,
    service: Annotated[ValidationService, Depends(get_validation_service)],
) -> dict:
    entries = await service.audit_history(session_id)
    return create_api_response(
        data=entries,
        message=f"Retrieved {len(entries)} audit entries",
        request=request,
    )
