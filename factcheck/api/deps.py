"""Dependency injection for the HTTP layer.

The generation client and audit logger are built once per process; services
are created per request around the request's database session.
"""

from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from factcheck.core.database import get_async_session
from factcheck.core.dependencies import get_audit_logger, get_llm_client
from factcheck.services.validation_service import ANONYMOUS_USER, Actor, ValidationService
from factcheck.services.verification.audit_logger import AuditLogger, RequestMeta


@dataclass(frozen=True)
class RequestContext:
    """Who is calling and from where."""

    actor: Actor
    meta: RequestMeta


async def get_request_context(
    request: Request,
    x_user_id: Annotated[Optional[str], Header()] = None,
    x_user_role: Annotated[Optional[str], Header()] = None,
) -> RequestContext:
    """Resolve the actor from X-User-Id/X-User-Role set by the upstream auth layer."""
    return RequestContext(
        actor=Actor(user_id=x_user_id or ANONYMOUS_USER, role=x_user_role),
        meta=RequestMeta.from_headers(request.headers),
    )


async def get_validation_service(
    db_session: Annotated[AsyncSession, Depends(get_async_session)],
    audit_logger: Annotated[AuditLogger, Depends(get_audit_logger)],
) -> ValidationService:
    """Get validation service instance.

    Args:
        db_session: Database session from dependency injection
        audit_logger: Shared audit logger

    Returns:
        ValidationService: Service for session creation and review
    """
    return ValidationService(db_session, audit_logger)
