"""Process-wide collaborators shared by the API and the Temporal worker."""

from functools import lru_cache

from factcheck.core.config import settings
from factcheck.core.database import async_session_maker
from factcheck.core.unified_llm import TextGenerator, create_llm_client
from factcheck.services.verification.audit_logger import AuditLogger


@lru_cache
def get_llm_client() -> TextGenerator:
    """Generation client, built once from settings."""
    return create_llm_client(settings.llm)


@lru_cache
def get_audit_logger() -> AuditLogger:
    """Audit logger writing through its own database sessions."""
    return AuditLogger(
        async_session_maker,
        snapshot_max_chars=settings.pipeline.audit_snapshot_max_chars,
    )
