"""Repository for validation session data access."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from factcheck.database.models import Claim, ValidationSession
from factcheck.repositories.base_repository import BaseRepository
from factcheck.schemas.validation import ValidationStatus
from factcheck.services.state_machine import PIPELINE_STATES, TERMINAL_STATES, allowed_sources
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)


class SessionRepository(BaseRepository[ValidationSession]):
    """Repository for ValidationSession.

    Status changes and counter updates are single conditional UPDATE
    statements so concurrent writers cannot interleave partial state.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, ValidationSession)

    async def get_with_claims(self, session_id: UUID) -> Optional[ValidationSession]:
        """Load a session with its claims (ordered) and their source spans."""
        try:
            query = (
                select(ValidationSession)
                .where(ValidationSession.id == session_id)
                .options(selectinload(ValidationSession.claims).selectinload(Claim.source_spans))
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            LOGGER.error(
                f"Error loading session with claims: {e}",
                extra={"session_id": str(session_id)},
                exc_info=True
            )
            raise

    async def transition_status(
        self,
        session_id: UUID,
        target: ValidationStatus,
        **values: Any
    ) -> bool:
        """Move a session to ``target`` if its current status allows it.

        Args:
            session_id: Session UUID
            target: Desired status
            **values: Extra columns to set in the same statement

        Returns:
            True if this call performed the transition, False if the session
            was missing or already in a state that does not lead to ``target``
        """
        sources = [status.value for status in allowed_sources(target)]
        try:
            stmt = (
                update(ValidationSession)
                .where(ValidationSession.id == session_id, ValidationSession.status.in_(sources))
                .values(status=target.value, **values)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            LOGGER.error(
                f"Error transitioning session to {target.value}: {e}",
                extra={"session_id": str(session_id)},
                exc_info=True
            )
            raise

        applied = result.rowcount == 1
        if applied:
            LOGGER.info(
                f"[SESSION] {session_id} -> {target.value}",
                extra={"session_id": str(session_id), "status": target.value}
            )
        else:
            LOGGER.debug(
                f"[SESSION] transition to {target.value} not applied",
                extra={"session_id": str(session_id)}
            )
        return applied

    async def update_fields(self, session_id: UUID, **values: Any) -> None:
        """Set columns on one session in a single UPDATE."""
        try:
            stmt = (
                update(ValidationSession)
                .where(ValidationSession.id == session_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            LOGGER.error(
                f"Error updating session: {e}",
                extra={"session_id": str(session_id), "fields": list(values)},
                exc_info=True
            )
            raise

    async def update_reconstruction(
        self,
        session_id: UUID,
        markdown: str,
        structure_json: Optional[Dict[str, Any]],
        truncation_json: Optional[Dict[str, Any]],
    ) -> None:
        await self.update_fields(
            session_id,
            reconstructed_markdown=markdown,
            structure_json=structure_json,
            truncation_json=truncation_json,
        )

    async def update_statistics(self, session_id: UUID, **counters: Any) -> None:
        """Persist risk score and counters atomically."""
        await self.update_fields(session_id, **counters)

    async def append_note(self, session_id: UUID, note: str) -> None:
        """Append a degraded-stage reason to ``pipeline_notes``.

        Stages run sequentially per session, so read-then-write is safe here.
        """
        try:
            result = await self.session.execute(
                select(ValidationSession.pipeline_notes).where(ValidationSession.id == session_id)
            )
            notes = list(result.scalar_one_or_none() or [])
        except SQLAlchemyError as e:
            LOGGER.error(f"Error reading pipeline notes: {e}", extra={"session_id": str(session_id)}, exc_info=True)
            raise

        notes.append(note)
        await self.update_fields(session_id, pipeline_notes=notes)

    async def find_expired(self, now: datetime, limit: int = 500) -> List[UUID]:
        """IDs of non-terminal sessions whose ``expires_at`` has passed."""
        terminal = [status.value for status in TERMINAL_STATES]
        try:
            query = (
                select(ValidationSession.id)
                .where(
                    ValidationSession.status.not_in(terminal),
                    ValidationSession.expires_at.is_not(None),
                    ValidationSession.expires_at < now,
                )
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            LOGGER.error(f"Error finding expired sessions: {e}", exc_info=True)
            raise

    async def find_stale(self, updated_before: datetime, limit: int = 500) -> List[UUID]:
        """IDs of sessions stuck in a pipeline state since before ``updated_before``."""
        pipeline = [status.value for status in PIPELINE_STATES]
        try:
            query = (
                select(ValidationSession.id)
                .where(
                    ValidationSession.status.in_(pipeline),
                    ValidationSession.updated_at < updated_before,
                )
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            LOGGER.error(f"Error finding stale sessions: {e}", exc_info=True)
            raise
