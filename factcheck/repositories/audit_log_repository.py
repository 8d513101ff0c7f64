"""Repository for the validation audit trail."""

from typing import List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from factcheck.database.models import ValidationAuditLog
from factcheck.repositories.base_repository import BaseRepository
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)


class AuditLogRepository(BaseRepository[ValidationAuditLog]):
    """Insert and read access to ValidationAuditLog. Entries are never updated."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, ValidationAuditLog)

    async def list_by_session(self, session_id: UUID, limit: int = 500) -> List[ValidationAuditLog]:
        """Audit entries of a session, newest first.

        Args:
            session_id: Session UUID
            limit: Maximum number of entries

        Returns:
            Entries ordered by created_at descending
        """
        try:
            query = (
                select(ValidationAuditLog)
                .where(ValidationAuditLog.session_id == session_id)
                .order_by(ValidationAuditLog.created_at.desc())
                .limit(limit)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            LOGGER.error(
                f"Error listing audit log: {e}",
                extra={"session_id": str(session_id)},
                exc_info=True
            )
            raise
