"""Repository for claims and their source spans."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from factcheck.database.models import Claim, SourceSpan
from factcheck.repositories.base_repository import BaseRepository
from factcheck.schemas.validation import RiskLevel, Verdict, VerificationLevel
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)


class ClaimRepository(BaseRepository[Claim]):
    """Repository for Claim model.

    Verdict writes are guarded on ``verification_level`` so a lower-ranked
    verifier can never overwrite a higher-ranked verdict.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(session, Claim)

    async def get_by_session(self, session_id: UUID) -> List[Claim]:
        """All claims of a session in ``sort_order``."""
        try:
            query = (
                select(Claim)
                .where(Claim.session_id == session_id)
                .order_by(Claim.sort_order)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            LOGGER.error(
                f"Error getting claims for session: {e}",
                extra={"session_id": str(session_id)},
                exc_info=True
            )
            raise

    async def get_pending(self, session_id: UUID) -> List[Claim]:
        """Claims of a session still awaiting a verdict, in ``sort_order``."""
        try:
            query = (
                select(Claim)
                .where(Claim.session_id == session_id, Claim.verdict == Verdict.PENDING.value)
                .order_by(Claim.sort_order)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            LOGGER.error(
                f"Error getting pending claims: {e}",
                extra={"session_id": str(session_id)},
                exc_info=True
            )
            raise

    async def get_in_session(self, session_id: UUID, claim_id: UUID) -> Optional[Claim]:
        try:
            query = (
                select(Claim)
                .where(Claim.id == claim_id, Claim.session_id == session_id)
                .execution_options(populate_existing=True)
            )
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            LOGGER.error(
                f"Error getting claim: {e}",
                extra={"session_id": str(session_id), "claim_id": str(claim_id)},
                exc_info=True
            )
            raise

    async def apply_verdict(
        self,
        claim_id: UUID,
        level: VerificationLevel,
        span: Optional[Dict[str, Any]] = None,
        **values: Any
    ) -> bool:
        """Write a verdict produced at ``level``, plus optional evidence.

        The UPDATE only matches while the stored level is unset or ranked at
        or below ``level``; the span is inserted in the same transaction and
        only when the update applied.

        Args:
            claim_id: Claim UUID
            level: Verification level of the writer
            span: SourceSpan column values, if evidence was located
            **values: Claim columns to set (verdict, confidence, ...)

        Returns:
            True if the verdict was written, False if a higher level already owns the claim
        """
        overwritable = [lvl.value for lvl in level.levels_at_or_below()]
        try:
            stmt = (
                update(Claim)
                .where(
                    Claim.id == claim_id,
                    or_(Claim.verification_level.is_(None), Claim.verification_level.in_(overwritable)),
                )
                .values(verification_level=level.value, **values)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            applied = result.rowcount == 1
            if applied and span:
                self.session.add(SourceSpan(claim_id=claim_id, **span))
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            LOGGER.error(
                f"Error applying {level.value} verdict: {e}",
                extra={"claim_id": str(claim_id)},
                exc_info=True
            )
            raise

        if not applied:
            LOGGER.info(
                f"Skipped {level.value} verdict; claim already verified at a higher level",
                extra={"claim_id": str(claim_id)}
            )
        return applied

    async def update_fields(self, claim_id: UUID, **values: Any) -> None:
        """Set columns that do not carry a verdict (e.g. risk level)."""
        try:
            stmt = (
                update(Claim)
                .where(Claim.id == claim_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(stmt)
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            LOGGER.error(f"Error updating claim: {e}", extra={"claim_id": str(claim_id)}, exc_info=True)
            raise

    async def escalate_contradicted(self, session_id: UUID) -> int:
        """Force risk_level=high on every contradicted claim of a session.

        Returns:
            Number of claims changed (0 on repeated calls)
        """
        try:
            stmt = (
                update(Claim)
                .where(
                    Claim.session_id == session_id,
                    Claim.verdict == Verdict.CONTRADICTED.value,
                    Claim.risk_level != RiskLevel.HIGH.value,
                )
                .values(risk_level=RiskLevel.HIGH.value)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            await self.session.commit()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            LOGGER.error(
                f"Error escalating contradicted claims: {e}",
                extra={"session_id": str(session_id)},
                exc_info=True
            )
            raise
