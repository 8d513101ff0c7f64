"""Validation pipeline orchestration.

Runs the stages of one session in order, moving the session through the
state machine as each stage starts:

    reconstruct     pending -> analyzing
    extract_claims  analyzing -> extracting_claims
    verify_regex    extracting_claims -> verifying
    verify_llm      (verifying) then risk scoring, -> ready_for_review

Each stage returns a ``StageOutcome``. Degraded reasons are appended to the
session's ``pipeline_notes``; a failed outcome or an exception marks the
session failed. Stages can run in-process (``run``) or one at a time from
Temporal activities (``run_stage``).
"""

from typing import Awaitable, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from factcheck.core.config import PipelineSettings, settings
from factcheck.core.database import async_session_maker
from factcheck.core.exceptions import (
    PipelineError,
    ReconstructionError,
    SessionNotFoundError,
    StateTransitionError,
    VerificationError,
)
from factcheck.core.unified_llm import GenerationContext, TextGenerator
from factcheck.database.models import ValidationSession
from factcheck.repositories.claim_repository import ClaimRepository
from factcheck.repositories.session_repository import SessionRepository
from factcheck.schemas.outcomes import StageOutcome, StageStatus
from factcheck.schemas.validation import AuditAction, TargetType, ValidationStatus, Verdict
from factcheck.services.verification.audit_logger import SYSTEM_REQUEST, AuditLogger
from factcheck.services.verification.claim_extractor import ClaimExtractor
from factcheck.services.verification.llm_verifier import LLMVerifier
from factcheck.services.verification.markdown_reconstructor import MarkdownReconstructor
from factcheck.services.verification.regex_verifier import RegexVerifier
from factcheck.services.verification.risk_calculator import RiskCalculator
from factcheck.services.verification.truncation import TruncationLimits
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

SYSTEM_USER = "system"

STAGE_RECONSTRUCT = "reconstruct"
STAGE_EXTRACT = "extract_claims"
STAGE_VERIFY_REGEX = "verify_regex"
STAGE_VERIFY_LLM = "verify_llm"

STAGE_ORDER = (STAGE_RECONSTRUCT, STAGE_EXTRACT, STAGE_VERIFY_REGEX, STAGE_VERIFY_LLM)
TOTAL_STEPS = len(STAGE_ORDER)


class ValidationPipeline:
    """Composes the verification stages for one database session."""

    def __init__(
        self,
        db_session: AsyncSession,
        llm: TextGenerator,
        audit_logger: AuditLogger,
        pipeline_settings: Optional[PipelineSettings] = None,
    ):
        self.pipeline_settings = pipeline_settings or settings.pipeline
        cfg = self.pipeline_settings
        limits = TruncationLimits.from_settings(cfg)

        self.session_repo = SessionRepository(db_session)
        self.claim_repo = ClaimRepository(db_session)
        self.audit_logger = audit_logger

        self.reconstructor = MarkdownReconstructor(llm, limits, call_timeout=cfg.llm_call_timeout_seconds)
        self.extractor = ClaimExtractor(llm, limits, call_timeout=cfg.llm_call_timeout_seconds)
        self.regex_verifier = RegexVerifier(self.claim_repo, fuzzy_threshold=cfg.fuzzy_match_threshold)
        self.llm_verifier = LLMVerifier(
            llm,
            self.claim_repo,
            limits,
            batch_size=cfg.llm_batch_size,
            concurrency=cfg.llm_batch_concurrency,
            call_timeout=cfg.llm_call_timeout_seconds,
        )
        self.risk_calculator = RiskCalculator(
            self.claim_repo,
            self.session_repo,
            escalate_not_found=cfg.escalate_not_found,
        )

        self._stages: Dict[str, Callable[[ValidationSession], Awaitable[StageOutcome]]] = {
            STAGE_RECONSTRUCT: self._reconstruct,
            STAGE_EXTRACT: self._extract_claims,
            STAGE_VERIFY_REGEX: self._verify_regex,
            STAGE_VERIFY_LLM: self._verify_llm,
        }

    async def run(self, session_id: UUID) -> ValidationStatus:
        """Run every stage in order; never raises for stage errors.

        Returns:
            The session status after the run
        """
        LOGGER.info(f"[PIPELINE] Starting validation for session {session_id}", extra={"session_id": str(session_id)})

        for stage in STAGE_ORDER:
            try:
                outcome = await self.run_stage(session_id, stage)
            except (PipelineError, StateTransitionError, SessionNotFoundError) as e:
                await self.mark_failed(session_id, f"{stage}: {e}")
                return await self._current_status(session_id)
            except Exception as e:
                LOGGER.error(f"[PIPELINE] Unexpected error in {stage}", extra={"session_id": str(session_id)}, exc_info=True)
                await self.mark_failed(session_id, f"{stage}: unexpected error: {e}")
                return await self._current_status(session_id)

            if outcome.status == StageStatus.FAILED:
                await self.mark_failed(session_id, f"{stage}: {outcome.reason}")
                return await self._current_status(session_id)

        LOGGER.info(f"[PIPELINE] Session {session_id} ready for review", extra={"session_id": str(session_id)})
        return ValidationStatus.READY_FOR_REVIEW

    async def run_stage(self, session_id: UUID, stage: str) -> StageOutcome:
        """Run one stage and record a degraded reason if there is one.

        Raises:
            SessionNotFoundError: If the session does not exist
            StateTransitionError: If the session is not in a state this stage can start from
            PipelineError: If the stage cannot produce usable output
        """
        if stage not in self._stages:
            raise PipelineError(f"Unknown pipeline stage: {stage}")

        session = await self.session_repo.get_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(f"Validation session {session_id} not found")

        outcome = await self._stages[stage](session)

        if outcome.status == StageStatus.DEGRADED:
            LOGGER.warning(
                f"[PIPELINE] {stage} degraded: {outcome.reason}",
                extra={"session_id": str(session_id), "stage": stage}
            )
            await self.session_repo.append_note(session_id, f"{stage}: {outcome.reason}")
        return outcome

    async def mark_failed(self, session_id: UUID, reason: str) -> bool:
        """Move a session in a pipeline state to ``failed`` and audit it."""
        applied = await self.session_repo.transition_status(
            session_id,
            ValidationStatus.FAILED,
            failure_reason=reason[:2000],
        )
        if applied:
            LOGGER.error(f"[PIPELINE] Session {session_id} failed: {reason}", extra={"session_id": str(session_id)})
            await self.audit_logger.log(
                session_id=session_id,
                user_id=SYSTEM_USER,
                action=AuditAction.SESSION_FAILED,
                target_type=TargetType.SESSION,
                target_id=str(session_id),
                metadata={"reason": reason},
                request_meta=SYSTEM_REQUEST,
            )
        return applied

    async def _current_status(self, session_id: UUID) -> ValidationStatus:
        session = await self.session_repo.get_by_id(session_id)
        if session is None:
            return ValidationStatus.FAILED
        return ValidationStatus(session.status)

    async def _enter(self, session: ValidationSession, target: ValidationStatus, **progress) -> None:
        """Transition into ``target``; re-entering the current state (a retried stage) is allowed."""
        applied = await self.session_repo.transition_status(session.id, target, **progress)
        if applied:
            return

        current = await self.session_repo.get_by_id(session.id)
        if current is not None and current.status == target.value:
            await self.session_repo.update_fields(session.id, **progress)
            return
        raise StateTransitionError(
            f"Session cannot enter {target.value}",
            current_status=current.status if current else None,
        )

    def _context(self, session: ValidationSession, stage: str) -> GenerationContext:
        return GenerationContext(tenant_id=session.tenant_id, session_id=str(session.id), stage=stage)

    async def _reconstruct(self, session: ValidationSession) -> StageOutcome:
        await self._enter(
            session, ValidationStatus.ANALYZING,
            current_step=STAGE_RECONSTRUCT, completed_steps=0, total_steps=TOTAL_STEPS,
        )
        outcome = await self.reconstructor.reconstruct(session.original_text, self._context(session, STAGE_RECONSTRUCT))
        result = outcome.payload
        await self.session_repo.update_reconstruction(
            session.id,
            markdown=result.markdown,
            structure_json=result.structure.to_json_dict() if result.structure else None,
            truncation_json=result.truncation.to_dict(),
        )
        return outcome

    async def _extract_claims(self, session: ValidationSession) -> StageOutcome:
        await self._enter(session, ValidationStatus.EXTRACTING_CLAIMS, current_step=STAGE_EXTRACT, completed_steps=1)

        if await self.claim_repo.count({"session_id": session.id}):
            LOGGER.info("[PIPELINE] Claims already extracted, skipping", extra={"session_id": str(session.id)})
            return StageOutcome.success()

        markdown = session.reconstructed_markdown
        if markdown is None:
            raise ReconstructionError("No reconstructed markdown to extract claims from")

        outcome = await self.extractor.extract(markdown, self._context(session, STAGE_EXTRACT))
        claims = outcome.payload or []
        if claims:
            await self.claim_repo.create_many(
                {
                    "session_id": session.id,
                    "claim_text": claim.text,
                    "claim_type": claim.claim_type.value,
                    "reconstructed_location": claim.location.to_json_dict(),
                    "risk_level": claim.risk_level.value,
                    "verdict": Verdict.PENDING.value,
                    "sort_order": index,
                }
                for index, claim in enumerate(claims)
            )
        return outcome

    async def _verify_regex(self, session: ValidationSession) -> StageOutcome:
        await self._enter(session, ValidationStatus.VERIFYING, current_step="regex", completed_steps=2)
        pending = await self.claim_repo.get_pending(session.id)
        resolved = await self.regex_verifier.verify(pending, session.original_text)
        return StageOutcome.success(resolved)

    async def _verify_llm(self, session: ValidationSession) -> StageOutcome:
        if session.status != ValidationStatus.VERIFYING.value:
            raise StateTransitionError(
                "LLM verification requires a session in verifying",
                current_status=session.status,
            )
        await self.session_repo.update_fields(session.id, current_step="llm", completed_steps=3)

        pending = await self.claim_repo.get_pending(session.id)
        outcome = await self.llm_verifier.verify(pending, session.original_text, self._context(session, STAGE_VERIFY_LLM))

        unresolved = await self.claim_repo.get_pending(session.id)
        if unresolved:
            raise VerificationError(f"{len(unresolved)} claims left without a verdict")

        # Barrier: every batch has been written before scoring
        await self.risk_calculator.recalculate(session.id)
        await self._enter(session, ValidationStatus.READY_FOR_REVIEW, current_step="complete", completed_steps=TOTAL_STEPS)
        return outcome


async def run_validation_pipeline(session_id: UUID, llm: TextGenerator, audit_logger: AuditLogger) -> ValidationStatus:
    """Run the whole pipeline for a session in a fresh database session.

    Used for in-process execution when Temporal is disabled.
    """
    async with async_session_maker() as db_session:
        pipeline = ValidationPipeline(db_session, llm, audit_logger)
        return await pipeline.run(session_id)
