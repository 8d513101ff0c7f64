"""Human review operations on validation sessions.

The pipeline (``validation_pipeline``) brings a session to
``ready_for_review``; everything after that is driven by a person through
this service: reading the snapshot, per-claim review, markdown edits and the
final approve/reject decision. Every mutating call is audited.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from factcheck.core.config import PipelineSettings, settings
from factcheck.core.exceptions import (
    ClaimNotFoundError,
    InputValidationError,
    PermissionDeniedError,
    SessionNotFoundError,
    StateTransitionError,
)
from factcheck.database.models import Claim, ValidationSession
from factcheck.repositories.claim_repository import ClaimRepository
from factcheck.repositories.session_repository import SessionRepository
from factcheck.schemas.validation import (
    AuditAction,
    AuditLogResponse,
    ClaimResponse,
    ClaimReviewRequest,
    CreateSessionRequest,
    DocumentStructure,
    HumanVerdict,
    PageDraft,
    RiskLevel,
    SessionCounts,
    SessionDecision,
    SessionDecisionRequest,
    SessionDecisionResponse,
    SessionSnapshot,
    TargetType,
    ValidationStatus,
    Verdict,
    VerificationLevel,
)
from factcheck.services.state_machine import REVIEW_STATES, ensure_not_terminal
from factcheck.services.validation_pipeline import SYSTEM_USER, TOTAL_STEPS
from factcheck.services.verification.audit_logger import SYSTEM_REQUEST, AuditLogger, RequestMeta
from factcheck.services.verification.masking import mask_sensitive_info
from factcheck.services.verification.risk_calculator import RiskCalculator
from factcheck.services.verification.section_tree import build_page_drafts
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

CLAIM_AUDIT_ACTIONS = {
    HumanVerdict.APPROVED: AuditAction.CLAIM_APPROVED,
    HumanVerdict.REJECTED: AuditAction.CLAIM_REJECTED,
    HumanVerdict.MODIFIED: AuditAction.CLAIM_MODIFIED,
    HumanVerdict.SKIPPED: AuditAction.CLAIM_SKIPPED,
}

EXPIRY_REASON_TTL = "ttl_elapsed"
EXPIRY_REASON_STALE = "pipeline_stale"

ANONYMOUS_USER = "anonymous"
UNATTRIBUTED_USERS = frozenset({ANONYMOUS_USER, SYSTEM_USER})


@dataclass(frozen=True)
class Actor:
    """Acting user as resolved by the API layer."""

    user_id: str
    role: Optional[str] = None


def apply_corrections(markdown: str, claims: Sequence[Claim]) -> Tuple[str, int]:
    """Replace the text of modified claims with their corrected text.

    The stored location is used when it still points at the claim text;
    otherwise the first occurrence is replaced. Claims whose text can no
    longer be found are left alone.

    Returns:
        (corrected markdown, number of corrections applied)
    """
    edits: List[Tuple[int, int, str]] = []
    for claim in claims:
        if claim.human_verdict != HumanVerdict.MODIFIED.value or not claim.corrected_text:
            continue

        location = claim.reconstructed_location or {}
        start = location.get("startChar", 0)
        end = location.get("endChar", 0)
        if end <= start or markdown[start:end] != claim.claim_text:
            start = markdown.find(claim.claim_text)
            end = start + len(claim.claim_text)
        if start < 0:
            LOGGER.warning(
                "[REVIEW] Corrected claim text not found in markdown",
                extra={"claim_id": str(claim.id)}
            )
            continue
        if any(start < e_end and s_start < end for s_start, e_end, _ in edits):
            continue
        edits.append((start, end, claim.corrected_text))

    for start, end, replacement in sorted(edits, key=lambda edit: edit[0], reverse=True):
        markdown = markdown[:start] + replacement + markdown[end:]
    return markdown, len(edits)


class ValidationService:
    """Session creation and the human review workflow."""

    def __init__(
        self,
        db_session: AsyncSession,
        audit_logger: AuditLogger,
        pipeline_settings: Optional[PipelineSettings] = None,
    ):
        self.pipeline_settings = pipeline_settings or settings.pipeline
        self.session_repo = SessionRepository(db_session)
        self.claim_repo = ClaimRepository(db_session)
        self.audit_logger = audit_logger
        self.risk_calculator = RiskCalculator(
            self.claim_repo,
            self.session_repo,
            escalate_not_found=self.pipeline_settings.escalate_not_found,
        )

    async def create_session(
        self,
        request: CreateSessionRequest,
        actor: Actor,
        request_meta: RequestMeta,
    ) -> ValidationSession:
        """Create a pending session for a converted document.

        Raises:
            InputValidationError: If the text is empty or below the minimum length
        """
        text = request.original_text
        if not text or not text.strip():
            raise InputValidationError("Document text is empty")
        minimum = self.pipeline_settings.min_document_chars
        if len(text.strip()) < minimum:
            raise InputValidationError(
                f"Document text is too short ({len(text.strip())} chars, minimum {minimum})"
            )

        now = datetime.now(timezone.utc)
        session = await self.session_repo.create(
            tenant_id=request.tenant_id,
            chatbot_id=request.chatbot_id,
            document_id=request.document_id,
            created_by=actor.user_id,
            original_text=text,
            status=ValidationStatus.PENDING.value,
            completed_steps=0,
            total_steps=TOTAL_STEPS,
            pipeline_notes=[],
            expires_at=now + timedelta(days=self.pipeline_settings.session_ttl_days),
        )

        LOGGER.info(
            f"[SESSION] Created validation session {session.id}",
            extra={"session_id": str(session.id), "tenant_id": request.tenant_id, "chars": len(text)}
        )
        await self.audit_logger.log(
            session_id=session.id,
            user_id=actor.user_id,
            action=AuditAction.SESSION_CREATED,
            target_type=TargetType.SESSION,
            target_id=str(session.id),
            metadata={
                "tenantId": request.tenant_id,
                "chatbotId": request.chatbot_id,
                "documentId": request.document_id,
                "originalLength": len(text),
            },
            request_meta=request_meta,
        )
        return session

    async def get_snapshot(
        self,
        session_id: UUID,
        actor: Actor,
        request_meta: RequestMeta,
        masked: bool = False,
    ) -> SessionSnapshot:
        """Review view of a session.

        With ``masked`` set, PII is masked in every text field that can carry
        source content: the original, the markdown, claim texts, corrections,
        verification details and evidence spans. ``masking_count`` is the
        total number of values masked across them.
        """
        session = await self._require_session(session_id, with_claims=True)

        masking_count = 0

        def mask(text: Optional[str]) -> Optional[str]:
            nonlocal masking_count
            if not masked or not text:
                return text
            result = mask_sensitive_info(text)
            masking_count += len(result.maskings)
            return result.masked_text

        claims = [ClaimResponse.model_validate(claim) for claim in session.claims]
        for claim in claims:
            claim.claim_text = mask(claim.claim_text)
            claim.corrected_text = mask(claim.corrected_text)
            claim.verification_detail = mask(claim.verification_detail)
            claim.human_note = mask(claim.human_note)
            for span in claim.source_spans:
                span.source_text = mask(span.source_text)
        original_text = mask(session.original_text)
        markdown = mask(session.reconstructed_markdown)

        structure = None
        if session.structure_json:
            structure = DocumentStructure.model_validate(session.structure_json).to_tree()

        snapshot = SessionSnapshot(
            id=session.id,
            tenant_id=session.tenant_id,
            chatbot_id=session.chatbot_id,
            document_id=session.document_id,
            status=ValidationStatus(session.status),
            risk_score=session.risk_score,
            counts=SessionCounts(
                total=session.total_claims,
                supported=session.supported_count,
                contradicted=session.contradicted_count,
                not_found=session.not_found_count,
                high_risk=session.high_risk_count,
            ),
            current_step=session.current_step,
            completed_steps=session.completed_steps,
            total_steps=session.total_steps,
            pipeline_notes=list(session.pipeline_notes or []),
            failure_reason=session.failure_reason,
            original_text=original_text,
            masked=masked,
            masking_count=masking_count,
            reconstructed_markdown=markdown,
            structure=structure,
            truncation=session.truncation_json,
            claims=claims,
            reviewed_by=session.reviewed_by,
            reviewed_at=session.reviewed_at,
            review_note=session.review_note,
            generated_pages_count=session.generated_pages_count,
            created_at=session.created_at,
            updated_at=session.updated_at,
            expires_at=session.expires_at,
        )

        await self.audit_logger.log(
            session_id=session.id,
            user_id=actor.user_id,
            action=AuditAction.SESSION_VIEWED,
            target_type=TargetType.SESSION,
            target_id=str(session.id),
            metadata={"masked": masked},
            request_meta=request_meta,
        )
        if masked:
            await self.audit_logger.log(
                session_id=session.id,
                user_id=actor.user_id,
                action=AuditAction.MASKING_APPLIED,
                target_type=TargetType.SESSION,
                target_id=str(session.id),
                metadata={"maskingCount": masking_count},
                request_meta=request_meta,
            )
        return snapshot

    async def reveal_original(self, session_id: UUID, actor: Actor, request_meta: RequestMeta) -> str:
        """Return the unmasked original text to a privileged user.

        Raises:
            PermissionDeniedError: If the actor's role is not privileged
        """
        if actor.role not in self.pipeline_settings.privileged_roles:
            LOGGER.warning(
                "[SESSION] Reveal denied",
                extra={"session_id": str(session_id), "user_id": actor.user_id, "role": actor.role}
            )
            raise PermissionDeniedError("Revealing masked content requires a privileged role")

        session = await self._require_session(session_id)
        await self.audit_logger.log(
            session_id=session.id,
            user_id=actor.user_id,
            action=AuditAction.MASKING_REVEALED,
            target_type=TargetType.SESSION,
            target_id=str(session.id),
            metadata={"role": actor.role},
            request_meta=request_meta,
        )
        return session.original_text

    async def start_review(self, session_id: UUID, actor: Actor, request_meta: RequestMeta) -> ValidationStatus:
        """Move ready_for_review -> reviewing. Calling it on a reviewing session is a no-op.

        Raises:
            StateTransitionError: If the session is in any other state
        """
        session = await self._require_session(session_id)
        status = ValidationStatus(session.status)
        if status == ValidationStatus.REVIEWING:
            return status
        if status != ValidationStatus.READY_FOR_REVIEW:
            raise StateTransitionError(
                f"Review cannot start while session is {status.value}",
                current_status=status.value,
            )

        applied = await self.session_repo.transition_status(session_id, ValidationStatus.REVIEWING)
        if not applied:
            return await self._reload_status(session_id, expected=ValidationStatus.REVIEWING)

        await self.audit_logger.log(
            session_id=session_id,
            user_id=actor.user_id,
            action=AuditAction.REVIEW_STARTED,
            target_type=TargetType.SESSION,
            target_id=str(session_id),
            request_meta=request_meta,
        )
        return ValidationStatus.REVIEWING

    async def review_claim(
        self,
        session_id: UUID,
        claim_id: UUID,
        review: ClaimReviewRequest,
        actor: Actor,
        request_meta: RequestMeta,
    ) -> Claim:
        """Record a human verdict on one claim and rescore the session.

        approved -> supported, rejected -> contradicted (high risk), modified ->
        supported with corrected text, skipped -> verdict unchanged. All except
        skipped write at level human.

        Raises:
            StateTransitionError: If the session is terminal or not under review
            InputValidationError: If a modification carries no replacement text
            ClaimNotFoundError: If the claim is not part of the session
            PermissionDeniedError: If the actor is not an identified human reviewer
        """
        self._require_human(actor, "claim review")
        session = await self._require_session(session_id)
        ensure_not_terminal(session.status, "claim review")
        if ValidationStatus(session.status) not in REVIEW_STATES:
            raise StateTransitionError(
                f"Claims cannot be reviewed while session is {session.status}",
                current_status=session.status,
            )
        if review.verdict == HumanVerdict.MODIFIED and not (review.replacement_text or "").strip():
            raise InputValidationError("A modified claim requires replacementText")

        claim = await self.claim_repo.get_in_session(session_id, claim_id)
        if claim is None:
            raise ClaimNotFoundError(f"Claim {claim_id} not found in session {session_id}")

        await self.start_review(session_id, actor, request_meta)

        previous_verdict = claim.verdict
        now = datetime.now(timezone.utc)
        human_fields = {
            "human_verdict": review.verdict.value,
            "human_note": review.note,
            "reviewed_at": now,
        }

        if review.verdict == HumanVerdict.SKIPPED:
            await self.claim_repo.update_fields(claim_id, **human_fields)
        else:
            values: Dict[str, object] = dict(human_fields)
            if review.verdict == HumanVerdict.REJECTED:
                values["verdict"] = Verdict.CONTRADICTED.value
                values["risk_level"] = RiskLevel.HIGH.value
            else:
                values["verdict"] = Verdict.SUPPORTED.value
            if review.verdict == HumanVerdict.MODIFIED:
                values["corrected_text"] = review.replacement_text
            values["verification_detail"] = f"Reviewed by {actor.user_id}"
            await self.claim_repo.apply_verdict(claim_id, VerificationLevel.HUMAN, **values)

        await self.risk_calculator.recalculate(session_id)

        await self.audit_logger.log(
            session_id=session_id,
            user_id=actor.user_id,
            action=CLAIM_AUDIT_ACTIONS[review.verdict],
            target_type=TargetType.CLAIM,
            target_id=str(claim_id),
            previous_value=claim.claim_text if review.verdict == HumanVerdict.MODIFIED else previous_verdict,
            new_value=review.replacement_text if review.verdict == HumanVerdict.MODIFIED else None,
            metadata={"previousVerdict": previous_verdict, "note": review.note},
            request_meta=request_meta,
        )

        LOGGER.info(
            f"[REVIEW] Claim {claim_id} marked {review.verdict.value}",
            extra={"session_id": str(session_id), "claim_id": str(claim_id), "user_id": actor.user_id}
        )
        return await self.claim_repo.get_in_session(session_id, claim_id)

    async def update_markdown(
        self,
        session_id: UUID,
        markdown: str,
        actor: Actor,
        request_meta: RequestMeta,
    ) -> None:
        """Replace the reconstructed markdown while the session is under review."""
        session = await self._require_session(session_id)
        if ValidationStatus(session.status) not in REVIEW_STATES:
            raise StateTransitionError(
                f"Markdown cannot be edited while session is {session.status}",
                current_status=session.status,
            )

        previous = session.reconstructed_markdown
        await self.session_repo.update_fields(session_id, reconstructed_markdown=markdown)
        await self.audit_logger.log(
            session_id=session_id,
            user_id=actor.user_id,
            action=AuditAction.MARKDOWN_EDITED,
            target_type=TargetType.MARKDOWN,
            target_id=str(session_id),
            previous_value=previous,
            new_value=markdown,
            metadata={"previousLength": len(previous or ""), "newLength": len(markdown)},
            request_meta=request_meta,
        )

    async def decide(
        self,
        session_id: UUID,
        decision: SessionDecisionRequest,
        actor: Actor,
        request_meta: RequestMeta,
    ) -> SessionDecisionResponse:
        """Approve or reject a session under review.

        Approval applies modified claims to the markdown, builds knowledge-page
        drafts from the section structure and records the page count in the
        same status transition. A session is only ever decided once.

        Raises:
            InputValidationError: If a rejection has no reason
            StateTransitionError: If the session is not under review or was decided concurrently
            PermissionDeniedError: If the actor is not an identified human reviewer
        """
        if decision.decision == SessionDecision.REJECT and not (decision.reason or "").strip():
            raise InputValidationError("A rejection requires a reason")

        self._require_human(actor, "a session decision")
        session = await self._require_session(session_id)
        ensure_not_terminal(session.status, "a decision")
        if session.status != ValidationStatus.REVIEWING.value:
            raise StateTransitionError(
                f"A decision requires a session in reviewing, not {session.status}",
                current_status=session.status,
            )

        now = datetime.now(timezone.utc)
        if decision.decision == SessionDecision.REJECT:
            applied = await self.session_repo.transition_status(
                session_id,
                ValidationStatus.REJECTED,
                reviewed_by=actor.user_id,
                reviewed_at=now,
                review_note=decision.reason,
            )
            if not applied:
                await self._raise_lost_race(session_id, ValidationStatus.REJECTED)
            await self.audit_logger.log(
                session_id=session_id,
                user_id=actor.user_id,
                action=AuditAction.SESSION_REJECTED,
                target_type=TargetType.SESSION,
                target_id=str(session_id),
                metadata={"reason": decision.reason},
                request_meta=request_meta,
            )
            LOGGER.info(f"[REVIEW] Session {session_id} rejected", extra={"session_id": str(session_id)})
            return SessionDecisionResponse(session_id=session_id, status=ValidationStatus.REJECTED)

        pages = await self._build_pages(session_id)
        applied = await self.session_repo.transition_status(
            session_id,
            ValidationStatus.APPROVED,
            reviewed_by=actor.user_id,
            reviewed_at=now,
            review_note=decision.reason,
            reconstructed_markdown=pages.markdown,
            generated_pages_count=len(pages.drafts),
        )
        if not applied:
            await self._raise_lost_race(session_id, ValidationStatus.APPROVED)

        await self.audit_logger.log(
            session_id=session_id,
            user_id=actor.user_id,
            action=AuditAction.EXPORT_GENERATED,
            target_type=TargetType.SESSION,
            target_id=str(session_id),
            metadata={"pageCount": len(pages.drafts)},
            request_meta=request_meta,
        )
        await self.audit_logger.log(
            session_id=session_id,
            user_id=actor.user_id,
            action=AuditAction.SESSION_APPROVED,
            target_type=TargetType.SESSION,
            target_id=str(session_id),
            metadata={"correctionsApplied": pages.corrections, "note": decision.reason},
            request_meta=request_meta,
        )
        LOGGER.info(
            f"[REVIEW] Session {session_id} approved with {len(pages.drafts)} pages",
            extra={"session_id": str(session_id), "user_id": actor.user_id}
        )
        return SessionDecisionResponse(
            session_id=session_id,
            status=ValidationStatus.APPROVED,
            pages=pages.drafts,
        )

    async def audit_history(self, session_id: UUID) -> List[AuditLogResponse]:
        await self._require_session(session_id)
        entries = await self.audit_logger.history(session_id)
        return [AuditLogResponse.model_validate(entry) for entry in entries]

    async def expire_sessions(self, now: Optional[datetime] = None) -> int:
        """Expire sessions past their TTL and sessions stuck in the pipeline.

        Returns:
            Number of sessions moved to expired
        """
        now = now or datetime.now(timezone.utc)
        stale_before = now - timedelta(minutes=self.pipeline_settings.stale_after_minutes)

        candidates: Dict[UUID, str] = {}
        for session_id in await self.session_repo.find_stale(stale_before):
            candidates[session_id] = EXPIRY_REASON_STALE
        for session_id in await self.session_repo.find_expired(now):
            candidates[session_id] = EXPIRY_REASON_TTL

        expired = 0
        for session_id, reason in candidates.items():
            if not await self.session_repo.transition_status(session_id, ValidationStatus.EXPIRED):
                continue
            expired += 1
            await self.audit_logger.log(
                session_id=session_id,
                user_id=SYSTEM_USER,
                action=AuditAction.SESSION_EXPIRED,
                target_type=TargetType.SESSION,
                target_id=str(session_id),
                metadata={"reason": reason},
                request_meta=SYSTEM_REQUEST,
            )

        if expired:
            LOGGER.info(f"[EXPIRY] Expired {expired} sessions", extra={"checked": len(candidates)})
        return expired

    async def _build_pages(self, session_id: UUID) -> "_PageBuild":
        session = await self._require_session(session_id, with_claims=True)
        markdown = session.reconstructed_markdown or session.original_text
        markdown, corrections = apply_corrections(markdown, session.claims)

        structure = None
        if session.structure_json:
            structure = DocumentStructure.model_validate(session.structure_json)
        return _PageBuild(markdown=markdown, drafts=build_page_drafts(structure, markdown), corrections=corrections)

    @staticmethod
    def _require_human(actor: Actor, action: str) -> None:
        if actor.user_id in UNATTRIBUTED_USERS:
            raise PermissionDeniedError(f"{action} requires an identified reviewer, not {actor.user_id}")

    async def _require_session(self, session_id: UUID, with_claims: bool = False) -> ValidationSession:
        if with_claims:
            session = await self.session_repo.get_with_claims(session_id)
        else:
            session = await self.session_repo.get_by_id(session_id)
        if session is None:
            raise SessionNotFoundError(f"Validation session {session_id} not found")
        return session

    async def _reload_status(self, session_id: UUID, expected: ValidationStatus) -> ValidationStatus:
        session = await self._require_session(session_id)
        if session.status != expected.value:
            raise StateTransitionError(
                f"Session moved to {session.status} concurrently",
                current_status=session.status,
            )
        return expected

    async def _raise_lost_race(self, session_id: UUID, target: ValidationStatus) -> None:
        session = await self._require_session(session_id)
        raise StateTransitionError(
            f"Session cannot be {target.value}; it is {session.status}",
            current_status=session.status,
        )


@dataclass(frozen=True)
class _PageBuild:
    markdown: str
    drafts: List[PageDraft]
    corrections: int
