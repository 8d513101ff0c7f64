from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
import uuid

import pytest

from factcheck.core.exceptions import (
    ClaimNotFoundError,
    InputValidationError,
    PermissionDeniedError,
    SessionNotFoundError,
    StateTransitionError,
)
from factcheck.repositories.claim_repository import ClaimRepository
from factcheck.repositories.session_repository import SessionRepository
from factcheck.schemas.validation import (
    ClaimReviewRequest,
    CreateSessionRequest,
    SessionDecisionRequest,
    ValidationStatus,
    VerificationLevel,
)
from factcheck.services.validation_service import Actor, ValidationService, apply_corrections
from factcheck.services.verification.audit_logger import RequestMeta

MARKDOWN = (
    "# 회사 소개\n"
    "\n"
    "연 매출 50억원을 기록했습니다.\n"
    "\n"
    "## 고객 지원\n"
    "\n"
    "문의: 010-1234-5678\n"
    "\n"
    "환불 기한은 30일입니다."
)
ORIGINAL = "회사 소개\n연 매출 50억원을 기록했습니다.\n문의: 010-1234-5678\n환불은 7일 이내 가능합니다."
STRUCTURE = {
    "title": "회사 소개",
    "nodes": [
        {"id": "intro", "title": "회사 소개", "level": 1, "startLine": 1, "endLine": 4},
        {"id": "support", "title": "고객 지원", "level": 2, "startLine": 5, "endLine": 9, "parentId": "intro"},
    ],
}

REVIEWER = Actor(user_id="reviewer-1", role="reviewer")
ADMIN = Actor(user_id="admin-1", role="admin")
META = RequestMeta(ip_address="198.51.100.7", user_agent="pytest")


def _location(text):
    start = MARKDOWN.index(text)
    line = MARKDOWN.count("\n", 0, start) + 1
    return {"startLine": line, "endLine": line, "startChar": start, "endChar": start + len(text)}


CLAIMS = [
    {
        "text": "50억원",
        "type": "numeric",
        "risk_level": "high",
        "verdict": "supported",
        "verification_level": "regex",
        "location": _location("50억원"),
    },
    {
        "text": "환불 기한은 30일",
        "type": "text",
        "risk_level": "high",
        "verdict": "contradicted",
        "verification_level": "llm",
        "location": _location("환불 기한은 30일"),
    },
]


@pytest.fixture
def service(db_session, audit_logger):
    return ValidationService(db_session, audit_logger)


@pytest.fixture
def review_session(make_session):
    async def _make(status="ready_for_review"):
        return await make_session(
            original_text=ORIGINAL,
            status=status,
            claims=CLAIMS,
            reconstructed_markdown=MARKDOWN,
            structure_json=STRUCTURE,
        )

    return _make


async def claim_ids(session_factory, session_id):
    async with session_factory() as db:
        session = await SessionRepository(db).get_with_claims(session_id)
    return {claim.claim_text: claim.id for claim in session.claims}


async def actions(audit_logger, session_id):
    return [entry.action for entry in await audit_logger.history(session_id)]


@pytest.mark.asyncio
async def test_create_session_rejects_short_text(service):
    for text in ("", "   ", "너무 짧은 문서"):
        with pytest.raises(InputValidationError):
            await service.create_session(
                CreateSessionRequest(tenantId="t", chatbotId="b", originalText=text),
                REVIEWER,
                META,
            )


@pytest.mark.asyncio
async def test_create_session_starts_pending_with_ttl(service, audit_logger):
    request = CreateSessionRequest(tenantId="t", chatbotId="b", documentId="doc-1", originalText="가" * 60)

    session = await service.create_session(request, REVIEWER, META)

    assert session.status == "pending"
    assert session.created_by == "reviewer-1"
    assert session.total_steps == 4
    expected_expiry = datetime.now(timezone.utc) + timedelta(days=7)
    assert abs((session.expires_at - expected_expiry).total_seconds()) < 60

    history = await audit_logger.history(session.id)
    assert history[0].action == "session_created"
    assert history[0].extra_metadata["originalLength"] == 60
    assert history[0].ip_address == "198.51.100.7"


@pytest.mark.asyncio
async def test_review_and_approve_flow(service, review_session, session_factory, audit_logger):
    session_id = await review_session()
    ids = await claim_ids(session_factory, session_id)

    claim = await service.review_claim(
        session_id,
        ids["환불 기한은 30일"],
        ClaimReviewRequest(verdict="modified", replacementText="환불 기한은 7일", note="원문 확인"),
        REVIEWER,
        META,
    )

    assert claim.human_verdict == "modified"
    assert claim.verdict == "supported"
    assert claim.verification_level == "human"
    assert claim.corrected_text == "환불 기한은 7일"
    assert claim.verification_detail == "Reviewed by reviewer-1"

    snapshot = await service.get_snapshot(session_id, REVIEWER, META)
    assert snapshot.status == ValidationStatus.REVIEWING
    assert snapshot.counts.contradicted == 0
    assert [node["id"] for node in snapshot.structure] == ["intro"]
    assert snapshot.structure[0]["children"][0]["id"] == "support"

    result = await service.decide(session_id, SessionDecisionRequest(decision="approve"), REVIEWER, META)

    assert result.status == ValidationStatus.APPROVED
    assert [page.node_id for page in result.pages] == ["intro", "support"]
    assert "환불 기한은 7일입니다." in result.pages[1].content

    async with session_factory() as db:
        stored = await SessionRepository(db).get_by_id(session_id)
    assert stored.status == "approved"
    assert stored.reviewed_by == "reviewer-1"
    assert stored.generated_pages_count == 2
    assert "환불 기한은 7일입니다." in stored.reconstructed_markdown
    assert stored.original_text == ORIGINAL

    history = await actions(audit_logger, session_id)
    assert history[:2] == ["session_approved", "export_generated"]
    assert "claim_modified" in history
    assert "review_started" in history

    with pytest.raises(StateTransitionError):
        await service.review_claim(
            session_id, ids["50억원"], ClaimReviewRequest(verdict="approved"), REVIEWER, META
        )
    with pytest.raises(StateTransitionError):
        await service.decide(session_id, SessionDecisionRequest(decision="reject", reason="늦음"), REVIEWER, META)


@pytest.mark.asyncio
async def test_rejected_claim_is_escalated(service, review_session, session_factory):
    session_id = await review_session()
    ids = await claim_ids(session_factory, session_id)

    claim = await service.review_claim(
        session_id, ids["50억원"], ClaimReviewRequest(verdict="rejected"), REVIEWER, META
    )

    assert claim.verdict == "contradicted"
    assert claim.risk_level == "high"
    async with session_factory() as db:
        stored = await SessionRepository(db).get_by_id(session_id)
    assert stored.contradicted_count == 2
    assert stored.risk_score == 1.0


@pytest.mark.asyncio
async def test_skipped_claim_keeps_its_verdict(service, review_session, session_factory):
    session_id = await review_session()
    ids = await claim_ids(session_factory, session_id)

    claim = await service.review_claim(
        session_id, ids["환불 기한은 30일"], ClaimReviewRequest(verdict="skipped"), REVIEWER, META
    )

    assert claim.human_verdict == "skipped"
    assert claim.verdict == "contradicted"
    assert claim.verification_level == "llm"


@pytest.mark.asyncio
async def test_review_input_errors(service, review_session, make_session, session_factory):
    session_id = await review_session()
    ids = await claim_ids(session_factory, session_id)

    with pytest.raises(InputValidationError):
        await service.review_claim(
            session_id, ids["50억원"], ClaimReviewRequest(verdict="modified", replacementText="  "), REVIEWER, META
        )

    other_session = await review_session()
    other_ids = await claim_ids(session_factory, other_session)
    with pytest.raises(ClaimNotFoundError):
        await service.review_claim(
            session_id, other_ids["50억원"], ClaimReviewRequest(verdict="approved"), REVIEWER, META
        )

    pending_session = await review_session(status="verifying")
    pending_ids = await claim_ids(session_factory, pending_session)
    with pytest.raises(StateTransitionError):
        await service.review_claim(
            pending_session, pending_ids["50억원"], ClaimReviewRequest(verdict="approved"), REVIEWER, META
        )

    with pytest.raises(SessionNotFoundError):
        await service.get_snapshot(uuid.uuid4(), REVIEWER, META)


@pytest.mark.asyncio
async def test_reject_requires_reason(service, review_session, session_factory, audit_logger):
    session_id = await review_session(status="reviewing")

    with pytest.raises(InputValidationError):
        await service.decide(session_id, SessionDecisionRequest(decision="reject"), REVIEWER, META)

    result = await service.decide(
        session_id, SessionDecisionRequest(decision="reject", reason="원문과 불일치"), REVIEWER, META
    )

    assert result.status == ValidationStatus.REJECTED
    assert result.pages == []
    async with session_factory() as db:
        stored = await SessionRepository(db).get_by_id(session_id)
    assert stored.review_note == "원문과 불일치"

    history = await audit_logger.history(session_id)
    assert history[0].action == "session_rejected"
    assert history[0].extra_metadata["reason"] == "원문과 불일치"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["verifying", "ready_for_review"])
async def test_decision_outside_reviewing_fails(service, review_session, session_factory, status):
    session_id = await review_session(status=status)

    with pytest.raises(StateTransitionError) as exc_info:
        await service.decide(session_id, SessionDecisionRequest(decision="approve"), REVIEWER, META)

    assert exc_info.value.current_status == status
    async with session_factory() as db:
        stored = await SessionRepository(db).get_by_id(session_id)
    assert stored.status == status


@pytest.mark.asyncio
@pytest.mark.parametrize("user_id", ["anonymous", "system"])
async def test_unattributed_actor_cannot_review_or_decide(
    service, review_session, session_factory, audit_logger, user_id
):
    session_id = await review_session(status="reviewing")
    ids = await claim_ids(session_factory, session_id)
    actor = Actor(user_id=user_id, role="reviewer")

    with pytest.raises(PermissionDeniedError):
        await service.decide(session_id, SessionDecisionRequest(decision="approve"), actor, META)
    with pytest.raises(PermissionDeniedError):
        await service.review_claim(session_id, ids["50억원"], ClaimReviewRequest(verdict="approved"), actor, META)

    async with session_factory() as db:
        stored = await SessionRepository(db).get_with_claims(session_id)
    assert stored.status == "reviewing"
    assert all(claim.human_verdict is None for claim in stored.claims)
    assert await actions(audit_logger, session_id) == []


@pytest.mark.asyncio
async def test_start_review_is_idempotent(service, review_session, audit_logger):
    session_id = await review_session()

    assert await service.start_review(session_id, REVIEWER, META) == ValidationStatus.REVIEWING
    assert await service.start_review(session_id, REVIEWER, META) == ValidationStatus.REVIEWING

    assert (await actions(audit_logger, session_id)).count("review_started") == 1


@pytest.mark.asyncio
async def test_masked_snapshot_is_audited(service, review_session, audit_logger):
    session_id = await review_session()

    snapshot = await service.get_snapshot(session_id, REVIEWER, META, masked=True)

    assert snapshot.masked is True
    assert snapshot.masking_count == 2
    assert "010-1234-5678" not in snapshot.original_text
    assert "010-1234-5678" not in snapshot.reconstructed_markdown

    history = await audit_logger.history(session_id)
    assert history[0].action == "masking_applied"
    assert history[0].extra_metadata == {"maskingCount": 2}
    assert history[1].action == "session_viewed"


@pytest.mark.asyncio
async def test_masked_snapshot_hides_pii_in_claims_and_spans(service, make_session, session_factory):
    phone = "010-1234-5678"
    claim_text = f"문의: {phone}"
    session_id = await make_session(
        original_text=ORIGINAL,
        status="ready_for_review",
        reconstructed_markdown=MARKDOWN,
        claims=[{"text": claim_text, "type": "contact", "location": _location(claim_text)}],
    )
    claim_id = (await claim_ids(session_factory, session_id))[claim_text]
    start = ORIGINAL.index(phone)
    async with session_factory() as db:
        await ClaimRepository(db).apply_verdict(
            claim_id,
            VerificationLevel.REGEX,
            span={
                "source_text": phone,
                "start_char": start,
                "end_char": start + len(phone),
                "match_score": 0.95,
                "match_method": "fuzzy",
            },
            verdict="supported",
            confidence=0.95,
            verification_detail=f"Matched {phone}",
        )

    masked = await service.get_snapshot(session_id, REVIEWER, META, masked=True)

    assert phone not in masked.model_dump_json()
    assert masked.masking_count == 5
    assert masked.claims[0].source_spans[0].start_char == start

    plain = await service.get_snapshot(session_id, REVIEWER, META)

    assert plain.masking_count == 0
    assert plain.claims[0].claim_text == claim_text
    assert plain.claims[0].source_spans[0].source_text == phone


@pytest.mark.asyncio
async def test_reveal_requires_privileged_role(service, review_session, audit_logger):
    session_id = await review_session()

    with pytest.raises(PermissionDeniedError):
        await service.reveal_original(session_id, REVIEWER, META)
    with pytest.raises(PermissionDeniedError):
        await service.reveal_original(session_id, Actor(user_id="anonymous"), META)

    assert await service.reveal_original(session_id, ADMIN, META) == ORIGINAL
    assert await actions(audit_logger, session_id) == ["masking_revealed"]


@pytest.mark.asyncio
async def test_markdown_edit_is_audited(service, review_session, session_factory, audit_logger):
    session_id = await review_session()

    await service.update_markdown(session_id, "# 새 문서", REVIEWER, META)

    async with session_factory() as db:
        stored = await SessionRepository(db).get_by_id(session_id)
    assert stored.reconstructed_markdown == "# 새 문서"

    entry = (await audit_logger.history(session_id))[0]
    assert entry.action == "markdown_edited"
    assert entry.previous_value == MARKDOWN
    assert entry.new_value == "# 새 문서"
    assert entry.extra_metadata == {"previousLength": len(MARKDOWN), "newLength": 6}


@pytest.mark.asyncio
async def test_markdown_edit_outside_review_fails(service, review_session):
    session_id = await review_session(status="analyzing")

    with pytest.raises(StateTransitionError):
        await service.update_markdown(session_id, "# 새 문서", REVIEWER, META)


@pytest.mark.asyncio
async def test_expire_sessions(service, make_session, session_factory, audit_logger):
    now = datetime.now(timezone.utc)
    past_ttl = await make_session(status="reviewing", expires_at=now - timedelta(minutes=1))
    fresh = await make_session(status="reviewing", expires_at=now + timedelta(days=1))
    approved = await make_session(status="approved", expires_at=now - timedelta(days=1))
    stuck = await make_session(status="analyzing", expires_at=now + timedelta(days=1))

    expired = await service.expire_sessions(now=now + timedelta(hours=2))

    assert expired == 2
    async with session_factory() as db:
        repo = SessionRepository(db)
        statuses = {sid: (await repo.get_by_id(sid)).status for sid in (past_ttl, fresh, approved, stuck)}
    assert statuses == {
        past_ttl: "expired",
        fresh: "reviewing",
        approved: "approved",
        stuck: "expired",
    }

    ttl_entry = (await audit_logger.history(past_ttl))[0]
    assert ttl_entry.action == "session_expired"
    assert ttl_entry.extra_metadata == {"reason": "ttl_elapsed"}
    assert (await audit_logger.history(stuck))[0].extra_metadata == {"reason": "pipeline_stale"}

    assert await service.expire_sessions(now=now + timedelta(hours=2)) == 0


def _claim(text, location=None, corrected=None, human_verdict="modified"):
    return SimpleNamespace(
        id=uuid.uuid4(),
        claim_text=text,
        reconstructed_location=location,
        corrected_text=corrected,
        human_verdict=human_verdict,
    )


def test_apply_corrections_uses_stored_location():
    markdown = "가격 100원\n할인가 100원"
    second = markdown.rindex("100원")
    claim = _claim("100원", {"startChar": second, "endChar": second + 4}, corrected="90원")

    corrected, count = apply_corrections(markdown, [claim])

    assert corrected == "가격 100원\n할인가 90원"
    assert count == 1


def test_apply_corrections_falls_back_to_first_occurrence():
    claim = _claim("100원", {"startChar": 0, "endChar": 4}, corrected="90원")

    corrected, count = apply_corrections("가격 100원", [claim])

    assert corrected == "가격 90원"
    assert count == 1


def test_apply_corrections_skips_unusable_edits():
    markdown = "환불 기한은 30일입니다."
    claims = [
        _claim("환불 기한은 30일", corrected="환불 기한은 7일"),
        _claim("기한은 30일", corrected="기한은 14일"),
        _claim("없는 문장", corrected="무엇"),
        _claim("환불", corrected="반품", human_verdict="approved"),
    ]

    corrected, count = apply_corrections(markdown, claims)

    assert corrected == "환불 기한은 7일입니다."
    assert count == 1
