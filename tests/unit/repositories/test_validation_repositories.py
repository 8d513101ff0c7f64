import pytest

from factcheck.repositories.claim_repository import ClaimRepository
from factcheck.repositories.session_repository import SessionRepository
from factcheck.schemas.validation import ValidationStatus, VerificationLevel


@pytest.mark.asyncio
async def test_lower_level_cannot_overwrite_human_verdict(make_session, session_factory):
    session_id = await make_session(claims=[{"text": "주장", "verdict": "pending"}])

    async with session_factory() as db:
        repo = ClaimRepository(db)
        claim = (await repo.get_by_session(session_id))[0]

        assert await repo.apply_verdict(claim.id, VerificationLevel.HUMAN, verdict="supported") is True
        assert await repo.apply_verdict(
            claim.id,
            VerificationLevel.LLM,
            span={
                "source_text": "주장",
                "start_char": 0,
                "end_char": 2,
                "match_score": 0.9,
                "match_method": "semantic",
            },
            verdict="contradicted",
        ) is False
        assert await repo.apply_verdict(claim.id, VerificationLevel.REGEX, verdict="contradicted") is False

    async with session_factory() as db:
        session = await SessionRepository(db).get_with_claims(session_id)
    stored = session.claims[0]
    assert stored.verdict == "supported"
    assert stored.verification_level == "human"
    assert stored.source_spans == []


@pytest.mark.asyncio
async def test_equal_or_higher_level_may_overwrite(make_session, session_factory):
    session_id = await make_session(claims=[{"text": "주장", "verdict": "supported", "verification_level": "regex"}])

    async with session_factory() as db:
        repo = ClaimRepository(db)
        claim = (await repo.get_by_session(session_id))[0]
        assert await repo.apply_verdict(claim.id, VerificationLevel.REGEX, verdict="supported") is True
        assert await repo.apply_verdict(claim.id, VerificationLevel.LLM, verdict="not_found") is True
        stored = await repo.get_in_session(session_id, claim.id)

    assert stored.verdict == "not_found"
    assert stored.verification_level == "llm"


@pytest.mark.asyncio
async def test_transition_applies_once(make_session, session_factory):
    session_id = await make_session(status="reviewing")

    async with session_factory() as db:
        repo = SessionRepository(db)
        first = await repo.transition_status(session_id, ValidationStatus.APPROVED, review_note="ok")
        second = await repo.transition_status(session_id, ValidationStatus.REJECTED, review_note="late")
        stored = await repo.get_by_id(session_id)

    assert (first, second) == (True, False)
    assert stored.status == "approved"
    assert stored.review_note == "ok"


@pytest.mark.asyncio
async def test_illegal_transition_is_not_applied(make_session, session_factory):
    session_id = await make_session(status="pending")

    async with session_factory() as db:
        repo = SessionRepository(db)
        assert await repo.transition_status(session_id, ValidationStatus.READY_FOR_REVIEW) is False
        assert (await repo.get_by_id(session_id)).status == "pending"


@pytest.mark.asyncio
async def test_escalate_contradicted_is_idempotent(make_session, session_factory):
    session_id = await make_session(claims=[
        {"text": "a", "verdict": "contradicted", "risk_level": "low"},
        {"text": "b", "verdict": "supported", "risk_level": "low"},
    ])

    async with session_factory() as db:
        repo = ClaimRepository(db)
        assert await repo.escalate_contradicted(session_id) == 1
        assert await repo.escalate_contradicted(session_id) == 0
        levels = [claim.risk_level for claim in await repo.get_by_session(session_id)]

    assert levels == ["high", "low"]


@pytest.mark.asyncio
async def test_append_note_keeps_order(make_session, session_factory):
    session_id = await make_session()

    async with session_factory() as db:
        repo = SessionRepository(db)
        await repo.append_note(session_id, "first")
        await repo.append_note(session_id, "second")
        stored = await repo.get_by_id(session_id)

    assert stored.pipeline_notes == ["first", "second"]
