import json
from unittest.mock import AsyncMock

import pytest

from factcheck.core.exceptions import PipelineError, VerificationError
from factcheck.repositories.session_repository import SessionRepository
from factcheck.schemas.validation import ValidationStatus
from factcheck.schemas.outcomes import StageOutcome
from factcheck.services.validation_pipeline import (
    STAGE_EXTRACT,
    STAGE_RECONSTRUCT,
    STAGE_VERIFY_LLM,
    STAGE_VERIFY_REGEX,
    TOTAL_STEPS,
    ValidationPipeline,
)
from factcheck.services.verification.claim_extractor import CLAIM_EXTRACTION_SYSTEM_PROMPT
from factcheck.services.verification.llm_verifier import VERIFICATION_SYSTEM_PROMPT
from factcheck.services.verification.markdown_reconstructor import MARKDOWN_SYSTEM_PROMPT, STRUCTURE_SYSTEM_PROMPT

ORIGINAL = (
    "회사 소개\n"
    "연 매출 50억원을 기록했습니다. 직원 수는 120명입니다.\n"
    "문의: 02-1234-5678\n"
    "환불은 7일 이내 가능합니다."
)
MARKDOWN = (
    "# 회사 소개\n"
    "\n"
    "연 매출 50억원을 기록했습니다. 직원 수는 120명입니다.\n"
    "\n"
    "## 고객 지원\n"
    "\n"
    "문의: 02-1234-5678\n"
    "\n"
    "환불 기한은 30일입니다."
)
STRUCTURE = {
    "title": "회사 소개",
    "sections": [
        {"id": "intro", "title": "회사 소개", "level": 1, "startLine": 1, "endLine": 4},
        {"id": "support", "title": "고객 지원", "level": 2, "startLine": 5, "endLine": 9},
    ],
}
EXTRACTED = [{"text": "환불 기한은 30일", "type": "text", "lineNumber": 9}]


def fake_generator(verification="auto"):
    """Answers each prompt kind the way a well-behaved model would."""

    async def generate(prompt, *, system_instruction=None, **kwargs):
        if system_instruction == MARKDOWN_SYSTEM_PROMPT:
            return MARKDOWN
        if system_instruction == STRUCTURE_SYSTEM_PROMPT:
            return json.dumps(STRUCTURE, ensure_ascii=False)
        if system_instruction == CLAIM_EXTRACTION_SYSTEM_PROMPT:
            return json.dumps(EXTRACTED, ensure_ascii=False)
        if system_instruction == VERIFICATION_SYSTEM_PROMPT:
            if verification != "auto":
                return verification
            claims = json.loads(prompt.split("## CLAIMS\n", 1)[1].split("\n\nVerify", 1)[0])
            return json.dumps([
                {
                    "claimId": claim["id"],
                    "verdict": "contradicted" if "환불" in claim["text"] else "supported",
                    "confidence": 0.9,
                    "sourceSpan": {"text": "환불은 7일 이내 가능합니다."},
                    "explanation": "원문은 7일 이내",
                }
                for claim in claims
            ], ensure_ascii=False)
        raise AssertionError(f"unexpected prompt: {system_instruction!r}")

    return generate


async def run_pipeline(session_factory, llm, audit_logger, session_id):
    async with session_factory() as db:
        return await ValidationPipeline(db, llm, audit_logger).run(session_id)


async def load(session_factory, session_id):
    async with session_factory() as db:
        return await SessionRepository(db).get_with_claims(session_id)


@pytest.mark.asyncio
async def test_pipeline_brings_session_to_review(make_session, session_factory, audit_logger, mock_llm):
    mock_llm.generate.side_effect = fake_generator()
    session_id = await make_session(original_text=ORIGINAL)

    status = await run_pipeline(session_factory, mock_llm, audit_logger, session_id)

    assert status == ValidationStatus.READY_FOR_REVIEW
    session = await load(session_factory, session_id)
    assert session.status == "ready_for_review"
    assert session.reconstructed_markdown == MARKDOWN
    assert [node["id"] for node in session.structure_json["nodes"]] == ["intro", "support"]
    assert session.truncation_json["was_truncated"] is False
    assert session.completed_steps == TOTAL_STEPS
    assert session.pipeline_notes == []

    claims = {claim.claim_text: claim for claim in session.claims}
    assert set(claims) == {"50억원", "120명", "02-1234-5678", "환불 기한은 30일"}

    for text in ("50억원", "120명"):
        assert claims[text].claim_type == "numeric"
        assert claims[text].risk_level == "high"
        assert claims[text].verdict == "supported"
        assert claims[text].verification_level == "regex"
        assert claims[text].source_spans[0].match_method == "fuzzy"

    contact = claims["02-1234-5678"]
    assert contact.claim_type == "contact"
    assert contact.confidence == 1.0
    assert contact.source_spans[0].match_method == "exact"

    refund = claims["환불 기한은 30일"]
    assert refund.verdict == "contradicted"
    assert refund.verification_level == "llm"
    assert refund.risk_level == "high"
    assert refund.reconstructed_location["startLine"] == 9

    assert session.total_claims == 4
    assert session.contradicted_count == 1
    assert session.high_risk_count == 3
    assert session.risk_score == 0.625


@pytest.mark.asyncio
async def test_verification_fail_safe_is_noted(make_session, session_factory, audit_logger, mock_llm):
    mock_llm.generate.side_effect = fake_generator(verification="I am not sure about these.")
    session_id = await make_session(original_text=ORIGINAL)

    status = await run_pipeline(session_factory, mock_llm, audit_logger, session_id)

    assert status == ValidationStatus.READY_FOR_REVIEW
    session = await load(session_factory, session_id)
    refund = next(c for c in session.claims if c.claim_text == "환불 기한은 30일")
    assert refund.verdict == "not_found"
    assert refund.confidence == 0.5
    assert session.not_found_count == 1
    assert len(session.pipeline_notes) == 1
    assert session.pipeline_notes[0].startswith("verify_llm: ")


@pytest.mark.asyncio
async def test_unexpected_error_marks_session_failed(make_session, session_factory, audit_logger, mock_llm):
    mock_llm.generate.side_effect = RuntimeError("model crashed")
    session_id = await make_session(original_text=ORIGINAL)

    status = await run_pipeline(session_factory, mock_llm, audit_logger, session_id)

    assert status == ValidationStatus.FAILED
    session = await load(session_factory, session_id)
    assert session.status == "failed"
    assert session.failure_reason.startswith("reconstruct: ")
    assert "model crashed" in session.failure_reason

    history = await audit_logger.history(session_id)
    assert history[0].action == "session_failed"
    assert history[0].user_id == "system"


@pytest.mark.asyncio
async def test_stage_can_be_retried(make_session, session_factory, audit_logger, mock_llm):
    mock_llm.generate.side_effect = fake_generator()
    session_id = await make_session(original_text=ORIGINAL)

    async with session_factory() as db:
        pipeline = ValidationPipeline(db, mock_llm, audit_logger)
        await pipeline.run_stage(session_id, STAGE_RECONSTRUCT)
        await pipeline.run_stage(session_id, STAGE_RECONSTRUCT)

    session = await load(session_factory, session_id)
    assert session.status == "analyzing"
    assert session.reconstructed_markdown == MARKDOWN


@pytest.mark.asyncio
async def test_unknown_stage_is_rejected(db_session, audit_logger, mock_llm, make_session):
    session_id = await make_session(original_text=ORIGINAL)

    with pytest.raises(PipelineError):
        await ValidationPipeline(db_session, mock_llm, audit_logger).run_stage(session_id, "translate")


@pytest.mark.asyncio
async def test_terminal_session_is_not_reprocessed(make_session, session_factory, audit_logger, mock_llm):
    mock_llm.generate.side_effect = fake_generator()
    session_id = await make_session(original_text=ORIGINAL, status="approved")

    status = await run_pipeline(session_factory, mock_llm, audit_logger, session_id)

    assert status == ValidationStatus.APPROVED
    mock_llm.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_claims_left_pending_fail_llm_stage(make_session, session_factory, audit_logger, mock_llm):
    mock_llm.generate.side_effect = fake_generator()
    session_id = await make_session(original_text=ORIGINAL)

    async with session_factory() as db:
        pipeline = ValidationPipeline(db, mock_llm, audit_logger)
        for stage in (STAGE_RECONSTRUCT, STAGE_EXTRACT, STAGE_VERIFY_REGEX):
            await pipeline.run_stage(session_id, stage)
        pipeline.llm_verifier.verify = AsyncMock(return_value=StageOutcome.success())

        with pytest.raises(VerificationError, match="1 claims left without a verdict"):
            await pipeline.run_stage(session_id, STAGE_VERIFY_LLM)

    session = await load(session_factory, session_id)
    assert session.status == "verifying"
