import json

import pytest

from factcheck.core.exceptions import APIClientError
from factcheck.core.unified_llm import GenerationContext
from factcheck.schemas.outcomes import StageStatus
from factcheck.services.verification.markdown_reconstructor import (
    MARKDOWN_SYSTEM_PROMPT,
    STRUCTURE_SYSTEM_PROMPT,
    MarkdownReconstructor,
)
from factcheck.services.verification.truncation import TruncationLimits

ORIGINAL = "회사 소개\n직원 수는 120명입니다.\n문의: 02-1234-5678"
MARKDOWN = "# 회사 소개\n\n직원 수는 120명입니다.\n\n## 문의\n\n02-1234-5678"
STRUCTURE = {
    "title": "회사 소개",
    "sections": [
        {"id": "intro", "title": "회사 소개", "level": 1, "startLine": 1, "endLine": 4},
        {"id": "contact", "title": "문의", "level": 2, "startLine": 5, "endLine": 7},
    ],
}
CONTEXT = GenerationContext(tenant_id="tenant-1", session_id="s-1", stage="reconstruction")


def _responder(markdown=MARKDOWN, structure=STRUCTURE):
    async def generate(prompt, *, system_instruction=None, **kwargs):
        if system_instruction == MARKDOWN_SYSTEM_PROMPT:
            if isinstance(markdown, Exception):
                raise markdown
            return markdown
        if system_instruction == STRUCTURE_SYSTEM_PROMPT:
            if isinstance(structure, Exception):
                raise structure
            return structure if isinstance(structure, str) else json.dumps(structure, ensure_ascii=False)
        raise AssertionError(f"unexpected prompt: {system_instruction!r}")

    return generate


@pytest.mark.asyncio
async def test_reconstruct_returns_markdown_and_structure(mock_llm):
    mock_llm.generate.side_effect = _responder(markdown=f"```markdown\n{MARKDOWN}\n```")

    outcome = await MarkdownReconstructor(mock_llm).reconstruct(ORIGINAL, CONTEXT)

    assert outcome.status == StageStatus.SUCCESS
    result = outcome.payload
    assert result.markdown == MARKDOWN
    assert [node.id for node in result.structure.nodes] == ["intro", "contact"]
    assert result.truncation.was_truncated is False
    assert mock_llm.generate.await_count == 2


@pytest.mark.asyncio
async def test_markdown_failure_falls_back_to_original(mock_llm):
    mock_llm.generate.side_effect = _responder(markdown=APIClientError("quota exceeded"))

    outcome = await MarkdownReconstructor(mock_llm).reconstruct(ORIGINAL, CONTEXT)

    assert outcome.status == StageStatus.DEGRADED
    assert outcome.payload.markdown == ORIGINAL
    assert "markdown generation failed" in outcome.reason


@pytest.mark.asyncio
async def test_empty_markdown_counts_as_failure(mock_llm):
    mock_llm.generate.side_effect = _responder(markdown="```\n```")

    outcome = await MarkdownReconstructor(mock_llm).reconstruct(ORIGINAL, CONTEXT)

    assert outcome.status == StageStatus.DEGRADED
    assert outcome.payload.markdown == ORIGINAL


@pytest.mark.asyncio
async def test_structure_failure_leaves_structure_empty(mock_llm):
    mock_llm.generate.side_effect = _responder(structure="The document has two sections.")

    outcome = await MarkdownReconstructor(mock_llm).reconstruct(ORIGINAL, CONTEXT)

    assert outcome.status == StageStatus.DEGRADED
    assert outcome.payload.markdown == MARKDOWN
    assert outcome.payload.structure is None
    assert "structure analysis failed" in outcome.reason


@pytest.mark.asyncio
async def test_oversized_input_is_reported(mock_llm):
    mock_llm.generate.side_effect = _responder()
    limits = TruncationLimits(markdown_reconstruction=10)

    outcome = await MarkdownReconstructor(mock_llm, limits=limits).reconstruct(ORIGINAL, CONTEXT)

    assert outcome.status == StageStatus.DEGRADED
    assert outcome.payload.truncation.was_truncated is True
    assert outcome.payload.truncation.processed_length == 10
    assert "reconstruction input truncated" in outcome.reason
