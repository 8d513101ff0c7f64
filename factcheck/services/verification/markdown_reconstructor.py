"""Stage 1: rebuild the original text as clean markdown plus a section arena."""

from dataclasses import dataclass
from typing import List, Optional

from factcheck.core.exceptions import APIClientError, LLMOutputError
from factcheck.core.unified_llm import GenerationContext, TextGenerator
from factcheck.schemas.outcomes import StageOutcome
from factcheck.schemas.validation import DocumentStructure, StructureResponse
from factcheck.services.verification.section_tree import build_structure
from factcheck.services.verification.truncation import TruncationLimits, TruncationResult, truncate_with_warning
from factcheck.utils.json_parser import parse_model_object, strip_code_fences
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

MARKDOWN_SYSTEM_PROMPT = """
You are a document clean-up specialist. Rewrite the given source text as clean,
well-structured markdown.

## Preserve every fact exactly
- Numbers: amounts, quantities, percentages
- Contacts: phone numbers, emails, addresses
- Dates: years, months, days
- Proper nouns: company, product and person names

## Structure
- Use ## headers to separate sections
- Use - or 1. for lists
- Use markdown tables for tabular data

## Remove noise
- Page numbers, repeated headers and footers
- Meaningless whitespace, broken characters, watermarks and ads

## Hard rules
- Never omit content. Never shorten with "(omitted)", "..." or similar.
- Convert the whole document; every fact in the source must appear in the result.
- Keep the source language.

Return only the markdown, without explanations or code fences.
"""

STRUCTURE_SYSTEM_PROMPT = """
You are a document structure analyst. Analyse the given markdown and return its
section structure as JSON.

Line numbers are 1-based and refer to the markdown exactly as given.

Output format:
{
  "title": "Document title",
  "sections": [
    {
      "id": "section-1",
      "title": "Section title",
      "level": 2,
      "startLine": 1,
      "endLine": 10,
      "children": []
    }
  ]
}

Return only the JSON object.
"""

MARKDOWN_MAX_OUTPUT_TOKENS = 65536
STRUCTURE_MAX_OUTPUT_TOKENS = 8192


@dataclass
class ReconstructionResult:
    markdown: str
    structure: Optional[DocumentStructure]
    truncation: TruncationResult


class MarkdownReconstructor:
    """Turns original text into markdown and a section structure.

    Two generation calls: markdown first, then structure over that markdown.
    A failed markdown call falls back to the (truncated) original text; a
    failed structure call leaves the structure empty. Both are reported as a
    degraded outcome, never raised.
    """

    def __init__(
        self,
        llm: TextGenerator,
        limits: TruncationLimits = TruncationLimits(),
        call_timeout: Optional[float] = None,
    ):
        self.llm = llm
        self.limits = limits
        self.call_timeout = call_timeout

    async def reconstruct(self, original_text: str, context: GenerationContext) -> StageOutcome[ReconstructionResult]:
        """Run both generation calls over ``original_text``.

        Args:
            original_text: Source text of the session
            context: Generation context for the calls

        Returns:
            success, or degraded with the reasons and a usable result
        """
        reasons: List[str] = []

        truncation = truncate_with_warning(
            original_text,
            self.limits.markdown_reconstruction,
            context="markdown_reconstruction",
        )
        if truncation.was_truncated:
            reasons.append(
                f"reconstruction input truncated: {truncation.lost_length} chars "
                f"({truncation.lost_percentage}%) not processed"
            )

        try:
            markdown = await self._generate_markdown(truncation.text, context)
        except APIClientError as e:
            LOGGER.warning(
                f"[RECONSTRUCT] Markdown generation failed, using original text: {e}",
                extra=context.as_log_extra()
            )
            markdown = original_text[:truncation.processed_length]
            reasons.append(f"markdown generation failed, original text used: {e}")

        try:
            structure = await self._generate_structure(markdown, context)
        except APIClientError as e:
            LOGGER.warning(
                f"[RECONSTRUCT] Structure analysis failed: {e}",
                extra=context.as_log_extra()
            )
            structure = None
            reasons.append(f"structure analysis failed: {e}")

        result = ReconstructionResult(markdown=markdown, structure=structure, truncation=truncation)
        LOGGER.info(
            f"[RECONSTRUCT] markdown={len(markdown)} chars, "
            f"sections={len(structure.nodes) if structure else 0}",
            extra=context.as_log_extra()
        )

        if reasons:
            return StageOutcome.degraded("; ".join(reasons), payload=result)
        return StageOutcome.success(result)

    async def _generate_markdown(self, text: str, context: GenerationContext) -> str:
        raw = await self.llm.generate(
            f"Rewrite the following source text as clean markdown. Do not omit anything:\n\n{text}",
            system_instruction=MARKDOWN_SYSTEM_PROMPT,
            context=context,
            max_output_tokens=MARKDOWN_MAX_OUTPUT_TOKENS,
            timeout=self.call_timeout,
        )
        markdown = strip_code_fences(raw)
        if not markdown:
            raise LLMOutputError("empty markdown response")
        return markdown

    async def _generate_structure(self, markdown: str, context: GenerationContext) -> Optional[DocumentStructure]:
        truncation = truncate_with_warning(
            markdown,
            self.limits.structure_analysis,
            context="structure_analysis",
        )
        raw = await self.llm.generate(
            f"Analyse the structure of the following markdown document:\n\n{truncation.text}",
            system_instruction=STRUCTURE_SYSTEM_PROMPT,
            context=context,
            max_output_tokens=STRUCTURE_MAX_OUTPUT_TOKENS,
            timeout=self.call_timeout,
        )
        response = parse_model_object(raw, StructureResponse)
        return build_structure(response, markdown)
