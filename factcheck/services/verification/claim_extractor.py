"""Stage 2: extract verifiable claims from the reconstructed markdown.

Two extraction branches always run side by side:

1. a deterministic line scan for structured facts (amounts, counts,
   percentages, phone numbers, emails, dates);
2. a generative pass for free-text assertions the patterns cannot see.

Results are merged, deduplicated on (text, start offset) and assigned a
type-based risk level.
"""

import asyncio
import re
from typing import Dict, List, Optional, Pattern, Tuple

from factcheck.core.exceptions import APIClientError, ClaimExtractionError
from factcheck.core.unified_llm import GenerationContext, TextGenerator
from factcheck.schemas.outcomes import StageOutcome
from factcheck.schemas.validation import (
    DEFAULT_LOCATION,
    ClaimType,
    ExtractedClaim,
    LLMClaimItem,
    ReconstructedLocation,
    RiskLevel,
)
from factcheck.services.verification.truncation import TruncationLimits, truncate_with_warning
from factcheck.utils.json_parser import parse_model_list
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

CLAIM_EXTRACTION_SYSTEM_PROMPT = """
You extract verifiable factual claims from a markdown document.

A claim is a single statement that could be checked against the source
document, for example a policy ("Refunds are accepted within 7 days"), a
responsibility ("The marketing lead is Hong Gil-dong"), a list of offered
items, or a row of a table.

Rules:
- Copy each claim text verbatim from the markdown; do not paraphrase.
- Keep claims short: one fact per claim.
- Skip headings, navigation text and opinions.
- "type" is one of: numeric, contact, date, text, list, table.
- "lineNumber" is the 1-based line of the markdown where the claim appears.

Return only a JSON array:
[{"text": "...", "type": "text", "lineNumber": 12}]
"""

CLAIM_EXTRACTION_MAX_OUTPUT_TOKENS = 8192
HINT_SEARCH_RADIUS = 5

RISK_BY_TYPE: Dict[ClaimType, RiskLevel] = {
    ClaimType.CONTACT: RiskLevel.HIGH,
    ClaimType.NUMERIC: RiskLevel.HIGH,
    ClaimType.DATE: RiskLevel.MEDIUM,
    ClaimType.TABLE: RiskLevel.MEDIUM,
    ClaimType.LIST: RiskLevel.MEDIUM,
    ClaimType.TEXT: RiskLevel.LOW,
}


def risk_for_type(claim_type: ClaimType) -> RiskLevel:
    return RISK_BY_TYPE.get(claim_type, RiskLevel.LOW)


def find_text_location(markdown: str, text: str, hint_line: Optional[int] = None) -> ReconstructedLocation:
    """Locate ``text`` in the markdown.

    Searches the lines within ``HINT_SEARCH_RADIUS`` of the hinted line first,
    then the whole document. Unlocatable text gets ``DEFAULT_LOCATION``.
    """
    lines = markdown.split("\n")

    if hint_line and 0 < hint_line <= len(lines):
        first = max(0, hint_line - HINT_SEARCH_RADIUS - 1)
        last = min(len(lines), hint_line + HINT_SEARCH_RADIUS)
        for i in range(first, last):
            column = lines[i].find(text)
            if column != -1:
                start_char = sum(len(line) + 1 for line in lines[:i]) + column
                return ReconstructedLocation(
                    start_line=i + 1,
                    end_line=i + 1,
                    start_char=start_char,
                    end_char=start_char + len(text),
                )

    index = markdown.find(text)
    if index != -1:
        start_line = markdown.count("\n", 0, index) + 1
        end_line = start_line + text.count("\n")
        return ReconstructedLocation(
            start_line=start_line,
            end_line=end_line,
            start_char=index,
            end_char=index + len(text),
        )

    return DEFAULT_LOCATION


class ClaimExtractor:
    """Extracts claims from markdown with patterns and a generation pass."""

    NUMERIC_PATTERNS: List[Pattern] = [
        re.compile(r"(\d{1,3}(,\d{3})*)\s*(원|만원|억원)", re.ASCII),
        re.compile(r"(\d+)\s*(개|명|건|회|%)", re.ASCII),
        re.compile(r"(\d+\.?\d*)\s*%", re.ASCII),
    ]

    CONTACT_PATTERNS: List[Pattern] = [
        re.compile(r"0\d{1,2}[-.\s]?\d{3,4}[-.\s]?\d{4}", re.ASCII),
        re.compile(r"[\w.-]+@[\w.-]+\.\w+", re.ASCII),
    ]

    DATE_PATTERNS: List[Pattern] = [
        re.compile(r"\d{4}[-./]\d{1,2}[-./]\d{1,2}", re.ASCII),
        re.compile(r"\d{1,2}월\s*\d{1,2}일", re.ASCII),
        re.compile(r"\d{4}년\s*\d{1,2}월", re.ASCII),
    ]

    def __init__(
        self,
        llm: TextGenerator,
        limits: TruncationLimits = TruncationLimits(),
        call_timeout: Optional[float] = None,
    ):
        self.llm = llm
        self.limits = limits
        self.call_timeout = call_timeout
        self._patterns: List[Tuple[Pattern, ClaimType]] = (
            [(p, ClaimType.NUMERIC) for p in self.NUMERIC_PATTERNS]
            + [(p, ClaimType.CONTACT) for p in self.CONTACT_PATTERNS]
            + [(p, ClaimType.DATE) for p in self.DATE_PATTERNS]
        )

    async def extract(self, markdown: str, context: GenerationContext) -> StageOutcome[List[ExtractedClaim]]:
        """Run both branches concurrently and merge their claims.

        Returns:
            success with the merged claims, or degraded with the
            deterministic claims only when the generative branch failed

        Raises:
            ClaimExtractionError: If the deterministic scan itself fails
        """
        deterministic, generative = await asyncio.gather(
            asyncio.to_thread(self.extract_deterministic, markdown),
            self._extract_generative(markdown, context),
            return_exceptions=True,
        )

        if isinstance(deterministic, BaseException):
            raise ClaimExtractionError(f"Pattern extraction failed: {deterministic}", original_error=deterministic)

        reason = None
        if isinstance(generative, BaseException):
            if not isinstance(generative, APIClientError):
                raise ClaimExtractionError(f"Generative extraction failed: {generative}", original_error=generative)
            LOGGER.warning(
                f"[EXTRACT] Generative branch failed, keeping pattern claims only: {generative}",
                extra=context.as_log_extra()
            )
            reason = f"generative claim extraction failed: {generative}"
            generative = []

        merged = self.merge(deterministic, generative)
        LOGGER.info(
            f"[EXTRACT] {len(merged)} claims ({len(deterministic)} pattern, {len(generative)} generative)",
            extra=context.as_log_extra()
        )

        if reason:
            return StageOutcome.degraded(reason, payload=merged)
        return StageOutcome.success(merged)

    def extract_deterministic(self, markdown: str) -> List[ExtractedClaim]:
        """Line-by-line pattern scan; offsets are absolute in the markdown."""
        claims: List[ExtractedClaim] = []
        char_offset = 0

        for line_index, line in enumerate(markdown.split("\n")):
            for pattern, claim_type in self._patterns:
                for match in pattern.finditer(line):
                    claims.append(ExtractedClaim(
                        text=match.group(0),
                        claim_type=claim_type,
                        location=ReconstructedLocation(
                            start_line=line_index + 1,
                            end_line=line_index + 1,
                            start_char=char_offset + match.start(),
                            end_char=char_offset + match.end(),
                        ),
                        risk_level=risk_for_type(claim_type),
                    ))
            char_offset += len(line) + 1

        return claims

    async def _extract_generative(self, markdown: str, context: GenerationContext) -> List[ExtractedClaim]:
        truncation = truncate_with_warning(
            markdown,
            self.limits.claim_extraction,
            context="claim_extraction",
            truncation_message="\n\n[문서가 길어 일부만 분석합니다...]",
        )
        raw = await self.llm.generate(
            f"Extract the verifiable claims from this markdown document:\n\n{truncation.text}",
            system_instruction=CLAIM_EXTRACTION_SYSTEM_PROMPT,
            context=context,
            max_output_tokens=CLAIM_EXTRACTION_MAX_OUTPUT_TOKENS,
            timeout=self.call_timeout,
        )
        items = parse_model_list(raw, LLMClaimItem)

        return [
            ExtractedClaim(
                text=item.text,
                claim_type=item.type,
                location=find_text_location(markdown, item.text, item.line_number),
                risk_level=risk_for_type(item.type),
            )
            for item in items
        ]

    @staticmethod
    def merge(*branches: List[ExtractedClaim]) -> List[ExtractedClaim]:
        """Concatenate branches in order, dropping repeats of (text, start_char)."""
        seen = set()
        merged: List[ExtractedClaim] = []
        for branch in branches:
            for claim in branch:
                key = (claim.text, claim.location.start_char)
                if key in seen:
                    continue
                seen.add(key)
                merged.append(claim)
        return merged
