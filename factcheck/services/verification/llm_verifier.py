"""Level 2 verification: semantic adjudication of claims regex left pending."""

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from factcheck.core.exceptions import APIClientError
from factcheck.core.unified_llm import GenerationContext, TextGenerator
from factcheck.repositories.claim_repository import ClaimRepository
from factcheck.schemas.outcomes import StageOutcome
from factcheck.schemas.validation import (
    LLMVerificationItem,
    MatchMethod,
    RiskLevel,
    SuspicionType,
    Verdict,
    VerificationLevel,
)
from factcheck.services.verification.truncation import TruncationLimits, truncate_with_warning
from factcheck.utils.json_parser import parse_model_list
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

VERIFICATION_SYSTEM_PROMPT = """
You are a meticulous fact checker. For each claim, decide whether the ORIGINAL
document supports it.

Verdicts:
- "supported": the original states the same fact
- "contradicted": the original states a different value or the opposite
- "not_found": the original does not mention it

suspicionType (optional): "added" (fact not in the original), "missing"
(qualifier from the original dropped), "moved" (fact attached to the wrong
context), "contradicted", or "none".

Quote the supporting or contradicting passage verbatim in sourceSpan.text.

Return only a JSON array with one object per claim:
[{"claimId": "...", "verdict": "supported", "confidence": 0.9,
  "suspicionType": "none",
  "sourceSpan": {"text": "...", "startChar": 0, "endChar": 10},
  "explanation": "..."}]
"""

VERIFICATION_MAX_OUTPUT_TOKENS = 4096
FAILSAFE_CONFIDENCE = 0.5
PARSE_FAILURE_EXPLANATION = "LLM verification result could not be parsed"
OMITTED_EXPLANATION = "Claim missing from LLM verification result"


@dataclass(frozen=True)
class ClaimVerification:
    claim_id: str
    verdict: Verdict
    confidence: float
    explanation: str
    suspicion_type: Optional[SuspicionType] = None
    span: Optional[Tuple[int, int]] = None

    @classmethod
    def failsafe(cls, claim_id: str, explanation: str = PARSE_FAILURE_EXPLANATION) -> "ClaimVerification":
        return cls(
            claim_id=claim_id,
            verdict=Verdict.NOT_FOUND,
            confidence=FAILSAFE_CONFIDENCE,
            explanation=explanation,
        )


def locate_snippet(original: str, snippet: str) -> Optional[Tuple[int, int]]:
    """Find a quoted snippet in the original: exact first, then whitespace-insensitive."""
    snippet = snippet.strip()
    if not snippet:
        return None

    index = original.find(snippet)
    if index != -1:
        return index, index + len(snippet)

    tokens = snippet.split()
    pattern = re.compile(r"\s+".join(re.escape(token) for token in tokens))
    match = pattern.search(original)
    if match:
        return match.start(), match.end()
    return None


def interpret_response(raw: str, claim_ids: Sequence[str], original: str) -> Tuple[List[ClaimVerification], bool]:
    """Turn one batch response into exactly one result per claim.

    Returns:
        (results in ``claim_ids`` order, whether the fail-safe was used for the whole batch)
    """
    try:
        items = parse_model_list(raw, LLMVerificationItem)
    except APIClientError as e:
        LOGGER.warning(f"[LLM_VERIFY] Unparseable response, applying fail-safe: {e}", extra={"preview": raw[:200]})
        return [ClaimVerification.failsafe(cid) for cid in claim_ids], True

    by_id: Dict[str, LLMVerificationItem] = {}
    for item in items:
        by_id.setdefault(item.claim_id, item)

    results: List[ClaimVerification] = []
    for claim_id in claim_ids:
        item = by_id.get(claim_id)
        if item is None:
            results.append(ClaimVerification.failsafe(claim_id, OMITTED_EXPLANATION))
            continue

        suspicion = item.suspicion_type
        if item.verdict == Verdict.CONTRADICTED and suspicion in (None, SuspicionType.NONE):
            suspicion = SuspicionType.CONTRADICTED

        span = locate_snippet(original, item.source_span.text) if item.source_span else None
        results.append(ClaimVerification(
            claim_id=claim_id,
            verdict=item.verdict,
            confidence=item.confidence,
            explanation=item.explanation,
            suspicion_type=suspicion,
            span=span,
        ))
    return results, False


def build_verification_prompt(original: str, claims: Sequence[Tuple[str, str]]) -> str:
    claim_list = json.dumps([{"id": cid, "text": text} for cid, text in claims], ensure_ascii=False, indent=2)
    return (
        f"## ORIGINAL\n{original}\n\n"
        f"## CLAIMS\n{claim_list}\n\n"
        "Verify every claim against the ORIGINAL."
    )


class LLMVerifier:
    """Verifies pending claims in concurrent batches.

    Generation runs concurrently under a semaphore; verdicts are written
    sequentially afterwards because the repository session is not shared
    across tasks.
    """

    def __init__(
        self,
        llm: TextGenerator,
        claim_repo: ClaimRepository,
        limits: TruncationLimits = TruncationLimits(),
        batch_size: int = 20,
        concurrency: int = 4,
        call_timeout: Optional[float] = None,
    ):
        self.llm = llm
        self.claim_repo = claim_repo
        self.limits = limits
        self.batch_size = batch_size
        self.concurrency = max(1, concurrency)
        self.call_timeout = call_timeout

    async def verify(self, claims: List, original_text: str, context: GenerationContext) -> StageOutcome[int]:
        """Adjudicate ``claims`` and persist every verdict at level llm.

        Returns:
            success or degraded (some batches fell back to not_found), with
            the number of verdicts written as payload
        """
        if not claims:
            return StageOutcome.success(0)

        truncation = truncate_with_warning(
            original_text,
            self.limits.claim_verification,
            context="claim_verification",
        )
        semaphore = asyncio.Semaphore(self.concurrency)
        batches = [claims[i:i + self.batch_size] for i in range(0, len(claims), self.batch_size)]

        async def run_batch(batch: List) -> Tuple[List[ClaimVerification], bool]:
            pairs = [(str(claim.id), claim.claim_text) for claim in batch]
            claim_ids = [cid for cid, _ in pairs]
            async with semaphore:
                try:
                    raw = await self.llm.generate(
                        build_verification_prompt(truncation.text, pairs),
                        system_instruction=VERIFICATION_SYSTEM_PROMPT,
                        context=context,
                        max_output_tokens=VERIFICATION_MAX_OUTPUT_TOKENS,
                        timeout=self.call_timeout,
                    )
                except APIClientError as e:
                    LOGGER.warning(
                        f"[LLM_VERIFY] Batch call failed, applying fail-safe: {e}",
                        extra=context.as_log_extra()
                    )
                    return [ClaimVerification.failsafe(cid) for cid in claim_ids], True
            return interpret_response(raw, claim_ids, original_text)

        batch_results = await asyncio.gather(*(run_batch(batch) for batch in batches))

        claims_by_id = {str(claim.id): claim for claim in claims}
        written = 0
        failed_batches = 0
        for results, used_failsafe in batch_results:
            failed_batches += int(used_failsafe)
            for result in results:
                if await self._persist(claims_by_id[result.claim_id], result, original_text):
                    written += 1

        LOGGER.info(
            f"[LLM_VERIFY] {written}/{len(claims)} verdicts written from {len(batches)} batches "
            f"({failed_batches} fail-safe)",
            extra=context.as_log_extra()
        )

        reasons = []
        if truncation.was_truncated:
            reasons.append(f"verification context truncated ({truncation.lost_percentage}% of original not visible)")
        if failed_batches:
            reasons.append(f"{failed_batches} of {len(batches)} verification batches defaulted to not_found")
        if reasons:
            return StageOutcome.degraded("; ".join(reasons), payload=written)
        return StageOutcome.success(written)

    async def _persist(self, claim, result: ClaimVerification, original_text: str) -> bool:
        values = {
            "verdict": result.verdict.value,
            "confidence": result.confidence,
            "verification_detail": result.explanation,
            "suspicion_type": result.suspicion_type.value if result.suspicion_type else None,
        }
        if result.verdict == Verdict.CONTRADICTED:
            values["risk_level"] = RiskLevel.HIGH.value

        span = None
        if result.span:
            start, end = result.span
            span = {
                "source_text": original_text[start:end],
                "start_char": start,
                "end_char": end,
                "match_score": result.confidence,
                "match_method": MatchMethod.SEMANTIC.value,
            }

        return await self.claim_repo.apply_verdict(claim.id, VerificationLevel.LLM, span=span, **values)
