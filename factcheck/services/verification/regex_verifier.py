"""Level 1 verification: deterministic matching against the original text.

Tiers, first match wins:

1. exact occurrence of the claim text on token boundaries (score 1.0)
2. numeric claims: number tokens compared with magnitude and unit kept (0.95)
3. contact claims: phones compared digits-only, emails case-insensitively (0.95)
4. windowed approximate match scored with ``difflib.SequenceMatcher`` (not
   used for numeric claims)

Unmatched claims stay pending for the LLM verifier.
"""

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Pattern

from factcheck.repositories.claim_repository import ClaimRepository
from factcheck.schemas.validation import ClaimType, MatchMethod, Verdict, VerificationLevel
from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

NORMALIZED_MATCH_SCORE = 0.95
MIN_WINDOW_STRIDE = 10

NUMBER_PATTERN = re.compile(r"\d+(?:,\d{3})*(?:\.\d+)?\s*(?:만원|억원|만|억|원|개|명|건|회|%)?", re.ASCII)
# Only separators and the currency unit are noise; 만/억 and count units stay in the key
_NUMERIC_NOISE = re.compile(r"[,\s]|원")
PHONE_PATTERN = re.compile(r"0\d{1,2}[-.\s]?\d{3,4}[-.\s]?\d{4}", re.ASCII)
EMAIL_PATTERN = re.compile(r"[\w.-]+@[\w.-]+\.\w+", re.ASCII | re.IGNORECASE)
_PHONE_SEPARATORS = re.compile(r"[-.\s]")


@dataclass(frozen=True)
class SpanMatch:
    """Evidence located in the original text."""

    text: str
    start_char: int
    end_char: int
    score: float
    method: MatchMethod

    @property
    def detail(self) -> str:
        if self.method == MatchMethod.EXACT:
            return "Exact match found in original text"
        return f"Similar value found in original text (similarity {round(self.score * 100)}%)"


def normalize_numeric(text: str) -> str:
    return _NUMERIC_NOISE.sub("", text)


def normalize_contact(text: str) -> str:
    stripped = _PHONE_SEPARATORS.sub("", text)
    if stripped[:1].isdigit():
        return stripped
    return text.lower().strip()


def _on_boundary(text: str, start: int, end: int) -> bool:
    """True unless the occurrence is glued to letters/digits on either side.

    ``str.isalnum`` is true for Hangul, so a particle attached to the
    occurrence ("30일이다") counts as glued. Such claims miss the exact tier
    and are matched by the later tiers instead.
    """
    if start > 0 and text[start - 1].isalnum() and text[start].isalnum():
        return False
    if end < len(text) and text[end].isalnum() and text[end - 1].isalnum():
        return False
    return True


def find_exact(original: str, claim: str) -> Optional[SpanMatch]:
    start = original.find(claim)
    while start != -1:
        end = start + len(claim)
        if _on_boundary(original, start, end):
            return SpanMatch(text=claim, start_char=start, end_char=end, score=1.0, method=MatchMethod.EXACT)
        start = original.find(claim, start + 1)
    return None


def find_numeric(original: str, claim: str) -> Optional[SpanMatch]:
    """Match every number token of the claim against number tokens of the original.

    The span points at the original's occurrence of the claim's first number.
    """
    wanted = [normalize_numeric(m.group(0)) for m in NUMBER_PATTERN.finditer(claim)]
    wanted = [w for w in wanted if w]
    if not wanted:
        return None

    first_hit = None
    available = {}
    for match in NUMBER_PATTERN.finditer(original):
        key = normalize_numeric(match.group(0))
        available.setdefault(key, match)

    for key in wanted:
        if key not in available:
            return None
        if first_hit is None:
            first_hit = available[key]

    text = first_hit.group(0).rstrip()
    return SpanMatch(
        text=text,
        start_char=first_hit.start(),
        end_char=first_hit.start() + len(text),
        score=NORMALIZED_MATCH_SCORE,
        method=MatchMethod.FUZZY,
    )


def find_contact(original: str, claim: str) -> Optional[SpanMatch]:
    wanted = normalize_contact(claim)
    patterns: Iterable[Pattern] = (PHONE_PATTERN, EMAIL_PATTERN)
    for pattern in patterns:
        for match in pattern.finditer(original):
            if normalize_contact(match.group(0)) == wanted:
                return SpanMatch(
                    text=match.group(0),
                    start_char=match.start(),
                    end_char=match.end(),
                    score=NORMALIZED_MATCH_SCORE,
                    method=MatchMethod.FUZZY,
                )
    return None


def find_approximate(original: str, claim: str, threshold: float) -> Optional[SpanMatch]:
    """Best overlapping window by share of claim characters matched in order.

    Windows are twice the claim length with a 50% stride (at least
    ``MIN_WINDOW_STRIDE``). The reported span is trimmed to the aligned part
    of the winning window.
    """
    if not claim or not original:
        return None

    size = len(claim) * 2
    stride = max(size // 2, MIN_WINDOW_STRIDE)
    best: Optional[SpanMatch] = None

    for offset in range(0, len(original), stride):
        window = original[offset:offset + size]
        matcher = SequenceMatcher(None, claim, window, autojunk=False)
        blocks = [b for b in matcher.get_matching_blocks() if b.size]
        if not blocks:
            continue

        score = sum(b.size for b in blocks) / len(claim)
        if best is None or score > best.score:
            start = offset + blocks[0].b
            end = offset + blocks[-1].b + blocks[-1].size
            best = SpanMatch(
                text=original[start:end],
                start_char=start,
                end_char=end,
                score=round(score, 4),
                method=MatchMethod.FUZZY,
            )
        if offset + size >= len(original):
            break

    if best and best.score > threshold:
        return best
    return None


def find_source_span(
    original: str,
    claim: str,
    claim_type: ClaimType,
    fuzzy_threshold: float = 0.7,
) -> Optional[SpanMatch]:
    """Run the matching tiers in order and return the first hit."""
    match = find_exact(original, claim)
    if match:
        return match

    if claim_type == ClaimType.NUMERIC:
        return find_numeric(original, claim)

    if claim_type == ClaimType.CONTACT:
        match = find_contact(original, claim)
        if match:
            return match

    return find_approximate(original, claim, fuzzy_threshold)


class RegexVerifier:
    """Resolves the cheap subset of pending claims before the LLM pass."""

    def __init__(self, claim_repo: ClaimRepository, fuzzy_threshold: float = 0.7):
        self.claim_repo = claim_repo
        self.fuzzy_threshold = fuzzy_threshold

    async def verify(self, claims: List, original_text: str) -> int:
        """Match each claim and persist supported verdicts.

        Args:
            claims: Pending Claim rows
            original_text: Session original text

        Returns:
            Number of claims resolved as supported
        """
        resolved = 0
        for claim in claims:
            match = find_source_span(
                original_text,
                claim.claim_text,
                ClaimType(claim.claim_type),
                self.fuzzy_threshold,
            )
            if match is None:
                continue

            applied = await self.claim_repo.apply_verdict(
                claim.id,
                VerificationLevel.REGEX,
                span={
                    "source_text": match.text,
                    "start_char": match.start_char,
                    "end_char": match.end_char,
                    "match_score": match.score,
                    "match_method": match.method.value,
                },
                verdict=Verdict.SUPPORTED.value,
                confidence=match.score,
                verification_detail=match.detail,
                suspicion_type=None,
            )
            if applied:
                resolved += 1

        LOGGER.info(f"[REGEX] resolved {resolved}/{len(claims)} claims")
        return resolved
