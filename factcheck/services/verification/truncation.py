"""Character-budget truncation with explicit accounting.

Every stage that sends text to the generation capability truncates through
here, so data loss is always reported and logged rather than silent.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from factcheck.utils.logging import get_logger

LOGGER = get_logger(__name__)

DEFAULT_TRUNCATION_MESSAGE = "\n\n[문서가 너무 길어 일부만 처리됩니다...]"


@dataclass(frozen=True)
class TruncationLimits:
    """Per-stage character budgets."""

    markdown_reconstruction: int = 200_000
    structure_analysis: int = 200_000
    claim_extraction: int = 100_000
    claim_verification: int = 80_000

    @classmethod
    def from_settings(cls, pipeline_settings) -> "TruncationLimits":
        return cls(
            markdown_reconstruction=pipeline_settings.markdown_reconstruction_max_chars,
            structure_analysis=pipeline_settings.structure_analysis_max_chars,
            claim_extraction=pipeline_settings.claim_extraction_max_chars,
            claim_verification=pipeline_settings.claim_verification_max_chars,
        )


@dataclass(frozen=True)
class TruncationResult:
    text: str
    was_truncated: bool
    original_length: int
    processed_length: int
    lost_length: int
    lost_percentage: int
    context: str = ""

    def to_dict(self) -> Dict[str, object]:
        """Accounting fields only (no text), for persistence and logs."""
        return {
            "was_truncated": self.was_truncated,
            "original_length": self.original_length,
            "processed_length": self.processed_length,
            "lost_length": self.lost_length,
            "lost_percentage": self.lost_percentage,
            "context": self.context,
        }


def truncate_with_warning(
    text: str,
    max_chars: int,
    context: str,
    truncation_message: Optional[str] = DEFAULT_TRUNCATION_MESSAGE,
) -> TruncationResult:
    """Cut ``text`` to ``max_chars`` and report what was lost.

    ``processed_length`` counts the kept source characters only; the notice
    appended for the model is not part of the accounting, so
    ``original_length - processed_length == lost_length`` always holds.

    Args:
        text: Input text
        max_chars: Character budget (must be positive)
        context: Stage name used in logs
        truncation_message: Notice appended to truncated text, or None for no notice

    Returns:
        TruncationResult with the (possibly) truncated text
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")

    original_length = len(text)
    if original_length <= max_chars:
        return TruncationResult(
            text=text,
            was_truncated=False,
            original_length=original_length,
            processed_length=original_length,
            lost_length=0,
            lost_percentage=0,
            context=context,
        )

    lost_length = original_length - max_chars
    lost_percentage = round(lost_length / original_length * 100)

    LOGGER.warning(
        f"[TRUNCATION] {context}: {original_length} chars exceeds budget {max_chars}, "
        f"dropping {lost_length} chars ({lost_percentage}%)",
        extra={
            "context": context,
            "original_length": original_length,
            "max_chars": max_chars,
            "lost_length": lost_length,
        }
    )

    return TruncationResult(
        text=text[:max_chars] + (truncation_message or ""),
        was_truncated=True,
        original_length=original_length,
        processed_length=max_chars,
        lost_length=lost_length,
        lost_percentage=lost_percentage,
        context=context,
    )

