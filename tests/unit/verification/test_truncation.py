import pytest

from factcheck.services.verification.truncation import (
    DEFAULT_TRUNCATION_MESSAGE,
    TruncationLimits,
    truncate_with_warning,
)


def test_text_within_budget_is_untouched():
    result = truncate_with_warning("short text", 100, context="test")

    assert result.text == "short text"
    assert result.was_truncated is False
    assert result.processed_length == result.original_length == 10
    assert result.lost_length == 0
    assert result.lost_percentage == 0


def test_text_at_exact_budget_is_untouched():
    result = truncate_with_warning("a" * 100, 100, context="test")

    assert result.was_truncated is False
    assert result.text == "a" * 100


def test_long_text_is_cut_and_accounted():
    result = truncate_with_warning("a" * 150, 100, context="markdown_reconstruction")

    assert result.was_truncated is True
    assert result.text == "a" * 100 + DEFAULT_TRUNCATION_MESSAGE
    assert result.original_length == 150
    assert result.processed_length == 100
    assert result.lost_length == 50
    assert result.lost_percentage == 33
    assert result.original_length - result.processed_length == result.lost_length


def test_notice_can_be_disabled():
    result = truncate_with_warning("abcdef", 3, context="test", truncation_message=None)

    assert result.text == "abc"
    assert result.processed_length == 3


def test_accounting_dict_has_no_text():
    data = truncate_with_warning("a" * 20, 10, context="claim_extraction").to_dict()

    assert "text" not in data
    assert data == {
        "was_truncated": True,
        "original_length": 20,
        "processed_length": 10,
        "lost_length": 10,
        "lost_percentage": 50,
        "context": "claim_extraction",
    }


def test_non_positive_budget_is_rejected():
    with pytest.raises(ValueError):
        truncate_with_warning("abc", 0, context="test")


def test_limits_from_settings():
    class PipelineStub:
        markdown_reconstruction_max_chars = 1
        structure_analysis_max_chars = 2
        claim_extraction_max_chars = 3
        claim_verification_max_chars = 4

    limits = TruncationLimits.from_settings(PipelineStub())

    assert limits == TruncationLimits(1, 2, 3, 4)
