import pytest

from factcheck.schemas.validation import MaskingType
from factcheck.services.verification.masking import mask_sensitive_info, unmask_sensitive_info

SAMPLE = (
    "연락처 010-1234-5678, 이메일 hong.gildong@example.com, "
    "주민번호 900101-1234567, 카드 1234-5678-9012-3456"
)


def test_masks_every_category():
    result = mask_sensitive_info(SAMPLE)

    assert "010-****-5678" in result.masked_text
    assert "ho****@example.com" in result.masked_text
    assert "900101-*******" in result.masked_text
    assert "1234-****-****-3456" in result.masked_text
    assert "1234567" not in result.masked_text
    assert {entry.type for entry in result.maskings} == {
        MaskingType.PHONE,
        MaskingType.EMAIL,
        MaskingType.RRN,
        MaskingType.CARD,
    }


def test_entries_point_into_masked_text():
    result = mask_sensitive_info(SAMPLE)

    for entry in result.maskings:
        assert result.masked_text[entry.start_char:entry.end_char] == entry.masked
    assert [e.start_char for e in result.maskings] == sorted(e.start_char for e in result.maskings)


def test_unmask_restores_original():
    result = mask_sensitive_info(SAMPLE)

    assert unmask_sensitive_info(result.masked_text, result.maskings) == SAMPLE


def test_account_number_is_masked():
    text = "입금 계좌 123456789123 으로 보내주세요"
    result = mask_sensitive_info(text)

    assert len(result.maskings) == 1
    assert result.maskings[0].type == MaskingType.ACCOUNT
    assert result.maskings[0].masked == "1234*****123"
    assert unmask_sensitive_info(result.masked_text, result.maskings) == text


def test_text_without_pii_is_unchanged():
    result = mask_sensitive_info("환불은 7일 이내 가능합니다.")

    assert result.masked_text == "환불은 7일 이내 가능합니다."
    assert result.maskings == []


@pytest.mark.parametrize(
    "text",
    [
        "주민번호 9001011234567 확인",
        "카드 4000-0101-2345-6789 결제",
        "카드 1234567890123456 결제",
        "메일 user01012345678@example.com 로 회신",
        "9001011234567010-1234-5678",
        "연락처 010-1234-5678 계좌 1002345678901",
        "카드 1234-5678-9012-3456, 주민 900101-1234567, 전화 02-123-4567",
    ],
)
def test_unmask_restores_overlapping_patterns(text):
    result = mask_sensitive_info(text)

    assert result.masked_text != text
    assert unmask_sensitive_info(result.masked_text, result.maskings) == text
    for first, second in zip(result.maskings, result.maskings[1:]):
        assert first.end_char <= second.start_char


def test_rrn_digit_run_is_not_masked_again_as_account():
    result = mask_sensitive_info("주민번호 9001011234567 확인")

    assert [entry.type for entry in result.maskings] == [MaskingType.RRN]
    assert result.masked_text == "주민번호 900101******* 확인"


def test_entry_serialization():
    entry = mask_sensitive_info("전화 010-1234-5678").maskings[0]

    assert entry.to_dict()["type"] == "phone"
    assert entry.to_dict()["original"] == "010-1234-5678"
