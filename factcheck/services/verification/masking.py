"""PII masking for review surfaces.

Masks resident registration numbers, card numbers, phone numbers, emails and
account numbers, in that order. Earlier passes win: a later pattern never
rewrites characters inside an already-masked span. Every entry records its
position in the final masked text, so ``unmask_sensitive_info`` can restore
the input exactly.
"""

import re
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Sequence, Tuple

from factcheck.schemas.validation import MaskingType

MASKING_TYPE_LABELS: Dict[MaskingType, str] = {
    MaskingType.PHONE: "전화번호",
    MaskingType.EMAIL: "이메일",
    MaskingType.RRN: "주민등록번호",
    MaskingType.CARD: "카드번호",
    MaskingType.ACCOUNT: "계좌번호",
}

RRN_PATTERN = re.compile(r"(\d{6})([-\s]?)(\d{7})", re.ASCII)
CARD_PATTERN = re.compile(r"(\d{4})([-\s]?)(\d{4})([-\s]?)(\d{4})([-\s]?)(\d{4})", re.ASCII)
PHONE_PATTERN = re.compile(r"(0\d{1,2})([-.\s]?)(\d{3,4})([-.\s]?)(\d{4})", re.ASCII)
EMAIL_PATTERN = re.compile(r"([\w.-]{2})([\w.-]*)(@[\w.-]+\.\w+)", re.ASCII)
ACCOUNT_PATTERN = re.compile(r"(\d{3,4})(\d{4,6})(\d{3,4})", re.ASCII)


@dataclass(frozen=True)
class MaskingEntry:
    type: MaskingType
    original: str
    masked: str
    start_char: int
    end_char: int

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass(frozen=True)
class MaskingResult:
    masked_text: str
    maskings: List[MaskingEntry]


def _mask_rrn(m: re.Match) -> str:
    return f"{m.group(1)}{m.group(2)}*******"


def _mask_card(m: re.Match) -> str:
    return f"{m.group(1)}{m.group(2)}****{m.group(4)}****{m.group(6)}{m.group(7)}"


def _mask_phone(m: re.Match) -> str:
    return f"{m.group(1)}{m.group(2)}****{m.group(4)}{m.group(5)}"


def _mask_email(m: re.Match) -> str:
    middle = "*" * min(4, max(2, len(m.group(2))))
    return f"{m.group(1)}{middle}{m.group(3)}"


def _mask_account(m: re.Match) -> str:
    return f"{m.group(1)}{'*' * len(m.group(2))}{m.group(3)}"


_MASKING_PASSES: Sequence[Tuple[MaskingType, re.Pattern, Callable[[re.Match], str]]] = (
    (MaskingType.RRN, RRN_PATTERN, _mask_rrn),
    (MaskingType.CARD, CARD_PATTERN, _mask_card),
    (MaskingType.PHONE, PHONE_PATTERN, _mask_phone),
    (MaskingType.EMAIL, EMAIL_PATTERN, _mask_email),
    (MaskingType.ACCOUNT, ACCOUNT_PATTERN, _mask_account),
)


def _overlaps(start: int, end: int, entries: Sequence[MaskingEntry]) -> bool:
    return any(start < e.end_char and e.start_char < end for e in entries)


def _shift(position: int, edits: Sequence[Tuple[int, int]]) -> int:
    """Map a pre-pass position through (pre-pass start, length delta) edits."""
    return position + sum(delta for start, delta in edits if start < position)


def mask_sensitive_info(text: str) -> MaskingResult:
    """Detect and mask PII in ``text``.

    Returns:
        MaskingResult with the masked text and one entry per masked value,
        sorted by position
    """
    current = text
    entries: List[MaskingEntry] = []

    for masking_type, pattern, render in _MASKING_PASSES:
        pieces: List[str] = []
        edits: List[Tuple[int, int]] = []
        pass_entries: List[MaskingEntry] = []
        cursor = 0
        delta = 0

        for match in pattern.finditer(current):
            start, end = match.span()
            if _overlaps(start, end, entries):
                continue

            masked = render(match)
            pieces.append(current[cursor:start])
            pieces.append(masked)
            cursor = end

            new_start = start + delta
            pass_entries.append(MaskingEntry(
                type=masking_type,
                original=match.group(0),
                masked=masked,
                start_char=new_start,
                end_char=new_start + len(masked),
            ))
            edits.append((start, len(masked) - (end - start)))
            delta += len(masked) - (end - start)

        if not pass_entries:
            continue

        pieces.append(current[cursor:])
        current = "".join(pieces)
        entries = [
            MaskingEntry(
                type=e.type,
                original=e.original,
                masked=e.masked,
                start_char=_shift(e.start_char, edits),
                end_char=_shift(e.start_char, edits) + len(e.masked),
            )
            for e in entries
        ] + pass_entries

    entries.sort(key=lambda e: e.start_char)
    return MaskingResult(masked_text=current, maskings=entries)


def unmask_sensitive_info(masked_text: str, maskings: Sequence[MaskingEntry]) -> str:
    """Restore the original text from a masked text and its entries.

    Replacements run from the end of the text backwards so earlier offsets
    stay valid.
    """
    restored = masked_text
    for entry in sorted(maskings, key=lambda e: e.start_char, reverse=True):
        restored = (
            restored[:entry.start_char]
            + entry.original
            + restored[entry.start_char + len(entry.masked):]
        )
    return restored

