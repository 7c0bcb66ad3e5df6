from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final, Literal

from dispatch_audit.errors import (
    EmptySegmentError,
    InvalidQuantityError,
    MissingMarkerError,
    TooShortError,
    UnparseableLabelError,
)

LabelType = Literal["customer", "carrier"]

CUSTOMER_BIN_SLICE: Final = slice(0, 35)
CUSTOMER_PART_SLICE: Final = slice(35, 50)
CUSTOMER_QUANTITY_INDEX: Final[int] = 50
CUSTOMER_MIN_LENGTH: Final[int] = 51

_WHITESPACE_RE: Final = re.compile(r"\s+")
_DIGITS: Final = frozenset("0123456789")


@dataclass(frozen=True)
class ParsedLabel:
    label_type: LabelType
    bin_id: str
    part_code: str
    quantity: str
    raw: str

    @property
    def bin_quantity(self) -> int:
        return int(self.quantity)


def normalize_field(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def _is_digit(ch: str) -> bool:
    return ch in _DIGITS


def parse_customer_label(raw: str) -> ParsedLabel:
    """Decode the fixed-position customer label.

    Positions are 1-indexed: bin 1..35, part 36..50, quantity 51. Anything
    after position 51 is ignored.
    """
    text = raw or ""
    if len(text) < CUSTOMER_MIN_LENGTH:
        raise TooShortError(
            "customer",
            f"Customer label too short ({len(text)} chars), expected at least {CUSTOMER_MIN_LENGTH}",
            length=len(text),
        )

    bin_id = normalize_field(text[CUSTOMER_BIN_SLICE])
    part_code = normalize_field(text[CUSTOMER_PART_SLICE])
    quantity = text[CUSTOMER_QUANTITY_INDEX]

    if not bin_id:
        raise EmptySegmentError("customer", "Customer label bin number is empty (chars 1..35)", segment="bin")
    if not part_code:
        raise EmptySegmentError("customer", "Customer label part number is empty (chars 36..50)", segment="part")
    if not _is_digit(quantity):
        raise InvalidQuantityError(
            "customer",
            f"Customer label quantity at position 51 must be a single digit, got {quantity!r}",
        )
    return ParsedLabel("customer", bin_id, part_code, quantity, text)


def _quantity_candidates(text: str) -> list[int]:
    return [i for i in range(len(text) - 1) if text[i] == "Q" and _is_digit(text[i + 1])]


def _bin_marker_index(text: str, p_index: int) -> int:
    v_index = text.rfind("V", 0, p_index)
    if v_index == -1:
        return text.rfind("S", 0, p_index)
    # Closest S to P that still follows the most recent V.
    return text.rfind("S", v_index + 1, p_index)


def parse_carrier_label(raw: str) -> ParsedLabel:
    """Decode the S..P..Q marker-delimited carrier label.

    Marker letters may also occur inside free-text regions, so every Q followed
    by a digit is tried in order and the first candidate yielding a non-empty
    bin and part wins.
    """
    text = raw or ""
    if "Q" not in text:
        raise MissingMarkerError("carrier", "Q")
    if "P" not in text:
        raise MissingMarkerError("carrier", "P")

    for q_index in _quantity_candidates(text):
        p_index = text.rfind("P", 0, q_index)
        if p_index == -1:
            continue
        part_code = normalize_field(text[p_index + 1 : q_index])
        if not part_code:
            continue
        quantity = text[q_index + 1]
        if not _is_digit(quantity):
            continue

        s_index = _bin_marker_index(text, p_index)
        if s_index == -1:
            continue
        bin_id = normalize_field(text[s_index + 1 : p_index])
        if not bin_id:
            continue
        return ParsedLabel("carrier", bin_id, part_code, quantity, text)

    if "S" not in text:
        raise MissingMarkerError("carrier", "S")
    raise UnparseableLabelError("carrier", "Carrier label could not be parsed using S..P..Q nomenclature")


def parse_label(label_type: LabelType, raw: str) -> ParsedLabel:
    if label_type == "customer":
        return parse_customer_label(raw)
    return parse_carrier_label(raw)
