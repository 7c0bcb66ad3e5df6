from __future__ import annotations

import re
from typing import Final

# Some wired scanners emit every byte as a zero-padded decimal triplet, so
# "050048056" arrives for the text "208".

_UNSAFE_CONTROL_RE: Final = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_PRINTABLE_RE: Final = re.compile(r"[\x09\x0A\x0D\x20-\x7E]")
_DIGITS_RE: Final = re.compile(r"[0-9]+")
_CRLF_RE: Final = re.compile(r"\r+\n")

MIN_TRIPLET_LENGTH: Final[int] = 6
PRINTABLE_RATIO_THRESHOLD: Final[float] = 0.85


def strip_control_chars(text: str) -> str:
    return _UNSAFE_CONTROL_RE.sub("", text)


def _clean(text: str) -> str:
    return _CRLF_RE.sub("\n", strip_control_chars(text))


def is_likely_ascii_triplets(text: str) -> bool:
    trimmed = text.strip()
    if len(trimmed) < MIN_TRIPLET_LENGTH or len(trimmed) % 3 != 0:
        return False
    return _DIGITS_RE.fullmatch(trimmed) is not None


def decode_ascii_triplets(text: str) -> str | None:
    trimmed = text.strip()
    if not is_likely_ascii_triplets(trimmed):
        return None

    codes = [int(trimmed[i : i + 3]) for i in range(0, len(trimmed), 3)]
    if any(code > 255 for code in codes):
        return None

    decoded = "".join(chr(code) for code in codes)
    printable = len(_PRINTABLE_RE.findall(decoded))
    if printable / len(decoded) < PRINTABLE_RATIO_THRESHOLD:
        return None
    return decoded


def encode_ascii_triplets(text: str) -> str:
    return "".join(f"{ord(ch) & 0xFF:03d}" for ch in text)


def canonicalize_barcode(raw: object) -> str:
    """Return the stable text form of a scanner payload.

    The result is both the parser input and the exact-match key used for
    duplicate detection. Triplet decoding repeats until the text no longer
    decodes, which makes the function idempotent.
    """
    text = _clean("" if raw is None else str(raw))
    while True:
        decoded = decode_ascii_triplets(text)
        if decoded is None:
            return text
        text = _clean(decoded)


def legacy_payload_keys(canonical: str) -> tuple[str, str]:
    """Keys matching a canonical payload and a row stored in triplet form."""
    return canonical, encode_ascii_triplets(canonical)
