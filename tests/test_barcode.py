from __future__ import annotations

from dispatch_audit.barcode import (
    canonicalize_barcode,
    decode_ascii_triplets,
    encode_ascii_triplets,
    is_likely_ascii_triplets,
    legacy_payload_keys,
)


def test_triplet_payload_is_decoded() -> None:
    assert canonicalize_barcode("066073078045049") == "BIN-1"


def test_control_chars_are_stripped_and_crlf_collapsed() -> None:
    assert canonicalize_barcode("\x00BIN\x1b-1\r\nNEXT\x7f") == "BIN-1\nNEXT"
    assert canonicalize_barcode("A\tB\rC") == "A\tB\rC"


def test_canonicalization_is_idempotent() -> None:
    samples = [
        "SBIN-9PCAR-A1Q4",
        "066073078045049",
        encode_ascii_triplets(encode_ascii_triplets("AB")),
        "A\r\r\nB\x01",
        "A\r\x01\nB",
        "123456",
        "",
        "   padded   ",
    ]
    for raw in samples:
        once = canonicalize_barcode(raw)
        assert canonicalize_barcode(once) == once


def test_nested_triplet_encoding_decodes_fully() -> None:
    assert canonicalize_barcode(encode_ascii_triplets(encode_ascii_triplets("AB"))) == "AB"


def test_numeric_text_with_group_above_255_is_not_decoded() -> None:
    assert decode_ascii_triplets("300065066") is None
    assert canonicalize_barcode("123456") == "123456"


def test_mostly_unprintable_decode_is_rejected() -> None:
    assert decode_ascii_triplets("001002003004005006065") is None


def test_short_or_ragged_digit_runs_are_not_triplets() -> None:
    assert not is_likely_ascii_triplets("065")
    assert not is_likely_ascii_triplets("0650661")
    assert not is_likely_ascii_triplets("06506A")


def test_non_string_input_is_stringified() -> None:
    assert canonicalize_barcode(None) == ""
    assert canonicalize_barcode(42) == "42"


def test_legacy_payload_keys_include_triplet_form() -> None:
    assert legacy_payload_keys("AB") == ("AB", "065066")
