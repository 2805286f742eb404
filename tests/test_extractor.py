"""Tests for media_relay.extractor.

Covers the raw scan, the JSON/JWT walk, Netscape cookie files and the
never-throw behaviour on hostile input.
"""

from __future__ import annotations

import base64
import json

import pytest

from media_relay.exceptions import ExtractionError
from media_relay.extractor import TokenExtractor, decode_jwt_payload, extract_token, extract_token_details


def _jwt(payload: dict) -> str:
    header = base64.urlsafe_b64encode(b'{"alg":"none"}').decode().rstrip("=")
    body = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")
    return f"{header}.{body}.sig"


INNER = "ya29.inner_token_value_1234567890"

# ── raw scan ──────────────────────────────────────────────────────────────────


def test_raw_scan_returns_exact_span_up_to_first_non_token_character():
    text = "...ya29.a0Ab123XYZ_veryLongToken...noise..."
    assert extract_token(text) == "ya29.a0Ab123XYZ_veryLongToken"
    assert extract_token_details(text).method == "direct-scan"


def test_raw_scan_returns_first_occurrence():
    text = "log: Bearer ya29.first_token_aaaaaaaaaaaa\nlater ya29.second_token_bbbbbbbbbbb"
    assert extract_token(text) == "ya29.first_token_aaaaaaaaaaaa"


def test_raw_scan_accepts_bytes():
    assert extract_token(b"token=ya29.bytes_input_token_123456;") == "ya29.bytes_input_token_123456"


def test_raw_scan_ignores_too_short_candidates():
    assert extract_token("ya29.abc") is None


def test_min_length_is_configurable():
    extractor = TokenExtractor(min_length=60)
    assert extractor.extract("ya29.a0Ab123XYZ_veryLongToken") is None


# ── JSON walk ─────────────────────────────────────────────────────────────────


def test_json_nested_access_token():
    text = '{"session":{"accessToken":"ya29.ABC123longenough"}}'
    assert extract_token(text) == "ya29.ABC123longenough"


def test_json_alias_field_preferred_over_generic_hit():
    document = {
        "note": "ya29.generic_value_1234567890",
        "nested": {"accessToken": "ya29.alias_value_1234567890"},
    }
    hit = TokenExtractor()._walk_document(document, "json-field")
    assert hit is not None
    assert hit.token == "ya29.alias_value_1234567890"


def test_json_alias_preferred_inside_embedded_jwt():
    jwt = _jwt({"other": "ya29.generic_value_1234567890", "accessToken": "ya29.alias_value_1234567890"})
    text = json.dumps({"session": {"jwt": jwt, "label": "not a token"}})
    result = extract_token_details(text)
    assert result.token == "ya29.alias_value_1234567890"
    assert result.method == "jwt-payload"


def test_bare_jwt_returns_inner_access_token():
    result = extract_token_details(_jwt({"sub": "user", "access_token": INNER}))
    assert result.token == INNER
    assert result.method == "jwt-payload"


def test_json_cookie_export_session_cookie():
    text = json.dumps(
        [
            {"name": "NID", "value": "abc"},
            {"name": "__Secure-next-auth.session-token", "value": "next-auth-value"},
            {"name": "__SESSION", "value": "firebase-session-value"},
        ]
    )
    result = extract_token_details(text)
    assert result.token == "firebase-session-value"
    assert result.method == "json-field"


def test_bad_jwt_padding_only_skips_that_value():
    text = json.dumps([{"broken": "xx.AAAAA.yy"}, {"name": "__SESSION", "value": "sess-value-1"}])
    assert extract_token(text) == "sess-value-1"


def test_decode_jwt_payload_rejects_garbage():
    assert decode_jwt_payload("xx.AAAAA.yy") is None
    assert decode_jwt_payload("only.two") is None


# ── Netscape cookies.txt ─────────────────────────────────────────────────────


def test_netscape_session_cookie():
    text = (
        "# Netscape HTTP Cookie File\n"
        ".labs.google\tTRUE\t/\tTRUE\t0\tNID\tother\n"
        ".labs.google\tTRUE\t/\tTRUE\t0\t__SESSION\tsessionvalue123\n"
    )
    result = extract_token_details(text)
    assert result.token == "sessionvalue123"
    assert result.method == "netscape-cookie"


def test_netscape_httponly_prefixed_line_is_a_cookie():
    text = "#HttpOnly_.labs.google\tTRUE\t/\tTRUE\t0\t__Secure-next-auth.session-token\tnext-value\n"
    assert extract_token(text) == "next-value"


def test_netscape_jwt_cookie_is_decoded():
    text = f".labs.google\tTRUE\t/\tTRUE\t0\t__SESSION\t{_jwt({'access_token': INNER})}\n"
    result = extract_token_details(text)
    assert result.token == INNER
    assert result.method == "jwt-payload"


# ── hostile input ─────────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "data",
    [
        b"\xff\xfe\x00garbage\x80\x81",
        b'{"accessToken": "ya29.',
        "",
        "   \n\t",
        "[[[[[[[[",
    ],
)
def test_extract_returns_none_for_unusable_input(data):
    assert extract_token(data) is None


def test_extract_rejects_non_text_input():
    with pytest.raises(ExtractionError):
        TokenExtractor().extract(None)  # type: ignore[arg-type]


def test_extract_file_reads_bytes(tmp_path):
    path = tmp_path / "cookies.txt"
    path.write_bytes(b"junk ya29.file_token_value_123456 junk")
    assert TokenExtractor().extract_file(str(path)).token == "ya29.file_token_value_123456"


def test_extract_file_missing_raises(tmp_path):
    with pytest.raises(ExtractionError):
        TokenExtractor().extract_file(str(tmp_path / "missing.txt"))
