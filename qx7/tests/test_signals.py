# qx7/tests/test_signals.py
from qx7.signals import (
    extract_signal_bundle,
    get_bool_header,
    get_numeric_header,
    get_string_header,
    is_not_modified,
)

STORED = "0123456789abcdef0123456789abcdef"


def test_string_header_takes_first_value():
    assert get_string_header({"x-qx7-id": ["a", "b"]}, "x-qx7-id") == "a"
    assert get_string_header({"x-qx7-id": []}, "x-qx7-id") is None
    assert get_string_header({}, "x-qx7-id") is None


def test_header_lookup_is_case_insensitive():
    assert get_string_header({"X-Qx7-Id": STORED}, "x-qx7-id") == STORED


def test_bool_header_only_true_is_true():
    assert get_bool_header({"x-data-cleared": "true"}, "x-data-cleared")
    assert not get_bool_header({"x-data-cleared": " TRUE "}, "x-data-cleared")
    assert not get_bool_header({"x-data-cleared": "TRUE"}, "x-data-cleared")
    assert not get_bool_header({"x-data-cleared": "true "}, "x-data-cleared")
    assert not get_bool_header({"x-data-cleared": "1"}, "x-data-cleared")
    assert not get_bool_header({"x-data-cleared": "yes"}, "x-data-cleared")
    assert not get_bool_header({}, "x-data-cleared")


def test_numeric_header():
    h = "x-sw-integrity-score"
    assert get_numeric_header({h: "0.75"}, h) == 0.75
    assert get_numeric_header({h: " 0.5"}, h) == 0.5
    assert get_numeric_header({h: "0.8abc"}, h) == 0.8
    assert get_numeric_header({h: ".25"}, h) == 0.25
    assert get_numeric_header({h: "abc"}, h) is None
    assert get_numeric_header({h: "nan"}, h) is None
    assert get_numeric_header({h: "inf"}, h) is None
    assert get_numeric_header({h: "high"}, h) is None
    assert get_numeric_header({}, h) is None


def test_extract_signal_bundle():
    bundle = extract_signal_bundle(
        {
            "If-None-Match": f'"{STORED}"',
            "X-Qx7-Id": STORED,
            "X-Data-Cleared": "false",
            "X-Cognito-User-Id": "user",
            "X-Returning-From-Auth": "true",
            "X-Incognito-Mode": "true",
            "X-Limited-Storage": "false",
            "X-Sw-Integrity-Score": "0.9",
        }
    )
    assert bundle.client_id == STORED
    assert bundle.etag == f'"{STORED}"'
    assert bundle.data_cleared is False
    assert bundle.cognito_user_id == "user"
    assert bundle.returning_from_auth is True
    assert bundle.is_incognito is True
    assert bundle.has_limited_storage is False
    assert bundle.integrity_score == 0.9


def test_is_not_modified():
    assert is_not_modified(f'"{STORED}"', STORED)
    assert is_not_modified(STORED, STORED)
    assert not is_not_modified(None, STORED)
    assert not is_not_modified(f'W/"{STORED}"', STORED)
    assert not is_not_modified('"abc"', "abc")
