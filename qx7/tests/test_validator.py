# qx7/tests/test_validator.py
import pytest

from qx7.validator import clean_etag, is_valid_identifier, quote_etag


@pytest.mark.parametrize(
    "candidate",
    ["0123456789abcdef", "0123456789ABCDEF", "a" * 64],
)
def test_valid_identifiers(candidate):
    assert is_valid_identifier(candidate)


@pytest.mark.parametrize(
    "candidate",
    [None, "", "0123456789abcde", "0123456789abcdeg", " 0123456789abcdef", "0123456789abcdef\n", 1234567890123456, b"0123456789abcdef"],
)
def test_invalid_identifiers(candidate):
    assert not is_valid_identifier(candidate)


def test_clean_etag():
    assert clean_etag('"abc"') == "abc"
    assert clean_etag("abc") == "abc"
    assert clean_etag('W/"abc"') == 'W/"abc"'
    assert clean_etag("") is None
    assert clean_etag(None) is None
    assert clean_etag('"') == '"'


def test_quote_etag():
    assert quote_etag("abc") == '"abc"'
    assert clean_etag(quote_etag("abc")) == "abc"
