# FILE: qx7/signals.py
"""
Request signal extraction.

Maps the client header contract onto a `SignalBundle`:

    If-None-Match            -> etag
    X-Qx7-Id                 -> client_id
    X-Data-Cleared           -> data_cleared
    X-Cognito-User-Id        -> cognito_user_id
    X-Returning-From-Auth    -> returning_from_auth
    X-Incognito-Mode         -> is_incognito
    X-Limited-Storage        -> has_limited_storage
    X-Sw-Integrity-Score     -> integrity_score

Lookups are case-insensitive and take the first value of a repeated header.
"""
from __future__ import annotations

import math
import re
from typing import Mapping, Optional, Sequence, Union

from .resolver import SignalBundle
from .validator import clean_etag, is_valid_identifier

HeaderValue = Union[str, Sequence[str], None]

H_IF_NONE_MATCH = "if-none-match"
H_QX7_ID = "x-qx7-id"
H_DATA_CLEARED = "x-data-cleared"
H_COGNITO_USER_ID = "x-cognito-user-id"
H_RETURNING_FROM_AUTH = "x-returning-from-auth"
H_INCOGNITO = "x-incognito-mode"
H_LIMITED_STORAGE = "x-limited-storage"
H_INTEGRITY_SCORE = "x-sw-integrity-score"
H_PERSISTENCE_METHOD = "x-persistence-method"

# Leading decimal number; trailing junk is ignored
_NUMBER_PREFIX_RE = re.compile(r"\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def _lookup(headers: Mapping[str, HeaderValue], name: str) -> HeaderValue:
    value = headers.get(name)
    if value is None:
        for k, v in headers.items():
            if k.lower() == name:
                return v
    return value


def get_string_header(headers: Mapping[str, HeaderValue], name: str) -> Optional[str]:
    value = _lookup(headers, name)
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        value = value[0]
    value = str(value)
    return value or None


def get_bool_header(headers: Mapping[str, HeaderValue], name: str) -> bool:
    value = get_string_header(headers, name)
    return value == "true"


def get_numeric_header(headers: Mapping[str, HeaderValue], name: str) -> Optional[float]:
    value = get_string_header(headers, name)
    if value is None:
        return None
    m = _NUMBER_PREFIX_RE.match(value)
    if m is None:
        return None
    number = float(m.group(0))
    if not math.isfinite(number):
        return None
    return number


def extract_signal_bundle(headers: Mapping[str, HeaderValue]) -> SignalBundle:
    return SignalBundle(
        client_id=get_string_header(headers, H_QX7_ID),
        etag=get_string_header(headers, H_IF_NONE_MATCH),
        cognito_user_id=get_string_header(headers, H_COGNITO_USER_ID),
        data_cleared=get_bool_header(headers, H_DATA_CLEARED),
        integrity_score=get_numeric_header(headers, H_INTEGRITY_SCORE),
        returning_from_auth=get_bool_header(headers, H_RETURNING_FROM_AUTH),
        is_incognito=get_bool_header(headers, H_INCOGNITO),
        has_limited_storage=get_bool_header(headers, H_LIMITED_STORAGE),
    )


def is_not_modified(etag: Optional[str], resolved_id: str) -> bool:
    """True when the client's cached entity already names the resolved id."""
    cleaned = clean_etag(etag)
    return cleaned is not None and cleaned == resolved_id and is_valid_identifier(cleaned)


__all__ = [
    "get_string_header",
    "get_bool_header",
    "get_numeric_header",
    "extract_signal_bundle",
    "is_not_modified",
]
