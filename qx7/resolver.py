# FILE: qx7/resolver.py
"""
Identity resolution.

`resolve()` turns a bundle of untrusted client signals into a visitor id and
a persistence-method label. It is a pure decision table apart from random
minting: no I/O, no shared state, and it never returns an invalid id.

Decision order (first match wins):

  1. trusted stored id   - valid client id and data not reported cleared
  2. etag recovery       - quoted entity tag that validates, data not cleared
  3. privacy-mode fresh  - incognito or limited storage: always a new id
  4. cognito recovery    - sha256(cognito user id) after an auth round-trip
  5. fallback            - a new random id

Every input field can be forged by the client. The method label is meant for
observability only and must never gate authorization.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .validator import clean_etag, is_valid_identifier

logger = logging.getLogger(__name__)

# Integrity score above which a stored id counts as verified.
STORED_ID_VERIFIED_SCORE = 0.7
# Integrity score above which an etag-recovered id counts as verified.
ETAG_VERIFIED_SCORE = 0.5

RANDOM_ID_BYTES = 16
DERIVED_ID_HEX_LEN = 32


class PersistenceMethod(str, Enum):
    """
    Provenance of a resolved id, from least to most trusted in spirit.
    """

    NEW = "new"
    LOCAL_STORAGE = "localStorage"
    LOCAL_STORAGE_VERIFIED = "localStorage-verified"
    COGNITO_LOCAL_STORAGE_VERIFIED = "cognito-localStorage-verified"
    ETAG = "etag"
    ETAG_VERIFIED = "etag-verified"
    INCOGNITO_RANDOM = "incognito-random"
    LIMITED_STORAGE_RANDOM = "limited-storage-random"
    COGNITO_POST_AUTH_RECOVERY = "cognito-post-auth-recovery"
    ERROR_FALLBACK = "error-fallback"


@dataclass(frozen=True)
class SignalBundle:
    """
    Client-reported signals feeding one resolution.

    All fields are advisory. Missing strings are None, missing flags False.
    """

    client_id: Optional[str] = None
    etag: Optional[str] = None
    cognito_user_id: Optional[str] = None
    data_cleared: bool = False
    integrity_score: Optional[float] = None
    returning_from_auth: bool = False
    is_incognito: bool = False
    has_limited_storage: bool = False


@dataclass(frozen=True)
class Resolution:
    id: str
    is_returning: bool
    method: PersistenceMethod


def mint_random_id() -> str:
    """32 hex chars from a CSPRNG."""
    return secrets.token_hex(RANDOM_ID_BYTES)


def derive_id_from_cognito(cognito_user_id: str) -> str:
    """Deterministic id: a pure function of the cognito user id."""
    digest = hashlib.sha256(cognito_user_id.encode("utf-8")).hexdigest()
    return digest[:DERIVED_ID_HEX_LEN]


def _score_above(score: Optional[float], threshold: float) -> bool:
    return score is not None and score > threshold


def _stored_id_method(signals: SignalBundle) -> PersistenceMethod:
    if signals.cognito_user_id:
        return PersistenceMethod.COGNITO_LOCAL_STORAGE_VERIFIED
    if _score_above(signals.integrity_score, STORED_ID_VERIFIED_SCORE):
        return PersistenceMethod.LOCAL_STORAGE_VERIFIED
    return PersistenceMethod.LOCAL_STORAGE


def resolve(signals: SignalBundle) -> Resolution:
    """
    Pick the visitor id for one request.

    Total over its input: whatever combination of fields is present, the
    returned id passes `is_valid_identifier`.
    """
    result: Optional[Resolution] = None

    if not signals.data_cleared and is_valid_identifier(signals.client_id):
        result = Resolution(
            id=str(signals.client_id),
            is_returning=True,
            method=_stored_id_method(signals),
        )

    if result is None and signals.etag and not signals.data_cleared:
        candidate = clean_etag(signals.etag)
        if is_valid_identifier(candidate):
            method = (
                PersistenceMethod.ETAG_VERIFIED
                if _score_above(signals.integrity_score, ETAG_VERIFIED_SCORE)
                else PersistenceMethod.ETAG
            )
            result = Resolution(id=str(candidate), is_returning=True, method=method)

    if result is None and (signals.is_incognito or signals.has_limited_storage):
        method = (
            PersistenceMethod.INCOGNITO_RANDOM
            if signals.is_incognito
            else PersistenceMethod.LIMITED_STORAGE_RANDOM
        )
        result = Resolution(id=mint_random_id(), is_returning=False, method=method)

    if result is None and signals.cognito_user_id and signals.returning_from_auth:
        result = Resolution(
            id=derive_id_from_cognito(signals.cognito_user_id),
            is_returning=True,
            method=PersistenceMethod.COGNITO_POST_AUTH_RECOVERY,
        )

    if result is None:
        result = Resolution(
            id=mint_random_id(), is_returning=False, method=PersistenceMethod.NEW
        )

    logger.debug(
        "resolved %s visitor via %s",
        "returning" if result.is_returning else "new",
        result.method.value,
        extra={"id_prefix": result.id[:8]},
    )
    return result


__all__ = [
    "PersistenceMethod",
    "SignalBundle",
    "Resolution",
    "mint_random_id",
    "derive_id_from_cognito",
    "resolve",
]
