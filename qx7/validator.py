# FILE: qx7/validator.py
from __future__ import annotations

import re
from typing import Any, Optional

# Visitor ids are hex, at least 64 bits of entropy when printed.
_ID_RE = re.compile(r"^[a-f0-9]{16,}$", re.IGNORECASE)


def is_valid_identifier(candidate: Any) -> bool:
    """
    True iff `candidate` is a hex string of at least 16 characters.

    This is the single gate every stored, client-supplied or server-returned
    value passes through before it is trusted as a visitor id.
    """
    if not isinstance(candidate, str):
        return False
    return _ID_RE.fullmatch(candidate) is not None


def clean_etag(value: Optional[str]) -> Optional[str]:
    """
    Strip one pair of surrounding double quotes from an entity tag.

    Weak validators (W/"...") are returned unchanged and will therefore
    fail `is_valid_identifier`.
    """
    if not value:
        return None
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def quote_etag(qx7_id: str) -> str:
    return f'"{qx7_id}"'


__all__ = ["is_valid_identifier", "clean_etag", "quote_etag"]
