"""HMAC helpers for attribution link integrity."""
from __future__ import annotations

import hashlib
import hmac
from hashlib import sha256
from typing import Optional

from xfactor.config import settings

_DELIMITER = ":"


def _get_secret(secret: Optional[str] = None) -> bytes:
    value = secret if secret is not None else settings.LINK_SECRET
    if not value:
        raise RuntimeError("Link secret is not configured")
    return value.encode("utf-8")


def _compose(link_id: str, user_id: str, loop_id: str) -> str:
    return _DELIMITER.join((link_id, user_id, loop_id))


def sign_link(
    link_id: str,
    user_id: str,
    loop_id: str,
    *,
    secret: Optional[str] = None,
    length: Optional[int] = None,
) -> str:
    """Return a truncated hex HMAC over ``link_id:user_id:loop_id``."""

    size = length or settings.LINK_SIGNATURE_LENGTH
    digest = hmac.new(_get_secret(secret), _compose(link_id, user_id, loop_id).encode("utf-8"), sha256)
    return digest.hexdigest()[:size]


def verify_link(
    signature: Optional[str],
    link_id: str,
    user_id: str,
    loop_id: str,
    *,
    secret: Optional[str] = None,
    length: Optional[int] = None,
) -> bool:
    size = length or settings.LINK_SIGNATURE_LENGTH
    if not signature or len(signature) != size:
        return False
    expected = sign_link(link_id, user_id, loop_id, secret=secret, length=size)
    return hmac.compare_digest(signature, expected)


def short_code_for(link_id: str, length: Optional[int] = None) -> str:
    """Derive the public short code: truncated uppercase SHA-256 of the link id."""

    size = length or settings.LINK_SHORT_CODE_LENGTH
    return hashlib.sha256(link_id.encode("utf-8")).hexdigest()[:size].upper()


__all__ = ["sign_link", "verify_link", "short_code_for"]
