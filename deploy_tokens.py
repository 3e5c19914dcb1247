"""
deploy_tokens.py: compact HS256 access tokens for deployed MCP workers.

Every deployment has its own signing secret. The authorization server signs
with it at token exchange and the Worker verifies with the same secret, so
a token minted for one deployment never verifies against another.

verify_token() never raises. It returns the claims or None.
"""

import binascii
import secrets
import time
from typing import Any

import jwt
from jwt.utils import base64url_decode, base64url_encode

JWT_ALGORITHM = "HS256"

# Claim checks are done here, not by PyJWT: exp is compared strictly and a
# missing exp is accepted.
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
}


def sign_token(claims: dict[str, Any], secret: str) -> str:
    """Sign claims as a three-segment JWT with HMAC-SHA256."""
    return jwt.encode(dict(claims), secret, algorithm=JWT_ALGORITHM,
                      headers={"typ": "JWT"})


def _canonical_segment(segment: str) -> bool:
    try:
        return base64url_encode(base64url_decode(segment)).decode("ascii") == segment
    except (binascii.Error, ValueError, UnicodeError):
        return False


def verify_token(token: str, secret: str, now: float | None = None) -> dict[str, Any] | None:
    """Verify signature and expiry; return the claims, or None if invalid.

    Only HS256 is accepted, whatever the header claims. A token without an
    ``exp`` claim never expires (known gap, kept for compatibility with
    tokens already in circulation).
    """
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    # base64url tolerates junk in the trailing bits; the signature must be
    # byte-for-byte what we would have produced.
    if not _canonical_segment(parts[2]):
        return None

    try:
        claims = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM],
                            options=_DECODE_OPTIONS)
    except jwt.PyJWTError:
        return None

    if "exp" in claims:
        exp = claims["exp"]
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        if now is None:
            now = int(time.time())
        if exp < now:
            return None

    return claims


def generate_signing_secret() -> str:
    """Fresh per-deployment secret: 64 random bytes, hex (128 chars)."""
    return secrets.token_hex(64)


def generate_token_id() -> str:
    """Unique token id for the jti claim: 16 random bytes, hex."""
    return secrets.token_hex(16)
