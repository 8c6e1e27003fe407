"""JWT utilities for session, refresh and access tokens.

Tokens are compact RS256 JWS values produced with PyJWT. Verification
only checks the signature; claim rules (type, expiry, issuer) belong to
the lifecycle engine.
"""

import logging
from typing import Any

import jwt

from oauth.errors import MalformedToken

logger = logging.getLogger(__name__)

# Only algorithms listed here are ever used to select a verifier
ALLOWED_ALGORITHMS = ("RS256",)
JWT_ALGORITHM = "RS256"

SESSION_TOKEN = "session_token"
REFRESH_TOKEN = "refresh_token"
ACCESS_TOKEN = "access_token"

# Signature only. Claims are checked by the caller with strict `exp < now`.
_SIGNATURE_ONLY = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
}
_UNVERIFIED = {**_SIGNATURE_ONLY, "verify_signature": False}


def jwt_header(kid: str) -> dict:
    """Header profile for session and refresh tokens."""
    return {"alg": JWT_ALGORITHM, "typ": "jwt", "kid": kid}


def at_header(kid: str) -> dict:
    """Header profile for access tokens."""
    return {"alg": JWT_ALGORITHM, "typ": "at+jwt", "kid": kid}


def mint(header: dict, payload: dict, private_key: Any) -> str:
    """Sign payload with RS256 under the given header.

    Args:
        header: One of the header profiles (carries typ and kid)
        payload: Token claims
        private_key: RSA private key (cryptography object or PEM)

    Returns:
        The compact header.payload.signature string
    """
    headers = {k: v for k, v in header.items() if k != "alg"}
    return jwt.encode(payload, private_key, algorithm=JWT_ALGORITHM, headers=headers)


def parse(token: str) -> tuple[dict, dict]:
    """Decode header and payload without verifying anything.

    Raises:
        MalformedToken: If a segment is missing or not valid JSON
    """
    if not isinstance(token, str) or token.count(".") != 2:
        raise MalformedToken("token is malformed")
    try:
        header = jwt.get_unverified_header(token)
        payload = jwt.decode(token, options=_UNVERIFIED)
    except jwt.InvalidTokenError as e:
        logger.debug(f"[JWT] Unparseable token: {e}")
        raise MalformedToken("token is malformed") from e
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise MalformedToken("token is malformed")
    return header, payload


def verify(token: str, public_key: Any) -> bool:
    """Check the token signature against public_key.

    The algorithm comes from the token's own header and must be in
    ALLOWED_ALGORITHMS; anything else fails without trying a verifier.
    """
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError as e:
        logger.debug(f"[JWT] Unreadable header: {e}")
        return False

    alg = header.get("alg")
    if alg not in ALLOWED_ALGORITHMS:
        logger.debug(f"[JWT] Rejected algorithm: {alg}")
        return False

    try:
        jwt.decode(token, public_key, algorithms=[alg], options=_SIGNATURE_ONLY)
    except jwt.InvalidTokenError as e:
        logger.debug(f"[JWT] Signature check failed: {e}")
        return False
    return True
