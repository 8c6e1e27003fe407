"""DPoP proof validation (RFC 9449) for the token endpoint.

A proof is a JWT signed by the client's key, carrying that public key in
its header. A valid proof yields the key's thumbprint, which is recorded
in refresh tokens as cnf.jkt and checked again on every rotation.
"""

import base64
import hashlib
import json
import logging
import time
from typing import Any, Callable, Optional, Sequence

import jwt
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from config import Settings
from oauth import jwt_utils
from oauth.errors import (
    ExpiredProof,
    InvalidProofPayload,
    InvalidProofSignature,
    MalformedProof,
    MalformedToken,
    MissingOrDuplicateProof,
    UnsupportedProofAlgorithm,
)

logger = logging.getLogger(__name__)

DPOP_TYP = "dpop+jwt"
REQUIRED_CLAIMS = ("jti", "htm", "htu", "iat")
PRIVATE_JWK_MEMBERS = ("d", "p", "q", "dp", "dq", "qi", "oth", "k")


def compute_thumbprint(jwk: dict[str, Any]) -> str:
    """Thumbprint of a JWK: SHA-256 over its members sorted by name.

    Args:
        jwk: Public JWK dictionary

    Returns:
        Base64url-encoded digest without padding
    """
    canonical = json.dumps(jwk, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    digest = hashlib.sha256(canonical.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class DPoPValidator:
    """Validates the DPoP header of token endpoint requests."""

    def __init__(self, settings: Settings, clock: Optional[Callable[[], int]] = None):
        self.settings = settings
        self.clock = clock or (lambda: int(time.time()))

    def validate(self, header_values: Sequence[str]) -> str:
        """Validate the request's DPoP header values.

        Args:
            header_values: Every DPoP header value sent with the request

        Returns:
            The JWK thumbprint of the proof key, or "" when key-binding is
            disabled. An empty thumbprint means binding is not required,
            never that it is satisfied.

        Raises:
            TokenError: One of the proof failures
        """
        if not self.settings.use_dpop:
            return ""

        if not header_values:
            raise MissingOrDuplicateProof("DPoP header is required")
        if len(header_values) > 1:
            raise MissingOrDuplicateProof("Only one DPoP header is allowed")
        proof = header_values[0]

        try:
            header, payload = jwt_utils.parse(proof)
        except MalformedToken:
            raise MalformedProof("DPoP header is invalid")

        if header.get("typ") != DPOP_TYP:
            raise MalformedProof("DPoP typ is invalid")
        alg = header.get("alg")
        if alg not in self.settings.dpop_signing_algs:
            raise UnsupportedProofAlgorithm("DPoP alg is invalid")
        jwk = header.get("jwk")
        if not jwk or not isinstance(jwk, dict):
            raise MalformedProof("DPoP header is invalid")
        if any(member in jwk for member in PRIVATE_JWK_MEMBERS):
            raise MalformedProof("DPoP header is invalid")

        if any(not payload.get(claim) for claim in REQUIRED_CLAIMS):
            raise InvalidProofPayload("DPoP payload is invalid")
        iat = payload["iat"]
        if not isinstance(iat, (int, float)) or isinstance(iat, bool):
            raise InvalidProofPayload("DPoP payload is invalid")

        now = self.clock()
        if iat + self.settings.dpop_lifetime < now:
            raise ExpiredProof("DPoP is expired")
        if payload["htm"] != "POST":
            raise InvalidProofPayload("DPoP method is invalid")
        if payload["htu"] != self.settings.token_url:
            raise InvalidProofPayload("DPoP path is invalid")

        try:
            public_key = jwt.PyJWK(jwk, algorithm=alg).key
        except jwt.PyJWTError as e:
            logger.info(f"[DPOP] Unusable proof key: {e}")
            raise MalformedProof("DPoP header is invalid")
        if not isinstance(public_key, RSAPublicKey):
            raise MalformedProof("DPoP header is invalid")

        if not jwt_utils.verify(proof, public_key):
            raise InvalidProofSignature("DPoP signature is invalid")

        jkt = compute_thumbprint(jwk)
        logger.debug("[DPOP] Proof accepted", extra={"jkt": jkt})
        return jkt
