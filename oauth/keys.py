"""RSA signing key for issued tokens.

The key is loaded once at startup and survives restarts so tokens issued
earlier remain verifiable. Lookup order: PRIVATE_KEY environment value,
then the key file, then a freshly generated key saved to the key file.
"""

import logging
import os
from pathlib import Path
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from config import Settings
from oauth.dpop import compute_thumbprint

logger = logging.getLogger(__name__)


class KeyProvider:
    """Holds the signing key pair, its kid and the public JWKS."""

    def __init__(self, private_key: rsa.RSAPrivateKey):
        self.private_key = private_key
        self.public_key = private_key.public_key()

        public_jwk = RSAAlgorithm.to_jwk(self.public_key, as_dict=True)
        self.kid = compute_thumbprint(
            {k: public_jwk[k] for k in ("e", "kty", "n")}
        )
        self.jwks: dict[str, Any] = {
            "keys": [{**public_jwk, "kid": self.kid, "use": "sig", "alg": "RS256"}]
        }

    @classmethod
    def generate(cls) -> "KeyProvider":
        return cls(rsa.generate_private_key(public_exponent=65537, key_size=2048))

    @classmethod
    def from_pem(cls, pem: str | bytes) -> "KeyProvider":
        if isinstance(pem, str):
            pem = pem.encode()
        private_key = serialization.load_pem_private_key(pem, password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("signing key must be an RSA private key")
        return cls(private_key)

    def private_pem(self) -> bytes:
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


def load_keys(settings: Settings) -> KeyProvider:
    """Load the signing key, creating and saving one if none exists."""
    if settings.private_key_pem:
        logger.info("[KEYS] Using PRIVATE_KEY from environment")
        return KeyProvider.from_pem(settings.private_key_pem)

    key_file: Path = settings.private_key_file
    if key_file.exists():
        logger.info(f"[KEYS] Loaded signing key from {key_file}")
        return KeyProvider.from_pem(key_file.read_bytes())

    provider = KeyProvider.generate()
    try:
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key_file.write_bytes(provider.private_pem())
        os.chmod(key_file, 0o600)  # Owner read/write only
        logger.info(f"[KEYS] Generated and saved new signing key to {key_file}")
    except IOError as e:
        logger.warning(f"[KEYS] Could not save signing key to file: {e}")
    return provider
