"""Shared fixtures: keys, settings, a controllable clock and DPoP proof helpers."""
import time
import uuid

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from config import Settings
from oauth.dpop import DPoPValidator, compute_thumbprint
from oauth.keys import KeyProvider
from oauth.lifecycle import TokenLifecycle
from oauth.stores import MemoryStateStore


class FakeClock:
    def __init__(self, now: int = None):
        self.now = now or int(time.time())

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int = 1) -> None:
        self.now += seconds


class ProofKey:
    """Client-side DPoP key that signs proofs for the token endpoint."""

    def __init__(self):
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.jwk = RSAAlgorithm.to_jwk(self.private_key.public_key(), as_dict=True)
        self.thumbprint = compute_thumbprint(self.jwk)

    def proof(self, htu: str, htm: str = "POST", iat: int = None, jwk: dict = None,
              typ: str = "dpop+jwt", claims: dict = None) -> str:
        payload = {
            "jti": str(uuid.uuid4()),
            "htm": htm,
            "htu": htu,
            "iat": int(time.time()) if iat is None else iat,
        }
        if claims is not None:
            payload = claims
        headers = {"typ": typ, "jwk": self.jwk if jwk is None else jwk}
        return jwt.encode(payload, self.private_key, algorithm="RS256", headers=headers)


@pytest.fixture(scope="session")
def keys():
    return KeyProvider.generate()


@pytest.fixture(scope="session")
def proof_key():
    return ProofKey()


@pytest.fixture(scope="session")
def other_proof_key():
    return ProofKey()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def bearer_settings():
    return Settings(use_dpop=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def lifecycle(settings, keys, store, clock):
    return TokenLifecycle(settings, keys, store, clock=clock)


@pytest.fixture
def validator(settings, clock):
    return DPoPValidator(settings, clock=clock)
