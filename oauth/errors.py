"""Token and proof failures.

Every failure carries the HTTP status it maps to and a short, stable
message. The router turns them into JSON error bodies.
"""


class TokenError(Exception):
    """Base class for lifecycle and proof failures."""

    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.message}


class InvalidRequest(TokenError):
    """A required request field is missing or unusable."""

    def to_dict(self) -> dict:
        return {"error": "invalid_request", "error_description": self.message}


class InvalidGrant(TokenError):
    """Code or token is invalid, expired, already used or foreign."""


class MalformedToken(InvalidGrant):
    """Token is not a three-part compact JWS with JSON segments."""


class KeyBindingMismatch(TokenError):
    """DPoP key does not match the token's cnf.jkt."""


class MissingOrDuplicateProof(TokenError):
    pass


class MalformedProof(TokenError):
    pass


class UnsupportedProofAlgorithm(MalformedProof):
    pass


class InvalidProofPayload(TokenError):
    pass


class ExpiredProof(TokenError):
    pass


class InvalidProofSignature(TokenError):
    pass


class NotImplementedGrant(TokenError):
    status_code = 501

    def __init__(self, message: str = "Not Implemented"):
        super().__init__(message)


class StateUnavailable(TokenError):
    """The state store failed; fatal for the current request only."""

    status_code = 503

    def __init__(self, message: str = "state store unavailable"):
        super().__init__(message)
