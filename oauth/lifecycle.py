"""Token lifecycle engine.

Turns authorization codes, session tokens and refresh tokens into the
next token in the chain:

    login -> code (nonce) -> refresh token -> refresh token (rotated)
                                          \\-> access token
    session token (cookie flow) -> refresh token

Refresh tokens are not recorded when rotated: a captured older refresh
token still rotates until it expires. There is no revocation store.
"""

import hmac
import logging
import time
import uuid
from typing import Callable, NamedTuple, Optional

from config import Settings
from oauth import jwt_utils
from oauth.errors import InvalidGrant, InvalidRequest, KeyBindingMismatch
from oauth.jwt_utils import ACCESS_TOKEN, REFRESH_TOKEN, SESSION_TOKEN
from oauth.keys import KeyProvider
from oauth.stores import AuthState, StateStore

logger = logging.getLogger(__name__)


class SessionGrant(NamedTuple):
    session_token: str
    nonce: str


class CookieGrant(NamedTuple):
    """Outcome of the cookie_token grant."""

    logged_in: bool
    nonce: Optional[str] = None
    session_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class TokenLifecycle:
    """Mints, verifies and rotates tokens against a state store."""

    def __init__(
        self,
        settings: Settings,
        keys: KeyProvider,
        store: StateStore,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.settings = settings
        self.keys = keys
        self.store = store
        self.clock = clock or (lambda: int(time.time()))
        self.issuer = settings.base_url

    @property
    def token_type(self) -> str:
        return "DPoP" if self.settings.use_dpop else "Bearer"

    def _mint(self, payload: dict, access: bool = False) -> str:
        header = jwt_utils.at_header(self.keys.kid) if access else jwt_utils.jwt_header(self.keys.kid)
        return jwt_utils.mint(header, payload, self.keys.private_key)

    def _verified_claims(self, token: str, token_type: str) -> dict:
        """Parse token and check signature, type, issuer and expiry."""
        try:
            _, payload = jwt_utils.parse(token)
        except InvalidGrant:
            raise InvalidGrant(f"{token_type} is invalid")
        if payload.get("token_type") != token_type:
            raise InvalidGrant(f"{token_type} is invalid")
        if not jwt_utils.verify(token, self.keys.public_key):
            raise InvalidGrant(f"{token_type} is invalid")
        if payload.get("iss") != self.issuer:
            raise InvalidGrant(f"{token_type} invalid issuer")
        exp = payload.get("exp")
        if not isinstance(exp, int) or exp < self.clock():
            raise InvalidGrant(f"{token_type} is expired")
        return payload

    # ============== Code -> Refresh ==============

    async def refresh_from_code(self, code: str, client_id: str, jkt: str = "") -> str:
        """Redeem a logged-in nonce once for a refresh token."""
        state = await self.store.read(code)
        if state is None:
            raise InvalidGrant("code is invalid")
        if not state.logged_in:
            raise InvalidGrant("code is not logged in")
        if state.iss != self.issuer:
            raise InvalidGrant("code invalid issuer")
        now = self.clock()
        if state.is_expired(now):
            raise InvalidGrant("code is expired")
        if state.code_used is not None:
            raise InvalidGrant("code has already been used")
        if not await self.store.mark_code_used(code, now):
            logger.warning(f"[TOKEN] Concurrent redemption lost for code {code[:8]}...")
            raise InvalidGrant("code has already been used")

        payload = {
            "iss": self.issuer,
            "sub": state.sub,
            "aud": state.aud,
            "client_id": client_id,
            "token_type": REFRESH_TOKEN,
            "iat": now,
            "exp": now + self.settings.refresh_lifetime,
            "jti": str(uuid.uuid4()),
        }
        if self.settings.use_dpop:
            payload["cnf"] = {"jkt": jkt}
        logger.info(
            f"[TOKEN] Code redeemed for sub={state.sub}",
            extra={"client_id": client_id, "sub": state.sub, "jkt": jkt or None},
        )
        return self._mint(payload)

    # ============== Refresh -> Refresh ==============

    def rotate_refresh(self, refresh_token: str, jkt: Optional[str] = None) -> str:
        """Issue a new refresh token carrying the old one's claims.

        `iat` has whole-second resolution: rotations within the same
        second share an `iat` and differ only in `jti`.

        Args:
            refresh_token: Current refresh token
            jkt: Thumbprint of the DPoP proof sent with this request, if any

        Raises:
            InvalidGrant: Token invalid, expired or not key-bound under DPoP
            KeyBindingMismatch: Proof key differs from the token's cnf.jkt
        """
        payload = self._verified_claims(refresh_token, REFRESH_TOKEN)

        bound = (payload.get("cnf") or {}).get("jkt")
        if self.settings.use_dpop and (jkt or bound):
            if not bound:
                raise InvalidGrant("refresh_token is invalid")
            if not hmac.compare_digest(str(bound).encode(), (jkt or "").encode()):
                raise KeyBindingMismatch("DPoP jkt does not match refresh_token jkt")

        now = self.clock()
        rotated = {
            **payload,
            "iat": now,
            "exp": now + self.settings.refresh_lifetime,
            "jti": str(uuid.uuid4()),
        }
        return self._mint(rotated)

    # ============== Refresh -> Access ==============

    def access_from_refresh(self, refresh_token: str) -> str:
        payload = self._verified_claims(refresh_token, REFRESH_TOKEN)
        now = self.clock()
        access = {
            **payload,
            "token_type": ACCESS_TOKEN,
            "iat": now,
            "exp": now + self.settings.access_lifetime,
            "jti": str(uuid.uuid4()),
        }
        return self._mint(access, access=True)

    # ============== Session -> Refresh ==============

    async def refresh_from_session(self, session_token: str) -> str:
        payload = self._verified_claims(session_token, SESSION_TOKEN)

        state = await self.store.read(payload.get("nonce") or "")
        if state is None:
            raise InvalidGrant("session state has expired")
        if not state.logged_in:
            raise InvalidGrant("session state is not logged in")
        if state.iss != self.issuer:
            raise InvalidGrant("session_token invalid issuer")

        now = self.clock()
        refresh = {
            "iss": self.issuer,
            "sub": state.sub,
            "aud": state.aud,
            "client_id": payload.get("client_id"),
            "token_type": REFRESH_TOKEN,
            "iat": now,
            "exp": now + self.settings.refresh_lifetime,
            "jti": str(uuid.uuid4()),
        }
        return self._mint(refresh)

    async def make_session_token(self, client_id: str) -> SessionGrant:
        """Create an unauthenticated state entry and its session token."""
        nonce = str(uuid.uuid4())
        now = self.clock()
        exp = now + self.settings.state_lifetime
        await self.store.create(nonce, AuthState(iss=self.issuer, logged_in=False, exp=exp, nonce=nonce))

        session_token = self._mint({
            "token_type": SESSION_TOKEN,
            "iss": self.issuer,
            "iat": now,
            "exp": exp,
            "client_id": client_id,
            "nonce": nonce,
        })
        return SessionGrant(session_token, nonce)

    # ============== Grants ==============

    def token_response(self, refresh_token: str) -> dict:
        """Derive an access token and build the token endpoint body."""
        return {
            "access_token": self.access_from_refresh(refresh_token),
            "token_type": self.token_type,
            "expires_in": self.settings.access_lifetime,
            "refresh_token": refresh_token,
        }

    async def exchange_code(self, code: str, client_id: str, jkt: str = "") -> dict:
        refresh_token = await self.refresh_from_code(code, client_id, jkt)
        return self.token_response(refresh_token)

    def exchange_refresh(self, refresh_token: str, jkt: str = "") -> dict:
        return self.token_response(self.rotate_refresh(refresh_token, jkt))

    async def cookie_grant(
        self,
        client_id: str,
        session_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> CookieGrant:
        """Non-standard grant driven by session/refresh cookies."""
        if not session_token and not refresh_token:
            session = await self.make_session_token(client_id)
            return CookieGrant(logged_in=False, nonce=session.nonce, session_token=session.session_token)

        if refresh_token:
            new_refresh = self.rotate_refresh(refresh_token)
        else:
            new_refresh = await self.refresh_from_session(session_token)
        return CookieGrant(
            logged_in=True,
            access_token=self.access_from_refresh(new_refresh),
            refresh_token=new_refresh,
        )

    # ============== Login ==============

    async def login(self, sub: str, nonce: str, aud: Optional[str] = None) -> None:
        """Mark the nonce's state as logged in for sub."""
        if not sub:
            raise InvalidRequest("sub is required")
        if not nonce:
            raise InvalidRequest("nonce is required")
        state = await self.store.read(nonce)
        if state is None:
            raise InvalidRequest("nonce is invalid")
        if state.logged_in:
            raise InvalidRequest("nonce is already logged in")
        now = self.clock()
        if state.is_expired(now):
            raise InvalidRequest("state has expired")

        await self.store.update(nonce, AuthState(
            iss=self.issuer,
            logged_in=True,
            exp=now + self.settings.state_lifetime,
            nonce=nonce,
            sub=sub,
            aud=aud or self.issuer,
        ))
        logger.info(f"[LOGIN] Nonce {nonce[:8]}... logged in as {sub}", extra={"sub": sub})
