"""Tests for oauth/lifecycle.py."""
import asyncio

import pytest

from oauth import jwt_utils
from oauth.errors import InvalidGrant, InvalidRequest, KeyBindingMismatch
from oauth.keys import KeyProvider
from oauth.lifecycle import TokenLifecycle
from oauth.stores import AuthState, MemoryStateStore

ISSUER = "http://localhost:3000"
JKT = "bound-thumbprint"


def claims(token: str) -> dict:
    return jwt_utils.parse(token)[1]


async def logged_in_state(store, clock, nonce="n1", exp=None, **kwargs):
    state = AuthState(
        iss=ISSUER,
        logged_in=True,
        exp=clock() + 600 if exp is None else exp,
        nonce=nonce,
        sub="alice",
        aud="api",
        **kwargs,
    )
    await store.create(nonce, state)
    return state


def mint_refresh(lifecycle, keys, clock, **overrides) -> str:
    now = clock()
    payload = {
        "iss": ISSUER, "sub": "alice", "aud": "api", "client_id": "c1",
        "token_type": "refresh_token", "iat": now, "exp": now + 3600,
        "jti": "j1", "cnf": {"jkt": JKT},
    }
    payload.update(overrides)
    return jwt_utils.mint(jwt_utils.jwt_header(keys.kid), payload, keys.private_key)


# ---------------------------------------------------------------------------
# Code -> Refresh
# ---------------------------------------------------------------------------

class TestRefreshFromCode:
    @pytest.mark.asyncio
    async def test_redeems_logged_in_code(self, lifecycle, store, clock):
        await logged_in_state(store, clock)
        token = await lifecycle.refresh_from_code("n1", "c1", JKT)

        payload = claims(token)
        assert payload["sub"] == "alice"
        assert payload["aud"] == "api"
        assert payload["client_id"] == "c1"
        assert payload["token_type"] == "refresh_token"
        assert payload["iss"] == ISSUER
        assert payload["cnf"] == {"jkt": JKT}
        assert payload["exp"] == clock() + lifecycle.settings.refresh_lifetime
        assert (await store.read("n1")).code_used == clock()

    @pytest.mark.asyncio
    async def test_second_redemption_fails(self, lifecycle, store, clock):
        await logged_in_state(store, clock)
        await lifecycle.refresh_from_code("n1", "c1", JKT)
        with pytest.raises(InvalidGrant, match="already been used"):
            await lifecycle.refresh_from_code("n1", "c1", JKT)

    @pytest.mark.asyncio
    async def test_concurrent_redemptions_single_winner(self, lifecycle, store, clock):
        await logged_in_state(store, clock)
        results = await asyncio.gather(
            *[lifecycle.refresh_from_code("n1", "c1", JKT) for _ in range(5)],
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, InvalidGrant)]
        assert len(successes) == 1
        assert len(failures) == 4

    @pytest.mark.asyncio
    async def test_store_race_is_caught_by_conditional_update(self, lifecycle, store, clock):
        """A stale read that still says "unused" loses at mark_code_used."""
        state = await logged_in_state(store, clock)
        await store.mark_code_used("n1", clock())

        async def stale_read(key):
            return state

        store.read = stale_read
        with pytest.raises(InvalidGrant, match="already been used"):
            await lifecycle.refresh_from_code("n1", "c1", JKT)

    @pytest.mark.asyncio
    async def test_unknown_code(self, lifecycle):
        with pytest.raises(InvalidGrant, match="code is invalid"):
            await lifecycle.refresh_from_code("missing", "c1", JKT)

    @pytest.mark.asyncio
    async def test_not_logged_in(self, lifecycle, store, clock):
        await store.create("n1", AuthState(iss=ISSUER, logged_in=False, exp=clock() + 600, nonce="n1"))
        with pytest.raises(InvalidGrant, match="not logged in"):
            await lifecycle.refresh_from_code("n1", "c1", JKT)

    @pytest.mark.asyncio
    async def test_foreign_issuer(self, lifecycle, store, clock):
        await store.create("n1", AuthState(iss="https://evil.example", logged_in=True,
                                           exp=clock() + 600, nonce="n1", sub="alice"))
        with pytest.raises(InvalidGrant, match="issuer"):
            await lifecycle.refresh_from_code("n1", "c1", JKT)

    @pytest.mark.asyncio
    async def test_expired_one_second_ago(self, lifecycle, store, clock):
        await logged_in_state(store, clock, exp=clock() - 1)
        with pytest.raises(InvalidGrant, match="expired"):
            await lifecycle.refresh_from_code("n1", "c1", JKT)
        assert (await store.read("n1")).code_used is None

    @pytest.mark.asyncio
    async def test_expiring_now_is_accepted(self, lifecycle, store, clock):
        await logged_in_state(store, clock, exp=clock())
        assert await lifecycle.refresh_from_code("n1", "c1", JKT)

    @pytest.mark.asyncio
    async def test_no_cnf_without_binding(self, bearer_settings, keys, store, clock):
        lifecycle = TokenLifecycle(bearer_settings, keys, store, clock=clock)
        await logged_in_state(store, clock)
        token = await lifecycle.refresh_from_code("n1", "c1")
        assert "cnf" not in claims(token)


# ---------------------------------------------------------------------------
# Refresh -> Refresh
# ---------------------------------------------------------------------------

class TestRotateRefresh:
    def test_rotation_freshness(self, lifecycle, keys, clock):
        old = mint_refresh(lifecycle, keys, clock)
        clock.advance()
        new = lifecycle.rotate_refresh(old, JKT)

        before, after = claims(old), claims(new)
        assert after["iat"] > before["iat"]
        assert after["jti"] != before["jti"]
        assert after["exp"] == clock() + lifecycle.settings.refresh_lifetime
        for claim in ("sub", "aud", "client_id", "cnf", "iss", "token_type"):
            assert after[claim] == before[claim]

    def test_repeated_rotation_keeps_binding(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock)
        seen = {claims(token)["jti"]}
        for _ in range(3):
            clock.advance()
            token = lifecycle.rotate_refresh(token, JKT)
            seen.add(claims(token)["jti"])
        assert len(seen) == 4
        assert claims(token)["cnf"] == {"jkt": JKT}

    def test_key_mismatch(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock)
        with pytest.raises(KeyBindingMismatch):
            lifecycle.rotate_refresh(token, "another-thumbprint")

    def test_bound_token_without_proof(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock)
        with pytest.raises(KeyBindingMismatch):
            lifecycle.rotate_refresh(token, None)

    def test_unbound_token_with_proof(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock, cnf=None)
        with pytest.raises(InvalidGrant, match="invalid"):
            lifecycle.rotate_refresh(token, JKT)

    def test_binding_ignored_when_disabled(self, bearer_settings, keys, store, clock):
        lifecycle = TokenLifecycle(bearer_settings, keys, store, clock=clock)
        token = mint_refresh(lifecycle, keys, clock)
        assert lifecycle.rotate_refresh(token, "")

    def test_expired_one_second_ago(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock, exp=clock() - 1)
        with pytest.raises(InvalidGrant, match="expired"):
            lifecycle.rotate_refresh(token, JKT)

    def test_expiring_later_is_accepted(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock, exp=clock() + 3600)
        assert lifecycle.rotate_refresh(token, JKT)

    def test_wrong_token_type(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock, token_type="access_token")
        with pytest.raises(InvalidGrant, match="refresh_token is invalid"):
            lifecycle.rotate_refresh(token, JKT)

    def test_foreign_signature(self, lifecycle, clock):
        other = KeyProvider.generate()
        token = mint_refresh(lifecycle, other, clock)
        with pytest.raises(InvalidGrant, match="refresh_token is invalid"):
            lifecycle.rotate_refresh(token, JKT)

    def test_foreign_issuer(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock, iss="https://evil.example")
        with pytest.raises(InvalidGrant, match="issuer"):
            lifecycle.rotate_refresh(token, JKT)

    def test_garbage(self, lifecycle):
        with pytest.raises(InvalidGrant, match="refresh_token is invalid"):
            lifecycle.rotate_refresh("garbage", JKT)

    def test_same_second_rotations_differ_only_in_jti(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock)
        first = claims(lifecycle.rotate_refresh(token, JKT))
        second = claims(lifecycle.rotate_refresh(token, JKT))
        assert first["iat"] == second["iat"] == clock()
        assert first["jti"] != second["jti"]

    def test_superseded_token_still_rotates(self, lifecycle, keys, clock):
        """No revocation store: an older refresh token stays usable until it expires."""
        old = mint_refresh(lifecycle, keys, clock)
        clock.advance()
        lifecycle.rotate_refresh(old, JKT)
        clock.advance()
        assert lifecycle.rotate_refresh(old, JKT)


# ---------------------------------------------------------------------------
# Refresh -> Access
# ---------------------------------------------------------------------------

class TestAccessFromRefresh:
    def test_derives_access_token(self, lifecycle, keys, clock):
        refresh = mint_refresh(lifecycle, keys, clock)
        access = lifecycle.access_from_refresh(refresh)

        header, payload = jwt_utils.parse(access)
        assert header["typ"] == "at+jwt"
        assert header["kid"] == keys.kid
        assert payload["token_type"] == "access_token"
        assert payload["exp"] == clock() + lifecycle.settings.access_lifetime
        assert payload["jti"] != claims(refresh)["jti"]
        for claim in ("sub", "aud", "client_id", "cnf"):
            assert payload[claim] == claims(refresh)[claim]
        assert jwt_utils.verify(access, keys.public_key)

    def test_access_token_cannot_derive_access(self, lifecycle, keys, clock):
        access = lifecycle.access_from_refresh(mint_refresh(lifecycle, keys, clock))
        with pytest.raises(InvalidGrant):
            lifecycle.access_from_refresh(access)

    def test_expired_refresh(self, lifecycle, keys, clock):
        token = mint_refresh(lifecycle, keys, clock, exp=clock() - 1)
        with pytest.raises(InvalidGrant, match="expired"):
            lifecycle.access_from_refresh(token)

    def test_token_response(self, lifecycle, keys, clock):
        refresh = mint_refresh(lifecycle, keys, clock)
        body = lifecycle.token_response(refresh)
        assert body["token_type"] == "DPoP"
        assert body["expires_in"] == lifecycle.settings.access_lifetime
        assert body["refresh_token"] == refresh
        assert claims(body["access_token"])["token_type"] == "access_token"


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------

class TestSessions:
    @pytest.mark.asyncio
    async def test_make_session_token(self, lifecycle, store, clock):
        grant = await lifecycle.make_session_token("c1")

        payload = claims(grant.session_token)
        assert payload["token_type"] == "session_token"
        assert payload["nonce"] == grant.nonce
        assert payload["client_id"] == "c1"
        state = await store.read(grant.nonce)
        assert state.logged_in is False
        assert state.iss == ISSUER
        assert state.exp == clock() + lifecycle.settings.state_lifetime

    @pytest.mark.asyncio
    async def test_session_to_refresh_after_login(self, lifecycle, clock):
        grant = await lifecycle.make_session_token("c1")
        await lifecycle.login("alice", grant.nonce)

        payload = claims(await lifecycle.refresh_from_session(grant.session_token))
        assert payload["sub"] == "alice"
        assert payload["aud"] == ISSUER
        assert payload["client_id"] == "c1"
        assert payload["token_type"] == "refresh_token"
        assert "cnf" not in payload

    @pytest.mark.asyncio
    async def test_session_before_login(self, lifecycle):
        grant = await lifecycle.make_session_token("c1")
        with pytest.raises(InvalidGrant, match="not logged in"):
            await lifecycle.refresh_from_session(grant.session_token)

    @pytest.mark.asyncio
    async def test_expired_session(self, lifecycle, clock):
        grant = await lifecycle.make_session_token("c1")
        await lifecycle.login("alice", grant.nonce)
        clock.advance(lifecycle.settings.state_lifetime + 1)
        with pytest.raises(InvalidGrant, match="expired"):
            await lifecycle.refresh_from_session(grant.session_token)

    @pytest.mark.asyncio
    async def test_forged_session_token_rejected(self, lifecycle, store, clock):
        await logged_in_state(store, clock, nonce="victim")
        forger = KeyProvider.generate()
        forged = jwt_utils.mint(jwt_utils.jwt_header(forger.kid), {
            "token_type": "session_token", "iss": ISSUER, "iat": clock(),
            "exp": clock() + 600, "client_id": "c1", "nonce": "victim",
        }, forger.private_key)
        with pytest.raises(InvalidGrant, match="session_token is invalid"):
            await lifecycle.refresh_from_session(forged)

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_a_session_token(self, lifecycle, keys, clock):
        with pytest.raises(InvalidGrant, match="session_token is invalid"):
            await lifecycle.refresh_from_session(mint_refresh(lifecycle, keys, clock))


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------

class TestLogin:
    @pytest.mark.asyncio
    async def test_login_marks_state(self, lifecycle, store, clock):
        grant = await lifecycle.make_session_token("c1")
        clock.advance(30)
        await lifecycle.login("alice", grant.nonce, aud="api")

        state = await store.read(grant.nonce)
        assert state.logged_in is True
        assert state.sub == "alice"
        assert state.aud == "api"
        assert state.exp == clock() + lifecycle.settings.state_lifetime

    @pytest.mark.asyncio
    async def test_login_twice(self, lifecycle):
        grant = await lifecycle.make_session_token("c1")
        await lifecycle.login("alice", grant.nonce)
        with pytest.raises(InvalidRequest, match="already logged in"):
            await lifecycle.login("mallory", grant.nonce)

    @pytest.mark.asyncio
    async def test_unknown_nonce(self, lifecycle):
        with pytest.raises(InvalidRequest, match="nonce is invalid"):
            await lifecycle.login("alice", "missing")

    @pytest.mark.asyncio
    async def test_expired_state(self, lifecycle, clock):
        grant = await lifecycle.make_session_token("c1")
        clock.advance(lifecycle.settings.state_lifetime + 1)
        with pytest.raises(InvalidRequest, match="expired"):
            await lifecycle.login("alice", grant.nonce)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sub,nonce", [("", "n1"), ("alice", ""), (None, None)])
    async def test_required_fields(self, lifecycle, sub, nonce):
        with pytest.raises(InvalidRequest, match="required"):
            await lifecycle.login(sub, nonce)


# ---------------------------------------------------------------------------
# Cookie grant
# ---------------------------------------------------------------------------

class TestCookieGrant:
    @pytest.mark.asyncio
    async def test_without_cookies_starts_session(self, lifecycle, store):
        grant = await lifecycle.cookie_grant("c1")
        assert grant.logged_in is False
        assert grant.nonce
        assert grant.session_token
        assert await store.read(grant.nonce) is not None

    @pytest.mark.asyncio
    async def test_session_cookie_after_login(self, lifecycle):
        start = await lifecycle.cookie_grant("c1")
        await lifecycle.login("alice", start.nonce)

        grant = await lifecycle.cookie_grant("c1", session_token=start.session_token)
        assert grant.logged_in is True
        assert claims(grant.refresh_token)["sub"] == "alice"
        assert claims(grant.access_token)["token_type"] == "access_token"

    @pytest.mark.asyncio
    async def test_refresh_cookie_rotates(self, lifecycle, clock):
        start = await lifecycle.cookie_grant("c1")
        await lifecycle.login("alice", start.nonce)
        first = await lifecycle.cookie_grant("c1", session_token=start.session_token)

        clock.advance()
        second = await lifecycle.cookie_grant(
            "c1", session_token=start.session_token, refresh_token=first.refresh_token
        )
        assert second.logged_in is True
        assert claims(second.refresh_token)["jti"] != claims(first.refresh_token)["jti"]


@pytest.mark.asyncio
async def test_code_flow_with_separate_store(settings, keys, clock):
    store = MemoryStateStore()
    lifecycle = TokenLifecycle(settings, keys, store, clock=clock)
    await logged_in_state(store, clock)
    body = await lifecycle.exchange_code("n1", "c1", JKT)
    clock.advance()
    rotated = lifecycle.exchange_refresh(body["refresh_token"], JKT)
    assert claims(rotated["refresh_token"])["jti"] != claims(body["refresh_token"])["jti"]
