"""OAuth endpoints for the token server.

This module contains:
- Discovery metadata (/.well-known/oauth-authorization-server)
- JWKS (/jwks)
- Login (/login)
- Token endpoint (/token)
- Revocation stub (/revoke)
"""

import logging

from fastapi import APIRouter, Request, Form
from fastapi.responses import JSONResponse, Response

from config import (
    JWKS_ENDPOINT,
    LOGIN_ENDPOINT,
    METADATA_ENDPOINT,
    REVOCATION_ENDPOINT,
    TOKEN_ENDPOINT,
    Settings,
)
from oauth.dpop import DPoPValidator
from oauth.errors import (
    InvalidGrant,
    InvalidRequest,
    KeyBindingMismatch,
    NotImplementedGrant,
    TokenError,
)
from oauth.keys import KeyProvider
from oauth.lifecycle import CookieGrant, TokenLifecycle

logger = logging.getLogger(__name__)

REQUEST_FIELDS = ("grant_type", "client_id", "code", "refresh_token", "sub", "nonce", "aud")


def authorization_server_metadata(settings: Settings) -> dict:
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    base_url = settings.base_url
    metadata = {
        "issuer": base_url,
        "token_endpoint": f"{base_url}{TOKEN_ENDPOINT}",
        "jwks_uri": f"{base_url}{JWKS_ENDPOINT}",
        "grant_types_supported": [
            "authorization_code",
            "client_credentials",
            "refresh_token",
            "cookie_token",  # non-standard
        ],
        "revocation_endpoint": f"{base_url}{REVOCATION_ENDPOINT}",
    }
    if settings.use_dpop:
        metadata["dpop_signing_alg_values_supported"] = settings.dpop_signing_algs
    return metadata


def error_response(error: TokenError) -> Response:
    if isinstance(error, NotImplementedGrant):
        return Response("Not Implemented", status_code=error.status_code)
    return JSONResponse(error.to_dict(), status_code=error.status_code)


def set_token_cookies(response: Response, settings: Settings, access_token: str, refresh_token: str) -> None:
    response.set_cookie(
        "access_token",
        access_token or "",
        max_age=settings.access_lifetime if access_token else 0,
        path="/",
        secure=settings.production,
        httponly=True,
        samesite="strict",
    )
    response.set_cookie(
        "refresh_token",
        refresh_token or "",
        max_age=settings.refresh_lifetime if refresh_token else 0,
        path=TOKEN_ENDPOINT,
        secure=settings.production,
        httponly=True,
        samesite="strict",
    )


def set_session_cookie(response: Response, settings: Settings, session_token: str) -> None:
    response.set_cookie(
        "session_token",
        session_token or "",
        max_age=settings.state_lifetime if session_token else 0,
        path=TOKEN_ENDPOINT,
        secure=settings.production,
        httponly=True,
        samesite="strict",
    )


def _check_fields(data: dict) -> dict:
    """Reject request fields that are present but not strings."""
    for field in REQUEST_FIELDS:
        value = data.get(field)
        if value is not None and not isinstance(value, str):
            raise InvalidRequest(f"{field} is invalid")
    return data


async def _read_body(request: Request) -> dict:
    """Form-encoded body, falling back to JSON."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("application/json"):
            data = await request.json()
        else:
            data = dict(await request.form())
    except ValueError:
        raise InvalidRequest("request body is invalid")
    if not isinstance(data, dict):
        raise InvalidRequest("request body is invalid")
    return _check_fields(data)


def build_router(
    settings: Settings,
    keys: KeyProvider,
    lifecycle: TokenLifecycle,
    validator: DPoPValidator,
) -> APIRouter:
    """Create the OAuth router bound to the given components."""
    router = APIRouter(tags=["oauth"])
    metadata = authorization_server_metadata(settings)

    # ============== Discovery ==============

    @router.get(METADATA_ENDPOINT)
    async def oauth_authorization_server():
        return metadata

    @router.get(JWKS_ENDPOINT)
    async def jwks():
        return keys.jwks

    # ============== Login ==============

    @router.post(LOGIN_ENDPOINT)
    async def login(request: Request):
        """Mark a pending nonce as logged in (called after out-of-band authentication)."""
        try:
            data = await _read_body(request)
            await lifecycle.login(data.get("sub"), data.get("nonce"), data.get("aud"))
        except TokenError as e:
            logger.info(f"[LOGIN] Rejected: {e.message}")
            return error_response(e)
        return Response(status_code=202)

    # ============== Token Endpoint ==============

    @router.post(TOKEN_ENDPOINT)
    async def token(
        request: Request,
        grant_type: str = Form(None),
        client_id: str = Form(None),
        code: str = Form(None),
        refresh_token: str = Form(None),
    ):
        """OAuth 2.0 Token Endpoint."""
        if grant_type is None:
            try:
                data = await request.json()
            except ValueError:
                data = None
            if not isinstance(data, dict):
                return JSONResponse({"error": "invalid_request"}, status_code=400)
            try:
                _check_fields(data)
            except InvalidRequest as e:
                return error_response(e)
            grant_type = data.get("grant_type")
            client_id = data.get("client_id")
            code = data.get("code")
            refresh_token = data.get("refresh_token")

        logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")

        try:
            if grant_type == "authorization_code":
                if not client_id:
                    raise InvalidRequest("client_id is required")
                if not code:
                    raise InvalidRequest("code is required")
                jkt = validator.validate(request.headers.getlist("dpop"))
                return JSONResponse(await lifecycle.exchange_code(code, client_id, jkt))

            if grant_type == "refresh_token":
                if not refresh_token:
                    raise InvalidRequest("refresh_token is required")
                jkt = validator.validate(request.headers.getlist("dpop"))
                return JSONResponse(lifecycle.exchange_refresh(refresh_token, jkt))

            if grant_type == "cookie_token":  # non-standard
                if not client_id:
                    raise InvalidRequest("client_id is required")
                grant = await lifecycle.cookie_grant(
                    client_id,
                    session_token=request.cookies.get("session_token"),
                    refresh_token=request.cookies.get("refresh_token"),
                )
                return _cookie_response(grant)

            if grant_type == "client_credentials":
                raise NotImplementedGrant()

        except TokenError as e:
            logger.info(
                f"[TOKEN] {grant_type} rejected: {e.message}",
                extra={"grant_type": grant_type, "client_id": client_id},
            )
            response = error_response(e)
            if grant_type == "cookie_token" and isinstance(e, (InvalidGrant, KeyBindingMismatch)):
                # Stale or DPoP-bound cookies; the next call starts a fresh session
                set_token_cookies(response, settings, "", "")
                set_session_cookie(response, settings, "")
            return response

        return JSONResponse({"error": "unsupported_grant_type"}, status_code=400)

    def _cookie_response(grant: CookieGrant) -> JSONResponse:
        if not grant.logged_in:
            response = JSONResponse({"loggedIn": False, "nonce": grant.nonce})
            set_session_cookie(response, settings, grant.session_token)
            return response
        response = JSONResponse({"loggedIn": True})
        set_token_cookies(response, settings, grant.access_token, grant.refresh_token)
        return response

    # ============== Revocation ==============

    @router.post(REVOCATION_ENDPOINT)
    async def revoke():
        return error_response(NotImplementedGrant())

    return router
