"""DPoP token server - FastAPI application.

Wires the components together:
- Settings (config.py), loaded once
- Signing key (oauth/keys.py)
- State store: Supabase table when configured, in-memory otherwise
- Token lifecycle engine and DPoP validator
- OAuth routes (oauth/endpoints.py)
"""
import logging
from typing import Optional

from fastapi import FastAPI
from supabase import create_client, Client

from config import Settings, load_settings
from logging_config import flush_logs, setup_logging
from oauth.dpop import DPoPValidator
from oauth.endpoints import build_router
from oauth.keys import KeyProvider, load_keys
from oauth.lifecycle import TokenLifecycle
from oauth.stores import MemoryStateStore, StateStore, SupabaseStateStore

VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def create_supabase(settings: Settings) -> Optional[Client]:
    if not settings.has_supabase:
        return None
    return create_client(settings.supabase_url, settings.supabase_key)


def create_app(
    settings: Optional[Settings] = None,
    keys: Optional[KeyProvider] = None,
    store: Optional[StateStore] = None,
    supabase: Optional[Client] = None,
) -> FastAPI:
    """Build the application. Missing components are created from settings."""
    settings = settings or load_settings()
    keys = keys or load_keys(settings)
    if store is None:
        if supabase is not None:
            store = SupabaseStateStore(supabase, table=settings.state_table)
        else:
            store = MemoryStateStore()

    logger.info(f"[STARTUP] Issuer: {settings.base_url}")
    logger.info(f"[STARTUP] DPoP key-binding enabled: {settings.use_dpop}")
    logger.info(f"[STARTUP] State store: {type(store).__name__}")

    lifecycle = TokenLifecycle(settings, keys, store)
    validator = DPoPValidator(settings)

    app = FastAPI(
        title="DPoP Token Server",
        description="OAuth 2.0 token issuance with DPoP-bound refresh tokens",
        version=VERSION,
    )
    app.include_router(build_router(settings, keys, lifecycle, validator))

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "dpop-token-server", "dpop": settings.use_dpop}

    return app


def run(settings: Optional[Settings] = None) -> None:
    """Configure logging and serve the app with uvicorn."""
    import uvicorn

    settings = settings or load_settings()
    supabase = create_supabase(settings)
    setup_logging(settings, supabase_client=supabase)

    app = create_app(settings, supabase=supabase)
    logger.info(f"Starting token server on port {settings.port}")
    try:
        uvicorn.run(app, host="0.0.0.0", port=settings.port)
    finally:
        flush_logs()


if __name__ == "__main__":
    run()
