"""Configuration for the token server.

Settings are read from the environment once at startup and frozen.
Every component receives the Settings instance explicitly.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


CONFIG_DIR = Path.home() / ".dpop-token-server"

TOKEN_ENDPOINT = "/token"
LOGIN_ENDPOINT = "/login"
JWKS_ENDPOINT = "/jwks"
REVOCATION_ENDPOINT = "/revoke"
METADATA_ENDPOINT = "/.well-known/oauth-authorization-server"

ACCESS_LIFETIME = 60 * 60  # 1 hour
REFRESH_LIFETIME = 30 * 24 * 60 * 60  # 30 days
STATE_LIFETIME = 10 * 60  # 10 minutes
DPOP_LIFETIME = 60


@dataclass(frozen=True)
class Settings:
    """Immutable server configuration."""

    host: Optional[str] = None
    port: int = 3000
    use_dpop: bool = True
    production: bool = False
    access_lifetime: int = ACCESS_LIFETIME
    refresh_lifetime: int = REFRESH_LIFETIME
    state_lifetime: int = STATE_LIFETIME
    dpop_lifetime: int = DPOP_LIFETIME
    private_key_pem: Optional[str] = None
    private_key_file: Path = CONFIG_DIR / "private_key.pem"
    supabase_url: str = ""
    supabase_key: str = ""
    state_table: str = "oauth_state"
    log_table: str = "logs"
    log_level: str = "INFO"

    @property
    def base_url(self) -> str:
        """Canonical issuer URL."""
        if self.host:
            return f"https://{self.host}"
        return f"http://localhost:{self.port}"

    @property
    def token_url(self) -> str:
        """Absolute token endpoint URL, the only accepted DPoP htu."""
        return self.base_url + TOKEN_ENDPOINT

    @property
    def dpop_signing_algs(self) -> list[str]:
        return ["RS256"] if self.use_dpop else []

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def load_env() -> None:
    """Load .env (local override) or the bundled .env.public defaults."""
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)
        return
    public_env = Path(__file__).parent / ".env.public"
    if public_env.exists():
        load_dotenv(public_env)


def load_settings() -> Settings:
    """Build Settings from the environment."""
    load_env()

    key_file = os.getenv("PRIVATE_KEY_FILE")

    return Settings(
        host=os.getenv("HOST") or None,
        port=int(os.getenv("PORT") or 3000),
        use_dpop=not os.getenv("SUPPRESS_DPOP_CHECK"),
        production=os.getenv("APP_ENV", "").lower() == "production",
        access_lifetime=int(os.getenv("ACCESS_LIFETIME") or ACCESS_LIFETIME),
        refresh_lifetime=int(os.getenv("REFRESH_LIFETIME") or REFRESH_LIFETIME),
        state_lifetime=int(os.getenv("STATE_LIFETIME") or STATE_LIFETIME),
        dpop_lifetime=int(os.getenv("DPOP_LIFETIME") or DPOP_LIFETIME),
        private_key_pem=os.getenv("PRIVATE_KEY") or None,
        private_key_file=Path(key_file) if key_file else CONFIG_DIR / "private_key.pem",
        supabase_url=os.getenv("SUPABASE_URL", ""),
        supabase_key=os.getenv("SUPABASE_ANON_KEY", ""),
        state_table=os.getenv("STATE_TABLE", "oauth_state"),
        log_table=os.getenv("LOG_TABLE", "logs"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
