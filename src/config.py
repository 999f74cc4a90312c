"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "PulseBridge API"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_db_url: str  # direct postgres connection string for asyncpg
    supabase_jwt_secret: str  # HS256 secret used to sign user access tokens

    # --- Whoop ---
    whoop_client_id: str = ""
    whoop_client_secret: str = ""  # also the webhook signing key
    whoop_api_base: str = "https://api.prod.whoop.com/developer/v2"
    whoop_token_url: str = "https://api.prod.whoop.com/oauth/oauth2/token"

    # --- Terra ---
    terra_signing_secret: str = ""

    # --- Scheduled sync ---
    cron_secret: str = ""

    # --- Sync tuning ---
    token_refresh_buffer_seconds: int = 300
    provider_page_size: int = 25
    provider_max_pages: int = 10
    scheduled_max_pages: int = 5
    scheduled_days_back: int = 2
    scheduled_max_concurrent: int = 3
    http_timeout_seconds: float = 30.0

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
