"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    app_url: str = "http://localhost:8000"  # Public base URL used in gateway callbacks

    # Logging
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_json: bool = True  # JSON format for production, False for human-readable

    # Database
    database_url: str = "sqlite+aiosqlite:///./billing.db"

    # PostgreSQL Connection Pool Settings (ignored for SQLite)
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800
    db_echo: bool = False

    # Authentication
    session_header: str = "X-Session-Token"

    # ZarinPal Payman (direct debit)
    zarinpal_mode: str = "live"  # "live" talks to ZarinPal, "mock" uses the in-process fake
    zarinpal_merchant_id: str = ""
    zarinpal_base_url: str = "https://api.zarinpal.com"
    zarinpal_timeout: float = 10.0  # seconds
    min_contract_days: int = 30

    # Signature encryption and the pending-contract recovery cookie
    signature_secret: str = ""  # Required; the app refuses to start without it
    contract_cookie_name: str = "pending-contract"
    contract_cookie_max_age: int = 3600  # 1 hour
    contract_cookie_secure: bool = False

    # Graceful Shutdown
    shutdown_timeout: int = 30  # Seconds to wait for in-flight requests to drain

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class ConfigurationError(RuntimeError):
    """Raised at startup when a required setting is missing."""


def check_required_settings(settings: Settings) -> None:
    """Fail fast on settings the service cannot run safely without."""
    if not settings.signature_secret.strip():
        raise ConfigurationError(
            "SIGNATURE_SECRET is not set. It encrypts stored contract signatures "
            "and signs the pending-contract cookie, so it must be a long random value."
        )
