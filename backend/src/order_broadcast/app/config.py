"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./order_broadcast.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Internal scheduler endpoint
    internal_token: str = "change-me-internal"

    # Broadcast limits
    max_broadcast_merchants: int = 3
    max_order_images: int = 5
    max_order_text_length: int = 5000
    max_notes_length: int = 1000

    # Deadlines (used when the producer does not supply them)
    default_pricing_timeout_hours: int = 24
    default_auto_cancel_hours: int = 48
    default_quote_validity_minutes: int = 120

    # Deadline sweeper
    sweep_interval_seconds: int = 300
    sweeper_relabel_stale_quotes: bool = False
    sweeper_expire_unquoted_broadcasts: bool = False

    # Order/Commission bridge
    order_bridge_url: str = ""
    order_bridge_timeout_seconds: float = 10.0
    bridge_max_attempts: int = 8
    bridge_retry_base_seconds: int = 30

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
