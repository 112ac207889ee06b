# backend/config.py
"""Settings loaded from environment variables (and a local .env file)."""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # ── Supabase ─────────────────────────────────────────────────────────────
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    trade_table: str = "trade"
    offer_table: str = "offer"

    # ── CORS ─────────────────────────────────────────────────────────────────
    # Comma-separated list of allowed origins
    allowed_origins: str = "*"

    # ── Lifecycle timing ─────────────────────────────────────────────────────
    offer_ttl_hours: int = Field(default=48, ge=1)
    seller_response_hours: int = Field(default=72, ge=1, description="Before awaiting_seller trades expire")
    delivery_window_hours: int = Field(default=168, ge=1, description="Before unsent/unconfirmed trades fail")

    # ── Item-transfer system ─────────────────────────────────────────────────
    transfer_api_url: Optional[str] = None
    transfer_timeout_seconds: float = Field(default=5.0, gt=0)

    log_level: str = "INFO"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


settings = Settings()
