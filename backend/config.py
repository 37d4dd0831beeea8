"""
Configuration management for the Order Settlement Platform.

Loads settings from .env via pydantic-settings.

Security notes:
    - The client-confirmation HMAC key (gateway_key_secret) and the webhook
      HMAC key (gateway_webhook_secret) are separate secrets
    - validate_production_settings() enforces strict CORS and required secrets
"""
import logging

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ── Database ────────────────────────────────────────────────────
    database_url: str = "sqlite:///./data/order_platform.db"

    # ── Application ─────────────────────────────────────────────────
    environment: str = "development"

    # ── Auth (JWT) ──────────────────────────────────────────────────
    jwt_secret: str = ""
    jwt_issuer: str = "order-platform-api"
    jwt_access_ttl_minutes: int = 15

    # ── Payment Gateway ─────────────────────────────────────────────
    gateway_base_url: str = "https://api.razorpay.com"
    gateway_key_id: str = ""
    gateway_key_secret: str = ""        # also signs client confirmations
    gateway_webhook_secret: str = ""    # signs webhook bodies
    gateway_timeout_seconds: float = 10.0
    default_currency: str = "INR"

    # ── Job Queues ──────────────────────────────────────────────────
    worker_enabled: bool = True
    worker_poll_seconds: float = 1.0
    analytics_batch_size: int = 100
    analytics_flush_seconds: float = 30.0
    cleanup_interval_seconds: int = 3600
    abandoned_order_minutes: int = 60
    completed_job_retention_days: int = 7

    # ── Coins ───────────────────────────────────────────────────────
    coin_credit_expiry_days: int = 90
    referral_reward_coins: int = 100

    # ── Cache ───────────────────────────────────────────────────────
    redis_url: str = ""                 # empty => in-memory tier only
    cache_ttl_seconds: int = 60

    # ── Notifications ───────────────────────────────────────────────
    email_api_url: str = ""             # empty => emails are logged, not sent
    email_api_key: str = ""
    email_from: str = "orders@example.com"

    # ── CORS ────────────────────────────────────────────────────────
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # allow unknown .env keys without crashing
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    def validate_production_settings(self):
        """
        Validate settings for production safety.

        Called during app startup. Production refuses to boot without the
        secrets that guard authentication and payment reconciliation.
        """
        if self.environment == "production":
            if "*" in self.cors_origins:
                raise ValueError(
                    "CORS_ORIGINS must not contain '*' in production. "
                    "Set explicit allowed origins."
                )
            if not self.jwt_secret:
                raise ValueError(
                    "JWT_SECRET must be set in production. "
                    "It is used to sign access tokens."
                )
            if not self.gateway_key_secret or not self.gateway_webhook_secret:
                raise ValueError(
                    "GATEWAY_KEY_SECRET and GATEWAY_WEBHOOK_SECRET must be set in production. "
                    "They verify payment confirmations and webhooks."
                )
            logger.info("Production settings validated")
        else:
            warnings = []
            if not self.gateway_webhook_secret:
                warnings.append("GATEWAY_WEBHOOK_SECRET not set (all webhooks will be rejected)")
            if not self.redis_url:
                warnings.append("REDIS_URL not set (cache runs in-memory only)")
            if "*" in self.cors_origins:
                warnings.append("CORS_ORIGINS contains '*' (open access)")
            for w in warnings:
                logger.warning(w)


# Global settings instance
settings = Settings()
