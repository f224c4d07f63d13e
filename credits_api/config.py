"""
Configuration Management
========================

Centralized configuration using Pydantic Settings with environment variable support.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # API Service Configuration
    # -------------------------------------------------------------------------
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_debug: bool = Field(default=False, description="Debug mode")
    api_title: str = Field(default="Credits Ledger API", description="API title")
    api_version: str = Field(default="1.0.0", description="API version")

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    database_url: str = Field(
        default="sqlite:///./credits.db",
        description="Database connection URL",
    )

    # -------------------------------------------------------------------------
    # Redis Configuration
    # -------------------------------------------------------------------------
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for rate limiting",
    )

    # -------------------------------------------------------------------------
    # Rate Limiting
    # -------------------------------------------------------------------------
    rate_limit_enabled: bool = Field(
        default=True,
        description="Enable rate limiting",
    )
    rate_limit_requests_per_minute: int = Field(
        default=120,
        description="Maximum billable requests per minute per API key",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or console)")

    # -------------------------------------------------------------------------
    # CORS
    # -------------------------------------------------------------------------
    cors_origins: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )
    cors_allow_credentials: bool = Field(
        default=True,
        description="Allow credentials in CORS",
    )

    # -------------------------------------------------------------------------
    # Sessions (issued by the auth provider, verified here)
    # -------------------------------------------------------------------------
    jwt_secret: str = Field(
        default="change-me-in-production",
        description="Secret used to verify session tokens",
    )
    jwt_algorithm: str = Field(default="HS256", description="Session token algorithm")
    jwt_expiration_hours: int = Field(default=24, description="Session token lifetime")

    # -------------------------------------------------------------------------
    # API Keys
    # -------------------------------------------------------------------------
    api_key_prefix: str = Field(
        default="bs_",
        description="Prefix of issued API keys",
    )

    # -------------------------------------------------------------------------
    # Credit consumption rates
    # -------------------------------------------------------------------------
    credits_cost_per_call: int = Field(
        default=1,
        description="Credits consumed per API call",
    )
    credits_cost_per_gb_month: int = Field(
        default=10,
        description="Credits consumed per GB stored per month",
    )
    paid_free_quota_calls: int = Field(
        default=0,
        description="Residual free API calls per month for paid users",
    )
    paid_free_quota_gb: float = Field(
        default=0,
        description="Residual free storage (GB-months) for paid users",
    )
    free_tier_quota_calls: int = Field(
        default=100,
        description="Free API calls per month for free-tier users",
    )
    free_tier_quota_gb: float = Field(
        default=1,
        description="Free storage (GB-months) for free-tier users",
    )

    # -------------------------------------------------------------------------
    # Monthly grant job
    # -------------------------------------------------------------------------
    free_monthly_credits: int = Field(
        default=50,
        description="Credits granted to every free-tier user each month",
    )
    signup_credits: int = Field(
        default=50,
        description="One-time credits granted when a user is first seen (0 disables)",
    )
    grant_job_user_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound on the work done for a single user by the grant job",
    )
    cron_secret: Optional[str] = Field(
        default=None,
        description="Shared secret for cron endpoints (unset = open, dev only)",
    )

    # -------------------------------------------------------------------------
    # Stripe Configuration
    # -------------------------------------------------------------------------
    stripe_secret_key: Optional[str] = Field(
        default=None,
        description="Stripe secret key for payments",
    )
    stripe_webhook_secret: Optional[str] = Field(
        default=None,
        description="Stripe webhook signing secret",
    )
    stripe_price_id_pro_monthly: str = Field(
        default="price_pro_monthly",
        description="Stripe Price ID for the monthly Pro plan",
    )
    stripe_price_id_pro_yearly: str = Field(
        default="price_pro_yearly",
        description="Stripe Price ID for the yearly Pro plan",
    )
    stripe_price_id_enterprise_monthly: str = Field(
        default="price_enterprise_monthly",
        description="Stripe Price ID for the monthly Enterprise plan",
    )
    stripe_price_id_enterprise_yearly: str = Field(
        default="price_enterprise_yearly",
        description="Stripe Price ID for the yearly Enterprise plan",
    )
    provider_max_attempts: int = Field(
        default=3,
        description="Attempts for idempotent payment provider calls",
    )
    provider_backoff_seconds: float = Field(
        default=0.5,
        description="Initial backoff between provider call attempts",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
