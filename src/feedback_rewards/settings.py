"""Application settings and configuration."""

import sys

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_JWT_DEFAULTS = {"change-me-in-production", "secret"}


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "feedback-rewards"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"  # console or json
    allowed_origins: str = "http://localhost:3000"
    public_base_url: str = "http://localhost:3000"

    # JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Database
    database_url: str = "sqlite:///./feedback_rewards.db"
    db_echo: bool = False
    db_timeout_seconds: float = 30.0  # Lock wait / pool checkout bound

    # Referrals
    referral_validity_days: int = Field(default=30, gt=0)
    referral_code_length: int = Field(default=8, ge=6, le=32)
    referral_code_max_attempts: int = Field(default=10, gt=0)

    # Defaults for newly provisioned businesses
    default_referral_enabled: bool = True
    default_points_per_feedback: int = Field(default=10, ge=0)
    default_points_per_referral: int = Field(default=50, ge=0)
    default_welcome_bonus_points: int = Field(default=25, ge=0)


# Global settings instance
settings = Settings()

if settings.env == "production":
    if settings.jwt_secret_key in _INSECURE_JWT_DEFAULTS or len(settings.jwt_secret_key) < 32:
        print(
            "\nFATAL: JWT_SECRET_KEY is insecure or too short (min 32 chars).\n"
            "   Set a strong random value:  openssl rand -hex 32\n",
            file=sys.stderr,
        )
        sys.exit(1)
