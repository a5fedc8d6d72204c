"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="wod_broker")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (e.g. sqlite:///./local.db for local runs and tests)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour
    # SQLite only: seconds a writer waits for the database lock.
    SQLITE_BUSY_TIMEOUT_S: float = Field(default=30.0)

    # JWT verification - REQUIRED
    # Tokens are minted by the identity provider; this service only verifies them.
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT signing key shared with the identity provider (32+ chars)."
    )
    JWT_ALGORITHM: str = Field(default="HS256")
    # Checked only when set; must match what the identity provider stamps.
    JWT_AUDIENCE: Optional[str] = Field(default=None)
    JWT_ISSUER: Optional[str] = Field(default=None)
    # Lifetime of tokens minted locally (service-to-service calls).
    JWT_TTL_HOURS: int = Field(default=24, ge=1)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # --- ENTITLEMENTS ---
    # Zero-cost plan assigned at signup and used when nothing else applies.
    DEFAULT_PLAN_ID: str = Field(default="free-2025")
    # Reference clock zone for calendar-month usage periods.
    USAGE_PERIOD_TIMEZONE: str = Field(default="UTC")
    SUBSCRIPTION_PERIOD_DAYS: int = Field(default=30, ge=1)
    DEFAULT_TRIAL_DAYS: int = Field(default=30, ge=1)
    TRIAL_REMINDER_LEAD_DAYS: int = Field(default=3, ge=1)

    # --- CREDITS ---
    # Attempts for a balance mutation that hits a serialization failure / lock timeout.
    CREDIT_MUTATION_MAX_ATTEMPTS: int = Field(default=3, ge=1, le=10)
    CREDIT_MUTATION_RETRY_BACKOFF_S: float = Field(default=0.05, ge=0)

    # --- USAGE RECORDING ---
    # True: hand usage records to Celery. False: write them inline after the response is built.
    USAGE_RECORDING_ASYNC: bool = Field(default=True)

    # --- AI PROVIDERS ---
    AI_PROVIDER_ORDER: str = Field(default="anthropic,openai,gemini")
    AI_REQUEST_TIMEOUT_S: float = Field(default=30.0, gt=0)
    AI_MAX_OUTPUT_TOKENS: int = Field(default=2000)
    ANTHROPIC_API_KEY: Optional[str] = Field(default=None)
    ANTHROPIC_MODEL: str = Field(default="claude-3-5-sonnet-latest")
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_MODEL: str = Field(default="gpt-4o")
    GOOGLE_AI_API_KEY: Optional[str] = Field(default=None)
    GEMINI_MODEL: str = Field(default="gemini-1.5-pro")

    # --- BILLING COLLABORATOR ---
    # HMAC-SHA256 secret for signed events from the payment side (credit packs, renewals).
    BILLING_WEBHOOK_SECRET: Optional[str] = Field(default=None)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.1)

    @property
    def ai_provider_order(self) -> List[str]:
        return [p.strip().lower() for p in self.AI_PROVIDER_ORDER.split(",") if p.strip()]


# Global settings instance
settings = Settings()
