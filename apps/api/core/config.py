"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the application.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
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
    # DATABASE_URL wins when set (tests, managed databases); otherwise the
    # URL is assembled from the POSTGRES_* parts.
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="filepay")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # User tokens are issued by the auth provider and verified here (HS256).
    SECRET_KEY: str = Field(
        default=...,  # Required - no default
        description="JWT verification key. Must be cryptographically secure (32+ chars)."
    )

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)
    EXPOSE_API_DOCS: bool = Field(default=False)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Email Configuration
    EMAIL_ENABLED: bool = Field(default=False)
    SMTP_SERVER: str = Field(default="localhost")
    SMTP_PORT: int = Field(default=587)
    SMTP_USERNAME: Optional[str] = Field(default=None)
    SMTP_PASSWORD: Optional[str] = Field(default=None)
    FROM_EMAIL: str = Field(default="onboarding@filepay.app")
    FROM_NAME: str = Field(default="FilePay")

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Public site URL, used for checkout redirects and links in e-mails.
    WEB_APP_BASE_URL: str = Field(default="http://localhost:3000")

    # Stripe (hosted checkout/portal + webhooks)
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None)
    STRIPE_PRO_PRICE_ID: Optional[str] = Field(default=None)
    STRIPE_BILLING_PORTAL_CONFIG_ID: Optional[str] = Field(default=None)
    STRIPE_CURRENCY: str = Field(default="usd")
    STRIPE_TIMEOUT_S: int = Field(default=30)
    STRIPE_MAX_NETWORK_RETRIES: int = Field(default=2)

    # Object storage (S3 / MinIO / R2 / Supabase S3 gateway)
    STORAGE_BUCKET: str = Field(default="uploads")
    S3_ENDPOINT_URL: Optional[str] = Field(default=None)
    S3_ACCESS_KEY: Optional[str] = Field(default=None)
    S3_SECRET_KEY: Optional[str] = Field(default=None)
    S3_REGION: str = Field(default="us-east-1")
    S3_TIMEOUT_S: int = Field(default=10)
    # Lifetime of download URLs handed to payers.
    SIGNED_URL_TTL_S: int = Field(default=60, ge=10, le=3600)

    # Admin cleanup credentials
    # ADMIN_PURGE_TOKEN: static token for curl/manual use.
    # ADMIN_ACTION_SECRET: HMAC key for signed, time-boxed action links.
    ADMIN_PURGE_TOKEN: Optional[str] = Field(default=None)
    ADMIN_ACTION_SECRET: Optional[str] = Field(default=None)
    ADMIN_ACTION_TTL_S: int = Field(default=3600)
    ADMIN_REPORT_EMAIL: Optional[str] = Field(default=None)

    # Content policy: extensions that get a link flagged at creation.
    BLOCKED_FILE_EXTENSIONS: str = Field(default=".exe,.scr,.bat,.cmd,.msi,.js,.vbs,.jar,.apk")

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def blocked_extensions(self) -> set[str]:
        return {
            ext.strip().lower()
            for ext in (self.BLOCKED_FILE_EXTENSIONS or "").split(",")
            if ext.strip()
        }


def validate_production_config(
    *,
    environment: str,
    debug: bool,
    cors_origins: Optional[str],
    postgres_password: str,
    database_url: Optional[str] = None,
) -> None:
    """
    Refuse to boot a production process with development settings.

    Raises ValueError describing the first offending setting.
    """
    if (environment or "").lower() != "production":
        return
    if debug:
        raise ValueError("DEBUG must be False in production")
    if not (cors_origins or "").strip():
        raise ValueError("CORS_ORIGINS must be set in production")
    if not database_url and (postgres_password == "postgres" or len(postgres_password or "") < 12):
        raise ValueError("POSTGRES_PASSWORD is too weak for production")


# Global settings instance
settings = Settings()
