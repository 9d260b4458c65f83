"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./officiant.db"

    # CORS (comma-separated)
    CORS_ORIGINS: str = "http://localhost:3000"

    # Primary transport (SMTP)
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_SECURE: bool = False  # Implicit TLS; port 465 implies it
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM_EMAIL: str = ""  # Falls back to SMTP_USER
    SMTP_MAX_CONNECTIONS: int = 5
    SMTP_RATE_LIMIT_PER_SECOND: float = 5.0
    SMTP_INIT_RETRY_INTERVAL_SECONDS: float = 5.0

    # Secondary transport (Resend)
    RESEND_API_KEY: str = ""
    RESEND_FROM_EMAIL: str = ""
    EMAIL_FALLBACK_ENABLED: bool = True

    # Email timeouts (seconds)
    EMAIL_SMTP_CONNECTION_TIMEOUT: float = 5.0
    EMAIL_SMTP_COMMAND_TIMEOUT: float = 8.0
    EMAIL_PROVIDER_API_TIMEOUT: float = 10.0
    EMAIL_RULE_FETCH_TIMEOUT: float = 15.0

    # Email retries
    EMAIL_MAX_RETRIES: int = 1
    EMAIL_RETRY_BASE_DELAY: float = 0.5

    # Rule batching
    EMAIL_RULE_BATCH_SIZE: int = 5
    EMAIL_RULE_TIMEOUT_PER_RULE: float = 3.0
    EMAIL_BATCH_TIMEOUT_CAP: float = 15.0

    # Field resolution caches
    FIELD_CACHE_TTL_SECONDS: float = 300.0

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def smtp_from_address(self) -> str:
        return self.SMTP_FROM_EMAIL or self.SMTP_USER

    @property
    def smtp_configured(self) -> bool:
        """SMTP needs a host and credentials."""
        return bool(self.SMTP_HOST and self.SMTP_USER and self.SMTP_PASSWORD)

    @property
    def resend_configured(self) -> bool:
        return bool(self.RESEND_API_KEY and self.RESEND_FROM_EMAIL)


settings = Settings()
