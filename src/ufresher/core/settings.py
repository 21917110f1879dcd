"""Application settings and configuration.

This module defines all configuration options for the U-Fresher coordinator.
Settings are loaded once from environment variables (or an ``.env`` file) at
startup and are immutable afterwards.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide configuration loaded from environment variables.

    The instance is frozen: components that need configuration receive it
    through their constructors and never mutate it.
    """

    # Application metadata
    app_name: str = Field(default="U-Fresher", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./ufresher.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Identity provider tokens (verification only; issuance is external)
    identity_jwt_secret: str = Field(alias="IDENTITY_JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    jwt_audience: str | None = Field(default=None, alias="JWT_AUDIENCE")

    # Administrative gate: a shared secret that elevates an account to admin
    admin_code: str | None = Field(default=None, alias="ADMIN_CODE")

    # Content moderation
    moderation_enabled: bool = Field(default=False, alias="MODERATION_ENABLED")
    classifier_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        alias="CLASSIFIER_BASE_URL",
    )
    classifier_api_key: str | None = Field(default=None, alias="CLASSIFIER_API_KEY")
    classifier_model: str = Field(default="gemini-pro", alias="CLASSIFIER_MODEL")
    classifier_timeout_seconds: float = Field(
        default=8.0,
        alias="CLASSIFIER_TIMEOUT_SECONDS",
    )

    # Realtime delivery
    realtime_backfill_window: int = Field(default=50, alias="REALTIME_BACKFILL_WINDOW")
    realtime_batch_size: int = Field(default=200, alias="REALTIME_BATCH_SIZE")
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_channel: str = Field(default="ufresher:content", alias="REDIS_CHANNEL")

    # Reconciliation of audit rows and creator auto-joins
    reconcile_interval_seconds: float = Field(
        default=300.0,
        alias="RECONCILE_INTERVAL_SECONDS",
    )
    reconcile_max_attempts: int = Field(default=5, alias="RECONCILE_MAX_ATTEMPTS")
    reconcile_enabled: bool = Field(default=True, alias="RECONCILE_ENABLED")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.
        """
        url = self.database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def classifier_configured(self) -> bool:
        """Return True if moderation is on and the classifier has credentials."""
        return bool(self.moderation_enabled and self.classifier_api_key)


settings = Settings()  # type: ignore[call-arg]
