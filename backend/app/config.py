"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Automation Hub"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database Settings (empty = in-memory repository)
    DATABASE_URL: str = ""
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Execution engine
    EXECUTION_TIMEOUT_SECONDS: float = 300.0
    STOP_GRACE_PERIOD_SECONDS: float = 10.0
    MAX_CONCURRENT_EXECUTIONS: int = 3
    EXECUTION_HISTORY_LIMIT: int = 100

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_SECONDS: float = 1.0

    # Event bus
    EVENT_HANDLER_TIMEOUT_SECONDS: float = 5.0
    EVENT_BUFFER_SIZE: int = 500

    # Secrets handed to plugins are read from <SECRET_PREFIX><NAME>
    SECRET_PREFIX: str = "AUTOMATION_SECRET_"

    # Outbound webhooks (comma separated URLs)
    WEBHOOK_URLS: str = ""
    WEBHOOK_SECRET: str = ""
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # User attributed to runs when the caller does not send one
    DEFAULT_USER_ID: str = "system"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def webhook_urls_list(self) -> list[str]:
        """Parse WEBHOOK_URLS string into a list."""
        return [url.strip() for url in self.WEBHOOK_URLS.split(",") if url.strip()]

    def validate_secrets(self) -> None:
        """Validate that outbound webhooks are signed in production.

        Raises:
            RuntimeError: If production has webhook URLs but no WEBHOOK_SECRET
        """
        if self.is_production and self.webhook_urls_list and not self.WEBHOOK_SECRET:
            raise RuntimeError(
                "CRITICAL: WEBHOOK_SECRET environment variable must be set in production "
                "when WEBHOOK_URLS is configured."
            )

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
