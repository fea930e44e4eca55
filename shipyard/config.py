"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file without clobbering values already exported
load_dotenv(override=False)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Webhooks
    webhook_secret: str = Field(default="")

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: float = 5.0
    scheduler_max_concurrency: int = Field(default=5, ge=1)

    # Build executor
    repositories_dir: str = "repositories"
    deployed_sites_dir: str = "deployed-sites"
    public_domain: str = "yourplatform.com"
    dependency_manifest: str = "package.json"
    install_command: str = "npm install"
    fetch_timeout_seconds: float = 120.0
    install_timeout_seconds: float = 300.0  # 5 minutes
    build_timeout_seconds: float = 600.0  # 10 minutes
    cancel_grace_seconds: float = 5.0

    # Retention / introspection
    retention_days: int = 30
    recent_deployments_limit: int = 10

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_directory: str = "logs"
    log_file_name: str = "shipyard.log"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
