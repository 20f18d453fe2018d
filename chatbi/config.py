"""
Application Configuration

Pydantic-based settings management using environment variables.
Supports nested configuration, validation, and caching.

Usage:
    from chatbi.config import get_settings

    settings = get_settings()
    print(settings.llm.default_provider)
    print(settings.pipeline.max_model_round_trips)
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import AnyUrl, Field, PostgresDsn, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["openai", "anthropic", "local", "gateway"]


class LLMSettings(BaseSettings):
    """Model provider configuration."""

    default_provider: ProviderName = Field(
        default="openai", description="Default model provider"
    )
    sql_provider: ProviderName | None = Field(
        None, description="Provider for SQL generation (defaults to default_provider)"
    )
    translation_provider: ProviderName | None = Field(
        None, description="Provider for column-name translation"
    )
    analysis_provider: ProviderName | None = Field(
        None, description="Provider for attribution analysis and reports"
    )

    # OpenAI configuration
    openai_api_key: str | None = Field(None, description="OpenAI API key", min_length=20)
    openai_model: str = Field(default="gpt-4o", description="OpenAI model")
    openai_base_url: str | None = Field(
        None, description="Optional OpenAI-compatible base URL"
    )

    # Anthropic configuration
    anthropic_api_key: str | None = Field(None, description="Anthropic API key", min_length=20)
    anthropic_model: str = Field(
        default="claude-3-5-sonnet-20241022", description="Anthropic model"
    )

    # Local (Ollama) configuration
    local_base_url: str = Field(
        default="http://localhost:11434",
        description="Base URL for the local model server (Ollama)",
    )
    local_model: str = Field(default="qwen2.5:7b", description="Local model name")
    local_api_key: str | None = Field(
        None, description="Optional bearer token for a secured local server"
    )

    # Generic chat-completions gateway
    gateway_base_url: str | None = Field(
        None,
        description="Base URL of an OpenAI-compatible gateway (…/v1)",
    )
    gateway_model: str = Field(default="gpt-4o-mini", description="Gateway model name")
    gateway_api_key: str | None = Field(None, description="Gateway API key")
    gateway_auth: Literal["bearer", "x-api-key", "none"] = Field(
        default="bearer",
        description="Authentication header dialect used by the gateway",
    )

    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=2.0,
        description="Temperature for model responses (0.0 = deterministic)",
    )
    max_tokens: int = Field(
        default=2000,
        gt=0,
        le=16000,
        description="Maximum tokens per model response",
    )
    hosted_timeout: float = Field(
        default=20.0,
        gt=0,
        description="Request timeout in seconds for hosted providers",
    )
    local_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Request timeout in seconds for local providers",
    )

    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("openai_api_key")
    @classmethod
    def validate_openai_key(cls, v: str | None) -> str | None:
        """Validate OpenAI API key format."""
        if v and not v.startswith("sk-"):
            raise ValueError("OpenAI API key must start with 'sk-'")
        return v

    @field_validator("anthropic_api_key")
    @classmethod
    def validate_anthropic_key(cls, v: str | None) -> str | None:
        """Validate Anthropic API key format."""
        if v and not v.startswith("sk-ant-"):
            raise ValueError("Anthropic API key must start with 'sk-ant-'")
        return v

    @model_validator(mode="after")
    def validate_provider_keys(self) -> "LLMSettings":
        """Ensure credentials exist for the selected hosted providers."""
        provider_key_map = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }
        selected = {
            self.default_provider,
            self.sql_provider,
            self.translation_provider,
            self.analysis_provider,
        }
        for provider in selected:
            if provider in provider_key_map and not provider_key_map[provider]:
                raise ValueError(
                    f"API key required for {provider} provider. Set LLM_{provider.upper()}_API_KEY"
                )
        if "gateway" in selected and not self.gateway_base_url:
            raise ValueError("LLM_GATEWAY_BASE_URL is required for the gateway provider")
        return self

    def timeout_for(self, provider: str) -> float:
        """Return the request timeout for a provider."""
        if provider == "local":
            return self.local_timeout
        return self.hosted_timeout


class DatabaseSettings(BaseSettings):
    """Default target database configuration."""

    db_type: Literal["postgresql", "mysql"] = Field(
        default="postgresql",
        description="Target database type",
        validation_alias="DATABASE_TYPE",
    )
    url: AnyUrl | None = Field(
        None,
        description="Default target database URL (the database you query)",
    )
    pool_size: int = Field(default=5, gt=0, le=20, description="Connection pool size")
    query_timeout: int = Field(
        default=30,
        gt=0,
        description="Statement timeout in seconds",
    )
    max_rows: int = Field(
        default=1000,
        gt=0,
        le=100000,
        description="Maximum rows returned to the client",
    )

    model_config = SettingsConfigDict(
        env_prefix="DATABASE_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("url", mode="before")
    @classmethod
    def normalize_url(cls, v: str | AnyUrl | None) -> str | AnyUrl | None:
        """Treat empty strings as missing."""
        if v == "":
            return None
        return v

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: AnyUrl | None) -> AnyUrl | None:
        """Validate supported database URL schemes."""
        if v is None:
            return v
        parsed = urlparse(str(v))
        scheme = parsed.scheme.split("+")[0].lower() if parsed.scheme else ""
        if scheme not in {"postgres", "postgresql", "mysql"}:
            raise ValueError("DATABASE_URL must use postgresql or mysql scheme.")
        if not parsed.hostname:
            raise ValueError("DATABASE_URL must include a host.")
        return v


class SystemDatabaseSettings(BaseSettings):
    """System database configuration (registry, permissions, conversations, audit)."""

    url: PostgresDsn | None = Field(
        None,
        description="System PostgreSQL connection URL",
    )

    model_config = SettingsConfigDict(
        env_prefix="SYSTEM_DATABASE_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("url", mode="before")
    @classmethod
    def normalize_url(cls, v: str | PostgresDsn | None) -> str | PostgresDsn | None:
        """Treat empty strings as missing."""
        if v == "":
            return None
        return v


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Application log level",
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format",
    )
    date_format: str = Field(
        default="%Y-%m-%d %H:%M:%S",
        description="Log timestamp format",
    )
    file: Path | None = Field(
        default=None,
        description="Optional log file path (None = stdout only)",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
    )

    def configure(self) -> None:
        """Configure Python logging with these settings."""
        handlers: list[logging.Handler] = [logging.StreamHandler()]

        if self.file:
            self.file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.file))

        logging.basicConfig(
            level=getattr(logging, self.level),
            format=self.format,
            datefmt=self.date_format,
            handlers=handlers,
            force=True,
        )


class PipelineSettings(BaseSettings):
    """Chat pipeline behaviour settings."""

    max_model_round_trips: int = Field(
        default=4,
        ge=1,
        le=8,
        description="Upper bound on model calls per request, corrections included.",
    )
    join_regeneration_enabled: bool = Field(
        default=True,
        description="Regenerate once when a cross-table question yields a join-less query.",
    )
    history_token_budget: int = Field(
        default=3000,
        ge=0,
        description="Token budget for prior chat turns sent with each generation (0 keeps all).",
    )
    id_enrichment_enabled: bool = Field(
        default=True,
        description="Replace foreign-key id columns with readable names.",
    )
    batch_lookup_max_ids: int = Field(
        default=500,
        ge=1,
        le=10000,
        description="Maximum distinct ids per batch lookup query.",
    )
    column_translation_enabled: bool = Field(
        default=True,
        description="Translate result column names into display labels.",
    )
    llm_column_translation: bool = Field(
        default=True,
        description="Ask the model for column labels before using the static dictionary.",
    )
    sample_rows_for_translation: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Rows sent to the model as context for column translation.",
    )
    attribution_enabled: bool = Field(
        default=True,
        description="Run attribution analysis on time-series results.",
    )
    report_enabled: bool = Field(
        default=True,
        description="Generate a text report when a report is requested.",
    )

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_file=".env",
        extra="ignore",
    )


class SecuritySettings(BaseSettings):
    """Access control and masking settings."""

    masking_salt: SecretStr = Field(
        default=SecretStr("default-masking-salt"),
        description="Salt used for hash masking",
    )
    admin_role: str = Field(default="admin", description="Role that bypasses data policies")

    model_config = SettingsConfigDict(
        env_prefix="SECURITY_",
        env_file=".env",
        extra="ignore",
    )


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    Settings are nested by domain (llm, database, system_database, logging,
    pipeline, security).

    Environment Variables:
        ENVIRONMENT: Deployment environment (development, staging, production)
        APP_NAME: Application name for logging
        LLM_*: Model provider configuration (see LLMSettings)
        DATABASE_*: Default target database (see DatabaseSettings)
        SYSTEM_DATABASE_*: System database (see SystemDatabaseSettings)
        LOG_*: Logging configuration (see LoggingSettings)
        PIPELINE_*: Pipeline behaviour (see PipelineSettings)
        SECURITY_*: Masking and admin role (see SecuritySettings)

    Example:
        >>> settings = get_settings()
        >>> settings.llm.hosted_timeout
        20.0
    """

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    app_name: str = Field(default="ChatBI", description="Application name")
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, gt=0, le=65535, description="API server port")

    llm: LLMSettings = Field(default_factory=LLMSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    system_database: SystemDatabaseSettings = Field(default_factory=SystemDatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    database_credentials_key: str | None = Field(
        default=None,
        description="Fernet key for encrypting stored database credentials.",
        validation_alias="DATABASE_CREDENTIALS_KEY",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @model_validator(mode="after")
    def configure_logging(self) -> "Settings":
        """Configure logging when settings are loaded."""
        self.logging.configure()
        return self

    def model_post_init(self, __context) -> None:
        """Log configuration on initialization."""
        logger = logging.getLogger(__name__)
        logger.info(
            f"Settings loaded for {self.app_name} ({self.environment})",
            extra={
                "environment": self.environment,
                "llm_provider": self.llm.default_provider,
                "max_model_round_trips": self.pipeline.max_model_round_trips,
            },
        )


_DOTENV_PATH = Path(__file__).resolve().parents[1] / ".env"


def _apply_dotenv_precedence() -> None:
    env_source = os.getenv("CHATBI_ENV_SOURCE", "dotenv").lower()
    if env_source not in {"dotenv", "envfile", "file"}:
        return
    if _DOTENV_PATH.exists():
        load_dotenv(_DOTENV_PATH, override=True)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Singleton settings instance
    """
    _apply_dotenv_precedence()
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache so the next call reloads from the environment."""
    get_settings.cache_clear()
