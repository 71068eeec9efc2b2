"""
Application settings and configuration management.

Uses Pydantic Settings for validation and environment variable support.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMSettings(BaseSettings):
    """Preset (platform-subsidized) model configuration."""

    provider: str = Field(
        default="deepseek",
        description="Provider of the preset model: 'deepseek', 'openai', or any "
                    "OpenAI-compatible provider name.",
    )
    model: str = Field(default="deepseek-chat", description="Preset model name")
    api_key: str = Field(default="", description="API key for the preset provider")
    base_url: str | None = Field(
        default="https://api.deepseek.com",
        description="Base URL for the preset provider. None uses the provider default.",
    )
    temperature: float = Field(default=0.7, description="Sampling temperature")
    max_tokens: int | None = Field(
        default=None, description="Maximum tokens per model response (None = provider default)"
    )

    model_config = SettingsConfigDict(env_prefix="LLM_")


class ChatSettings(BaseSettings):
    """Step loop, streaming and context-management limits."""

    max_steps: int = Field(
        default=20,
        description="Step limit for the main chat endpoint (reason → act → observe → respond)",
    )
    lightweight_max_steps: int = Field(
        default=1, description="Step limit for lightweight, single-shot call sites"
    )
    stream_timeout_seconds: float = Field(
        default=600.0, description="Abort the whole step loop after this many seconds"
    )
    image_timeout_seconds: float = Field(
        default=60.0, description="Timeout for a single image generation request"
    )
    compression_threshold: int = Field(
        default=32000,
        description="Compress the conversation after a turn whose total tokens exceed this",
    )
    max_tokens: int = Field(
        default=32000, description="Context budget advertised in the stream finish metadata"
    )
    keep_last_messages: int = Field(
        default=10,
        description="Messages kept when a compressed summary exists for the conversation",
    )
    compression_prefix_chars: int = Field(
        default=2000, description="Characters of transcript sent to the summarizer"
    )

    model_config = SettingsConfigDict(env_prefix="CHAT_")


class BillingSettings(BaseSettings):
    """Billing estimation and account defaults."""

    estimated_output_tokens: int = Field(
        default=1000, description="Output tokens assumed by the pre-flight cost estimate"
    )
    default_credits: str = Field(default="10.0", description="Credits granted to new accounts")
    default_monthly_limit: str = Field(default="100.0", description="Monthly spend limit")
    default_daily_limit: str = Field(default="10.0", description="Daily spend limit")

    model_config = SettingsConfigDict(env_prefix="BILLING_")


class DatabaseSettings(BaseSettings):
    """SQLAlchemy storage configuration."""

    url: str = Field(
        default="sqlite:///data/venuschat.db",
        description="SQLAlchemy database URL, e.g. 'postgresql+psycopg://user:pw@host/db'",
    )
    echo: bool = Field(default=False, description="Log every SQL statement")

    model_config = SettingsConfigDict(env_prefix="DATABASE_")


class CacheSettings(BaseSettings):
    """Redis cache for compressed conversation context."""

    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    compressed_ttl_seconds: int = Field(
        default=86400, description="Lifetime of a compressed-context entry (24h)"
    )
    key_prefix: str = Field(default="compressed", description="Cache key prefix")

    model_config = SettingsConfigDict(env_prefix="CACHE_")


class SearchSettings(BaseSettings):
    """Web search tool configuration (SerpAPI)."""

    serpapi_api_key: str = Field(default="", description="SerpAPI key; empty disables search")
    endpoint: str = Field(
        default="https://serpapi.com/search.json", description="SerpAPI JSON endpoint"
    )
    engine: str = Field(default="google", description="SerpAPI search engine")
    num_results: int = Field(default=5, description="Organic results per query")
    country: str = Field(default="us", description="Country code (gl)")
    language: str = Field(default="en", description="Interface language (hl)")
    timeout_seconds: float = Field(default=15.0, description="HTTP timeout per search")

    model_config = SettingsConfigDict(env_prefix="SEARCH_")


class ServerSettings(BaseSettings):
    """HTTP server configuration."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8000, description="Bind port")

    model_config = SettingsConfigDict(env_prefix="SERVER_")


class Settings(BaseSettings):
    """Main application settings."""

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Path | None = Field(default=None, description="Log file path")

    # Sub-configurations
    llm: LLMSettings = Field(default_factory=LLMSettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """
    Load settings from file and environment.

    Args:
        env_file: Path to .env file (optional)

    Returns:
        Loaded settings instance
    """
    global _settings
    if env_file:
        _settings = Settings(_env_file=env_file)
    else:
        _settings = Settings()
    return _settings
