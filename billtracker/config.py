"""Configuration for the bill tracker resilience layer."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # AI summarizer
    anthropic_api_key: str = ""
    claude_model: str = "claude-3-5-sonnet-20241022"
    ai_request_timeout: float = 30.0
    summary_max_tokens: int = 1024

    # News search
    news_api_key: str = ""
    news_api_url: str = "https://newsapi.org/v2/everything"
    news_max_articles: int = 5
    news_request_timeout: float = 15.0

    # Circuit breakers (thresholds in failures, timeouts in seconds)
    scraper_failure_threshold: int = 3
    scraper_reset_timeout: float = 120.0
    ai_failure_threshold: int = 5
    ai_reset_timeout: float = 300.0
    news_failure_threshold: int = 3
    news_reset_timeout: float = 180.0

    # Retry defaults
    retry_max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    # Fallback store
    fallback_ttl: float = 24 * 60 * 60

    # Server-side result caches
    cache_max_entries: int = 100
    cache_default_ttl: float = 300.0
    cache_cleanup_interval: float = 60.0

    # Client request coordinator
    max_concurrent_requests: int = 3
    request_spacing: float = 0.1
    request_timeout: float = 15.0
    max_queue_size: int = 100
    cache_snapshot_dir: Optional[str] = None

    # Runtime
    log_level: str = "INFO"
    debug: bool = False


settings = Settings()
