"""Configuration system using pydantic-settings with environment variable loading."""

from pydantic import BaseModel, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedditSettings(BaseSettings):
    """Reddit OAuth application credentials and endpoints."""

    model_config = SettingsConfigDict(env_prefix="REDDIT_")

    app_id: SecretStr = SecretStr("")
    app_secret: SecretStr = SecretStr("")
    base_url: str = "https://oauth.reddit.com"
    auth_url: str = "https://www.reddit.com/api/v1/access_token"
    user_agent: str = "python:pitch-tracker:v0.1.0"
    request_timeout: float = 30.0


class OpenAISettings(BaseSettings):
    """Classification service settings."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: SecretStr = SecretStr("")
    url: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-5"
    request_timeout: float = 120.0


class PolygonSettings(BaseSettings):
    """Price data service settings."""

    model_config = SettingsConfigDict(env_prefix="POLYGON_")

    api_key: SecretStr = SecretStr("")
    base_url: str = "https://api.polygon.io"
    request_timeout: float = 30.0
    lookback_days: int = 30  # window searched for on-or-before and most-recent prices
    forward_window_slack_days: int = 10  # +/- days around the forward target date


class RateLimit(BaseModel):
    """Fixed-window quota for one external service."""

    capacity: int = 10
    period_seconds: float = 1.0


class RateLimitSettings(BaseSettings):
    """One fixed-window quota per external service.

    Nested values are set with the __ delimiter, e.g.
    RATE_LIMIT_OPENAI__CAPACITY=5.
    """

    model_config = SettingsConfigDict(env_prefix="RATE_LIMIT_", env_nested_delimiter="__")

    reddit: RateLimit = RateLimit(capacity=1, period_seconds=1.2)  # stay under 50 QPM
    openai: RateLimit = RateLimit(capacity=10, period_seconds=1.0)
    polygon: RateLimit = RateLimit(capacity=10, period_seconds=1.0)


class BackfillSettings(BaseSettings):
    """Historical backfill sweep configuration."""

    model_config = SettingsConfigDict(env_prefix="BACKFILL_")

    page_size: int = 25
    inter_page_delay: float = 2.0  # seconds between pages, on top of the rate limiter
    initial_delay: float = 0.1
    retention_seconds: int = 157_680_000  # 5 years


class EnrichmentSettings(BaseSettings):
    """Enrichment worker pool and price window configuration."""

    model_config = SettingsConfigDict(env_prefix="ENRICHMENT_")

    max_workers: int = 4
    retry_timeout: float = 120.0
    forward_months: int = 6
    forward_window_days: int = 180
    lookup_limit: int = 100  # newest records checked on a subject load


class DatabaseSettings(BaseSettings):
    """Record store location."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = "data/records.db"


class ApiSettings(BaseSettings):
    """HTTP/WebSocket server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    reddit: RedditSettings = RedditSettings()
    openai: OpenAISettings = OpenAISettings()
    polygon: PolygonSettings = PolygonSettings()
    rate_limits: RateLimitSettings = RateLimitSettings()
    backfill: BackfillSettings = BackfillSettings()
    enrichment: EnrichmentSettings = EnrichmentSettings()
    database: DatabaseSettings = DatabaseSettings()
    api: ApiSettings = ApiSettings()
