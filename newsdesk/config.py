from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_SLOT_HOURS: Dict[str, int] = {"10AM": 10, "3PM": 15, "8PM": 20}

DEFAULT_FEED_URLS: List[str] = [
    "https://feeds.arstechnica.com/arstechnica/index",
    "https://www.sciencedaily.com/rss/all.xml",
    "https://feeds.bbci.co.uk/news/business/rss.xml",
    "https://feeds.bbci.co.uk/news/health/rss.xml",
]


class Settings(BaseSettings):
    """
    Runtime configuration, read from NEWSDESK_* environment variables or a .env file.
    Provider credentials keep their conventional unprefixed names.
    """

    model_config = SettingsConfigDict(
        env_prefix="NEWSDESK_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # --- Provider credentials ---
    news_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("NEWS_API_KEY", "news_api_key")
    )
    openai_api_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key")
    )
    openai_model: str = Field(
        default="gpt-4o-mini", validation_alias=AliasChoices("OPENAI_MODEL", "openai_model")
    )
    cron_secret: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("CRON_SECRET", "cron_secret")
    )

    # --- Storage ---
    database_url: str = "sqlite:///./news.db"
    cache_ttl_seconds: int = 24 * 60 * 60
    refresh_lock_seconds: int = 30

    # --- Editions ---
    categories: List[str] = ["tech", "finance", "science", "health", "ai"]
    slot_hours: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_SLOT_HOURS))
    slot_timezone: str = "UTC"
    always_open: bool = False        # development override: every slot is open
    refresh_window_minutes: int = 5

    # --- Fetching ---
    source_timeout_seconds: float = 8.0
    overall_timeout_seconds: float = 9.0
    fetch_window_hours: int = 48
    page_size: int = 10
    feed_urls: List[str] = Field(default_factory=lambda: list(DEFAULT_FEED_URLS))
    feed_reuse_seconds: float = 60.0     # one feed download serves every category of a refresh

    # --- Editorial ---
    llm_timeout_seconds: float = 8.0     # per call, further capped by the time left before the deadline
    fallback_reserve_seconds: float = 0.5
    max_candidates: int = 5
    temperature: float = 0.7
    selection_max_tokens: int = 150
    rewrite_max_tokens: int = 400

    # --- Background refresh ---
    background_refresh: bool = True
    refresh_interval_seconds: int = 60


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loaded once on first use."""
    return Settings()
