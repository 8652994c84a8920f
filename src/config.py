"""Pydantic Settings — loads configuration from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings

PRODUCTION_SCAN_RATE_LIMIT = 10
DEFAULT_SCAN_RATE_LIMIT = 50


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "extra": "ignore"}

    environment: str = "development"

    database_url: str = "sqlite+aiosqlite:///./scans.db"
    redis_url: str = "redis://localhost:6379"

    scan_rate_limit: int | None = None
    rate_limit_window_seconds: int = 3600
    scan_timeout_hours: float = 2.0
    progress_ttl_seconds: int = 86400
    resume_orphaned_scans: bool = True

    scanner_user_agent: str = "Mozilla/5.0 (compatible; A11y-Scan-Orchestrator/1.0)"
    sitemap_timeout_seconds: float = 30.0
    sitemap_max_documents: int = 20
    sitemap_max_pages: int = 0

    axe_script_url: str = "https://cdnjs.cloudflare.com/ajax/libs/axe-core/4.10.2/axe.min.js"
    axe_page_timeout_seconds: float = 60.0
    pagespeed_api_url: str = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
    pagespeed_api_key: str = ""
    lighthouse_timeout_seconds: float = 120.0

    log_level: str = "INFO"

    @property
    def rate_limit_per_hour(self) -> int:
        """Scans allowed per site per window; production is stricter."""
        if self.scan_rate_limit is not None:
            return self.scan_rate_limit
        if self.environment.lower() == "production":
            return PRODUCTION_SCAN_RATE_LIMIT
        return DEFAULT_SCAN_RATE_LIMIT


@lru_cache
def get_settings() -> Settings:
    return Settings()
