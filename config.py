"""
Configuration and logging bootstrap for Harvest API.

Every tunable lives on ``Settings`` and can be overridden through the
environment or a local ``.env`` file.
"""

import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# ── Bootstrap ────────────────────────────────────────────────────────────────
load_dotenv()


class Settings(BaseSettings):
    """Centralized configuration using Pydantic BaseSettings."""

    # Server
    port: int = 8000
    env: str = "development"
    log_level: str = "INFO"
    public_base_url: str = "http://localhost:8000"  # used to build endpoint URLs

    # CORS - comma-separated list of allowed origins
    allowed_origins: str = "*"

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Secret used to derive the AES key for stored scraper keys (required)
    encryption_key: Optional[str] = None

    # Groq (schema generation)
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.3-70b-versatile"
    groq_max_output_tokens: int = 2048

    # Firecrawl (extraction + search)
    firecrawl_api_key: Optional[str] = None  # server-side key for the proxy routes
    firecrawl_api_url: str = "https://api.firecrawl.dev/v1"
    firecrawl_timeout: int = 60
    firecrawl_poll_interval: float = 2.0
    firecrawl_max_wait: int = 300
    search_default_limit: int = 5

    # Per-endpoint bearer rate limiting (sliding window)
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 60

    # IP rate limit for the proxy routes (slowapi format: "requests/time_unit")
    rate_limit_proxy: str = "30/minute"

    # Results freshness + initialization wait
    stale_after_seconds: int = 24 * 60 * 60
    init_poll_interval: float = 0.5
    init_wait_timeout: float = 30.0

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_claim_ttl: int = 300

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.env.lower() in ("development", "dev", "local")

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated origins."""
        if self.allowed_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.allowed_origins.split(",")]


settings = Settings()


def configure_logging() -> None:
    """Configure the root logger once for the whole process."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    )
