from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    env: str = "dev"
    database_url: str = "sqlite:///./data/fare_tracker.db"

    # Polling scheduler
    scheduler_enabled: bool = True
    poll_tick_seconds: int = 60
    max_concurrent_polls: int = 4
    shutdown_grace_seconds: float = 30.0
    # Stamp last_polled_at when a cycle crashes so a broken route still
    # waits out its own interval.
    stamp_on_error: bool = True
    # None = average over the full history
    history_window: Optional[int] = None

    # Flight price provider (Amadeus self-service API)
    amadeus_client_id: str = ""
    amadeus_client_secret: str = ""
    amadeus_base_url: str = "https://api.amadeus.com"
    provider_retry_count: int = 3
    provider_backoff_base_seconds: float = 2.0
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 30.0
    request_timeout_seconds: float = 30.0
    response_cache_ttl_seconds: float = 300.0
    response_cache_max_entries: int = 512
    token_safety_margin_seconds: int = 60

    # Tracked route bounds
    polling_interval_min_minutes: int = 5
    polling_interval_max_minutes: int = 1440
    threshold_percent_min: float = 0.0  # exclusive
    threshold_percent_max: float = 100.0
    max_date_flexibility_days: int = 7
    max_stops_limit: int = 3

    default_polling_interval_minutes: int = 15
    default_threshold_percent: float = 5.0
    default_date_flexibility_days: int = 3

    def model_post_init(self, __context):
        if self.env == "prod" and self.database_url.startswith("sqlite"):
            raise ValueError(
                "Production requires explicit DATABASE_URL (not SQLite)"
            )
        if self.polling_interval_min_minutes > self.polling_interval_max_minutes:
            raise ValueError("polling_interval_min_minutes exceeds polling_interval_max_minutes")
        if self.history_window is not None and self.history_window < 1:
            raise ValueError("history_window must be at least 1 (leave unset to average the full history)")

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
