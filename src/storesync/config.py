from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Runtime knobs for the event queue and the batch synchronizer.

    All delays are milliseconds. Read from ``STORESYNC_*`` environment
    variables or a local ``.env`` file.
    """

    # event queue
    cache_ttl_ms: int = 24 * 60 * 60 * 1000
    min_request_delay_ms: int = 1500
    max_retries: int = 5
    base_retry_delay_ms: int = 5000
    max_retry_delay_ms: int = 120_000
    cleanup_interval_ms: int = 60 * 60 * 1000

    # batch synchronizer
    sync_initial_concurrency: int = 20
    sync_floor_concurrency: int = 2
    sync_ceiling_concurrency: int = 20
    sync_max_retries: int = 3
    sync_retry_delay_ms: int = 2000
    sync_rate_limit_wait_ms: int = 5000
    sync_max_rate_limit_wait_ms: int = 60_000
    sync_rate_limit_window_ms: int = 10_000
    sync_rate_limit_pass_delay_ms: int = 10_000

    log_level: str = "INFO"
    metrics_port: Optional[int] = None

    class Config:
        env_prefix = "STORESYNC_"
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
