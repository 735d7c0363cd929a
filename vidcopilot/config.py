from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 60.0

    # Retry executor
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_seconds: float = 10.0
    retry_max_invalid_response_retries: int = 1
    provider_attempt_timeout_seconds: float = 60.0  # 0 disables the per-attempt timeout

    # Result cache
    cache_ttl_seconds: float = 24 * 60 * 60
    cache_max_entries: int = 100

    # Concurrency tiers
    default_tier: str = "fast"  # conservative | fast | maximum
    tier_fast_max_parallel: int = 3
    tier_maximum_max_parallel: int = 8
    tier_conservative_delay_seconds: float = 0.0
    tier_fast_delay_seconds: float = 1.0
    tier_maximum_delay_seconds: float = 0.1

    # Aggregation
    top_actions_cap: int = 5

    # Logging
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_to_file: bool = False
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
