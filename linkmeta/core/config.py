from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    log_level: str = "INFO"
    link_metadata_enabled: bool = True
    redis_url: str = "redis://localhost:6379/0"
    queue_backend: str = "redis"
    queue_key: str = "linkmeta:metadata_queue"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    worker_count: int = 3
    dequeue_timeout_seconds: float = 1.0
    enqueue_timeout_seconds: float = 0.5
    job_timeout_seconds: float = 30.0
    fetch_timeout_seconds: float = 5.0
    fetch_max_bytes: int = 2 * 1024 * 1024
    fetch_max_redirects: int = 5
    fetch_user_agent: str = "LinkMetadataFetcher/1.0"
    block_private_addresses: bool = True
    job_max_attempts: int = 3
    job_retry_base_seconds: float = 5.0
    job_retry_max_seconds: float = 300.0
    job_retry_jitter_ratio: float = 0.5
    persist_max_attempts: int = 3
    persist_retry_delay_seconds: float = 0.2
    publish_timeout_seconds: float = 2.0
    shutdown_grace_seconds: float = 10.0
    recover_processing_on_start: bool = True
    poll_error_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 15.0
    preview_max_url_length: int = 2048
    otel_enabled: bool = True
    otel_service_name: str = "linkmeta-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LM_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
