from __future__ import annotations

from uuid import uuid4

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONCORD_", env_file=".env", extra="ignore")

    app_name: str = "concord"
    env: str = "dev"

    # Instance ID for distributed deployments
    instance_id: str = Field(default_factory=lambda: str(uuid4())[:8])

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    # Must stay above queue_block_ms, otherwise blocking reads time out client-side
    redis_socket_timeout: float | None = Field(
        default=None, validation_alias="REDIS_SOCKET_TIMEOUT"
    )
    key_prefix: str = "concord"

    # Locks
    lock_default_ttl_ms: int = Field(default=30000, gt=0)
    lock_acquire_timeout: float = 10.0
    lock_retry_base_delay: float = 0.05
    lock_retry_max_delay: float = 2.0

    # Reliable queue
    queue_block_ms: int = Field(default=1000, ge=0)
    queue_batch_size: int = Field(default=10, gt=0)
    queue_claim_idle_ms: int = Field(default=30000, gt=0)
    queue_max_deliveries: int = Field(default=5, gt=0)
    queue_dead_letter_suffix: str = ":dead"
    queue_maxlen: int | None = None

    # Observability
    enable_tracing: bool = Field(default=True, validation_alias="ENABLE_TRACING")
    otlp_endpoint: str | None = Field(default=None, validation_alias="OTLP_ENDPOINT")
    enable_metrics: bool = Field(default=True, validation_alias="ENABLE_METRICS")
    log_level: str = "INFO"
    log_json: bool = True


settings = Settings()
