"""Runtime configuration for the workflow engine, API and worker."""

from __future__ import annotations

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseSettings):
    """Settings read from ``LEAD_WORKFLOWS_*`` environment variables or ``.env``."""

    database_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LEAD_WORKFLOWS_DATABASE_URL", "DATABASE_URL"),
        description="SQLAlchemy URL of the workflow database; sync drivers are upgraded to async",
    )
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    redis_url: str = Field(default="redis://localhost:6379", description="Redis connection URL")
    trigger_stream_key: str = Field(
        default="workflow:triggers",
        description="Stream receiving domain events that may enroll leads",
    )
    job_stream_key: str = Field(
        default="workflow:jobs",
        description="Stream receiving participant execution jobs",
    )
    consumer_group: str = Field(default="workflow-engine", description="Redis consumer group")
    consumer_batch_size: int = Field(default=16, ge=1)
    consumer_block_ms: int = Field(default=5000, ge=0)
    claim_idle_ms: int = Field(
        default=60_000,
        ge=1000,
        description="Pending stream entries idle this long are reclaimed from dead consumers",
    )
    claim_interval_seconds: float = Field(default=30.0, gt=0)

    max_job_attempts: int = Field(
        default=3,
        ge=1,
        description="Delivery attempts before a job is moved to the dead-letter stream",
    )
    job_backoff_seconds: float = Field(
        default=1.0,
        gt=0,
        description="Base delay (seconds) for exponential backoff between job retries",
    )
    delayed_poll_seconds: float = Field(default=1.0, gt=0)

    sweep_interval_seconds: int = Field(
        default=60,
        ge=1,
        description="How often waiting participants are checked for due wake times",
    )
    sweep_batch_size: int = Field(default=500, ge=1)
    stall_timeout_seconds: int = Field(
        default=900,
        ge=60,
        description="Active participants idle for longer than this are re-queued",
    )
    schedule_sync_interval_seconds: int = Field(default=300, ge=10)

    max_steps_per_invocation: int = Field(
        default=50,
        ge=1,
        description="Nodes executed per job before the run is re-queued",
    )
    collaborator_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout (seconds) applied to every outbound collaborator call",
    )

    marketing_api_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the marketing service exposing leads, templates and email",
    )
    marketing_api_token: str | None = Field(default=None, description="Service bearer token")
    marketing_api_retries: int = Field(default=2, ge=0)
    marketing_api_backoff_seconds: float = Field(default=0.5, gt=0)
    template_cache_ttl: int = Field(default=300, ge=1)
    template_cache_max_size: int = Field(default=256, ge=1)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="LEAD_WORKFLOWS_",
        env_file=".env",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_config() -> EngineConfig:
    """Return the process-wide configuration."""

    return EngineConfig()


__all__ = ["EngineConfig", "get_config"]
