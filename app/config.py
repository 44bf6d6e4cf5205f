"""
Configuration Management Module

This module handles all application configuration using Pydantic Settings.
Configuration is loaded from environment variables with strong typing and validation.

Design Decisions:
- Use Pydantic Settings for automatic environment variable loading
- Every tunable of the queue core (concurrency, backoff, stall detection,
  retention, lock TTL, rate budget, autoscaler bounds) lives here
- Validate configuration at startup (fail-fast approach)
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_concurrency() -> int:
    return max(1, min(os.cpu_count() or 1, 8))


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All sensitive values are loaded from environment variables only,
    never hardcoded or logged.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # =========================================================================
    # Shared Store (Redis)
    # =========================================================================
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL shared by every worker instance"
    )

    queue_prefix: str = Field(
        default="review",
        description="Key prefix for queue, lock, rate and metric keys"
    )

    queue_name: str = Field(
        default="code-review",
        description="Name of the review job queue"
    )

    # =========================================================================
    # Job Queue
    # =========================================================================
    queue_concurrency: int = Field(
        default_factory=_default_concurrency,
        ge=1,
        le=64,
        description="Number of concurrent worker slots in this process"
    )

    queue_poll_interval_ms: int = Field(
        default=1000,
        ge=5,
        description="Idle polling interval for workers and the delayed-job promoter"
    )

    stalled_interval_ms: int = Field(
        default=30000,
        ge=50,
        description="Liveness deadline for an active job before it is considered stalled"
    )

    max_stalled_count: int = Field(
        default=1,
        ge=0,
        description="Times a job may be recovered from stalled before it fails"
    )

    backoff_delay_ms: int = Field(
        default=2000,
        ge=0,
        description="Base delay for exponential retry backoff"
    )

    remove_on_complete: int = Field(
        default=100,
        ge=0,
        description="Number of completed jobs to retain"
    )

    remove_on_fail: int = Field(
        default=500,
        ge=0,
        description="Number of failed jobs to retain"
    )

    job_retention_hours: int = Field(
        default=24,
        ge=1,
        description="Age after which finished jobs are swept"
    )

    run_workers: bool = Field(
        default=True,
        description="Start worker slots and periodic tasks in this process"
    )

    # =========================================================================
    # Coordination
    # =========================================================================
    lock_ttl_ms: int = Field(
        default=300000,
        ge=100,
        description="TTL of the per pull request processing lock"
    )

    rate_limit_per_owner: int = Field(
        default=100,
        ge=1,
        description="Reviews allowed per repository owner per window"
    )

    rate_limit_window_seconds: int = Field(
        default=3600,
        ge=1,
        description="Rate limit window length"
    )

    # =========================================================================
    # Metrics, Health and Autoscaling
    # =========================================================================
    metrics_window_hours: float = Field(
        default=1.0,
        gt=0,
        description="Rolling window used for health metrics"
    )

    metrics_retention_days: int = Field(
        default=7,
        ge=1,
        description="How long job metrics are kept in the store"
    )

    health_check_interval_seconds: int = Field(
        default=300,
        ge=1,
        description="Interval of the scheduled health check"
    )

    autoscaler_interval_seconds: int = Field(
        default=60,
        ge=1,
        description="Interval of the autoscaler evaluation"
    )

    cleanup_interval_seconds: int = Field(
        default=3600,
        ge=1,
        description="Interval of the finished-job retention sweep"
    )

    min_workers: int = Field(default=1, ge=1, description="Autoscaler lower bound")

    max_workers: int = Field(default=10, ge=1, description="Autoscaler upper bound")

    # =========================================================================
    # GitHub Configuration
    # =========================================================================
    github_token: str = Field(
        default="",
        description="GitHub token used to fetch diffs and post reviews"
    )

    github_webhook_secret: str = Field(
        default="",
        description="Webhook secret for signature verification"
    )

    github_api_url: str = Field(
        default="https://api.github.com",
        description="GitHub REST API base URL"
    )

    github_rate_limit: int = Field(
        default=5000,
        ge=100,
        description="GitHub API rate limit per hour"
    )

    # =========================================================================
    # OpenAI Configuration
    # =========================================================================
    openai_api_key: str = Field(
        default="",
        description="OpenAI API key; heuristic-only analysis when empty"
    )

    openai_model: str = Field(
        default="gpt-4",
        description="OpenAI model to use for code review"
    )

    openai_max_tokens: int = Field(
        default=4000,
        ge=100,
        le=128000,
        description="Maximum tokens for AI response"
    )

    openai_temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Temperature for AI responses"
    )

    openai_rate_limit_rpm: int = Field(
        default=60,
        ge=1,
        description="OpenAI API rate limit per minute"
    )

    max_diff_chars: int = Field(
        default=60000,
        ge=1000,
        description="Maximum diff size sent to the LLM"
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================
    host: str = Field(default="0.0.0.0", description="Host to bind the server")

    port: int = Field(default=3000, ge=1, le=65535, description="Port to bind the server")

    # =========================================================================
    # Logging Configuration
    # =========================================================================
    log_level: str = Field(default="INFO", description="Logging level")

    log_json_format: bool = Field(default=True, description="Enable JSON logging format")

    log_requests: bool = Field(default=False, description="Enable request/response logging")

    environment: str = Field(default="development", description="Deployment environment")

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @model_validator(mode="after")
    def validate_worker_bounds(self) -> "Settings":
        """Autoscaler bounds must form a non-empty range."""
        if self.min_workers > self.max_workers:
            raise ValueError(
                f"min_workers ({self.min_workers}) cannot exceed max_workers ({self.max_workers})"
            )
        return self

    # =========================================================================
    # Computed Properties
    # =========================================================================
    @property
    def job_retention_ms(self) -> int:
        return self.job_retention_hours * 3600 * 1000

    @property
    def ai_enabled(self) -> bool:
        """Whether LLM analysis can run at all."""
        return bool(self.openai_api_key)

    @property
    def secret_keys(self) -> List[str]:
        """Names of settings that must never be logged."""
        return ["github_token", "github_webhook_secret", "openai_api_key"]

    def redacted(self) -> dict:
        """Settings dump safe for logging."""
        data = self.model_dump()
        for key in self.secret_keys:
            if data.get(key):
                data[key] = "[REDACTED]"
        return data


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings instance
    """
    return Settings()
