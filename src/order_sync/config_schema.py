"""Unified configuration schema for order_sync.

Defines Pydantic models for the YAML config file, with one section per
concern: the remote API, local storage, the sync engine, and logging.

Usage:
    from order_sync.config_schema import build_config, to_fallbacks

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=to_fallbacks(unified))
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class RemoteConfig(BaseModel):
    """Cloud API connection settings.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    api_base_url: str | None = Field(
        default=None, description="Base URL of the orders API"
    )
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Read timeout per request"
    )
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    max_parallel_requests: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum concurrent requests for batch calls (1-50)",
    )

    model_config = {"frozen": True}


class StorageConfig(BaseModel):
    """Local replica storage settings."""

    data_dir: str | None = Field(
        default=None, description="Directory holding the local replica"
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Sync engine and outbox settings.

    Attributes:
        max_retries: Failed attempts before an operation is dropped.
        retry_delays: Backoff table in seconds, indexed by retry count.
        debounce_seconds: Quiet period after a local edit before syncing.
    """

    max_retries: int = Field(default=3, ge=1, le=20)
    retry_delays: list[float] = Field(
        default_factory=lambda: [1.0, 5.0, 15.0]
    )
    debounce_seconds: float = Field(default=2.0, ge=0)

    model_config = {"frozen": True}

    @field_validator("retry_delays")
    @classmethod
    def _delays_positive(cls, value: list[float]) -> list[float]:
        if not value:
            raise ValueError("retry_delays must not be empty")
        if any(d < 0 for d in value):
            raise ValueError("retry_delays must be non-negative")
        return value


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def to_fallbacks(unified: UnifiedConfig) -> dict:
    """Flatten the remote/storage/sync sections into the
    ``yaml_fallbacks`` dict accepted by ``config.load_config()``.

    ``None`` values are dropped so they never shadow built-in defaults.
    """
    merged: dict = {}
    for section in (unified.remote, unified.storage, unified.sync):
        merged.update(
            {k: v for k, v in section.model_dump().items() if v is not None}
        )
    return merged
