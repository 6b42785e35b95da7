"""Unified configuration schema for strapi_sync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the two instances, the sync engine and logging.  Includes
an adapter that turns the unified config into the runtime ``Config``.

Usage:
    from strapi_sync.config_schema import build_config, to_runtime_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_runtime_config(unified, cli_overrides={"source_url": "https://..."})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class InstanceConfig(BaseModel):
    """Connection settings of one Strapi instance.

    All fields are optional to support zero-config: env vars and CLI args
    can supply them at runtime instead.
    """

    url: str | None = Field(default=None, description="Instance base URL")
    api_token: str | None = Field(
        default=None, description="REST API token (full access)"
    )
    username: str | None = Field(
        default=None, description="Admin e-mail, needed for media sync"
    )
    password: str | None = Field(
        default=None, description="Admin password, needed for media sync"
    )
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    timeout: float | None = Field(
        default=None, gt=0, description="Read timeout override in seconds"
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Merge engine settings."""

    state_dir: str = Field(
        default=".strapi_sync",
        description="Directory for mappings, selections and caches",
    )
    cache_ttl_seconds: int = Field(
        default=3600,
        ge=0,
        description="Freshness timeout of cached schema checks and comparisons",
    )
    request_timeout: float = Field(
        default=60,
        ge=1,
        le=3600,
        description="Per-request read timeout in seconds",
    )
    page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Page size for paginated entry and file listings",
    )

    model_config = {"frozen": True}


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

    Every section has defaults, so ``UnifiedConfig()`` is always valid.
    """

    source: InstanceConfig = Field(default_factory=InstanceConfig)
    target: InstanceConfig = Field(default_factory=InstanceConfig)
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


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> runtime Config dataclass
# ---------------------------------------------------------------------------


def to_runtime_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Resolve the runtime ``Config`` with the YAML values as fallbacks.

    The precedence applied is:
        CLI override > environment > unified config value > default

    CLI overrides dict keys: source_url, source_token, target_url,
    target_token, insecure, debug, state_dir.

    Raises:
        ValueError: If required settings are missing after all sources.
    """
    # Import here to avoid circular imports
    from .config import load_config

    overrides = cli_overrides or {}
    fallbacks = unified.model_dump(exclude_none=True)

    return load_config(
        source_url=overrides.get("source_url"),
        source_token=overrides.get("source_token"),
        target_url=overrides.get("target_url"),
        target_token=overrides.get("target_token"),
        insecure=bool(overrides.get("insecure", False)),
        debug=bool(overrides.get("debug", False)),
        state_dir=overrides.get("state_dir"),
        yaml_fallbacks=fallbacks,
    )
