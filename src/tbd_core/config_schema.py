"""Unified configuration schema for tbd_core.

Defines Pydantic models for ``.tbd/config.yml`` with dedicated sections
for sync transport, local storage, display, git identity and logging.

Usage:
    from tbd_core.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config(root)
    unified = build_config(raw)
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator

from tbd_core.validators import validate_branch_name, validate_remote_name

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class SyncConfig(BaseModel):
    """Sync branch transport settings."""

    branch: str = Field(
        default="tbd-sync", description="Dedicated sync branch name"
    )
    remote: str = Field(default="origin", description="Git remote name")
    max_push_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Push attempts before reporting manual sync (1-20)",
    )
    transient_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for network/timeout failures (0-10)",
    )
    backoff_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Initial backoff between transient retries",
    )
    git_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Timeout in seconds for a single git command",
    )

    model_config = {"frozen": True}

    @field_validator("branch")
    @classmethod
    def _check_branch(cls, value: str) -> str:
        ok, message = validate_branch_name(value)
        if not ok:
            raise ValueError(message)
        return value

    @field_validator("remote")
    @classmethod
    def _check_remote(cls, value: str) -> str:
        ok, message = validate_remote_name(value)
        if not ok:
            raise ValueError(message)
        return value


class StoreConfig(BaseModel):
    """Local entity store settings.

    Attributes:
        id_length: Number of base36 characters in generated ids.
        orphan_temp_max_age: Age in seconds after which an abandoned
            temp file is reclaimed.  Must be positive so a concurrent
            writer's in-flight file is never removed.
        use_index: Maintain the rebuildable local index.
    """

    id_length: int = Field(default=10, ge=6, le=26)
    orphan_temp_max_age: float = Field(default=3600.0, gt=0)
    use_index: bool = True

    model_config = {"frozen": True}


class DisplayConfig(BaseModel):
    """Presentation hints stored with the project."""

    id_prefix: str = Field(
        default="tbd", description="Project prefix shown next to ids"
    )

    model_config = {"frozen": True}


class IdentityConfig(BaseModel):
    """Author/committer identity for sync commits."""

    name: str = "tbd"
    email: str = "tbd@localhost"

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

    Aggregates all config sections. Every section has sensible defaults,
    so ``UnifiedConfig()`` (zero-config) is always valid.
    """

    tbd_format: str = Field(
        default="f02", description="On-disk format of the .tbd directory"
    )
    sync: SyncConfig = Field(default_factory=SyncConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)
