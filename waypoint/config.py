from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    ALLOWED_EXPRESSION_PATTERN,
    DEFAULT_CAS_RETRIES,
    DEFAULT_EXECUTION_MODE,
    DEFAULT_GIT_TIMEOUT_SECONDS,
    DEFAULT_IO_WORKERS,
    DEFAULT_MAX_CONTEXT_SIZE,
    DEFAULT_MAX_QUERY_PARAMETERS,
    DEFAULT_MAX_QUERY_RESULTS,
    DEFAULT_MAX_RECOVERY_ATTEMPTS,
    DEFAULT_RECOMMENDATION_LIMIT,
    DEFAULT_WARNING_BUFFER,
    VOLATILE_SLICE_PREFIXES,
    VOLATILE_SLICES,
)


class EngineConfig(BaseModel):
    """Execution state machine settings."""

    default_execution_mode: Literal["GUIDED", "AUTOMATED", "HYBRID"] = (
        DEFAULT_EXECUTION_MODE
    )
    max_recovery_attempts: int = Field(DEFAULT_MAX_RECOVERY_ATTEMPTS, ge=1)
    max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE
    recommended_transition_limit: int = DEFAULT_RECOMMENDATION_LIMIT
    cas_retries: int = DEFAULT_CAS_RETRIES
    cas_backoff_base: float = 0.05


class EvaluatorConfig(BaseModel):
    """Condition evaluator settings."""

    git_timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS
    io_timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS
    io_workers: int = Field(DEFAULT_IO_WORKERS, ge=1)
    file_encoding: str = "utf-8"
    allowed_expression_pattern: str = ALLOWED_EXPRESSION_PATTERN
    max_query_results: int = DEFAULT_MAX_QUERY_RESULTS
    max_query_parameters: int = DEFAULT_MAX_QUERY_PARAMETERS
    warning_buffer: int = DEFAULT_WARNING_BUFFER


class CacheConfig(BaseModel):
    """Context cache settings."""

    volatile_slices: list[str] = Field(default_factory=lambda: list(VOLATILE_SLICES))
    volatile_prefixes: list[str] = Field(
        default_factory=lambda: list(VOLATILE_SLICE_PREFIXES)
    )


class WaypointConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    evaluator: EvaluatorConfig = EvaluatorConfig()
    cache: CacheConfig = CacheConfig()
    database_url: Optional[str] = None
    catalog_path: Optional[str] = None
    strict_catalog: bool = False


def load_config(path: Optional[str] = None) -> WaypointConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to WAYPOINT_CONFIG env
            variable or 'waypoint.yaml' in the current directory.
    """

    config_path = path or os.getenv("WAYPOINT_CONFIG", "waypoint.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = WaypointConfig(**data)
    else:
        config = WaypointConfig()

    env_db_url = os.getenv("WAYPOINT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_catalog = os.getenv("WAYPOINT_CATALOG")
    if env_catalog:
        config.catalog_path = env_catalog
    return config
