"""
Engine configuration.

Settings are constructed once at process start and passed into the engine.
``EngineConfig.from_env()`` reads ``DOMAIN_ENGINE_*`` environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

_ENV_PREFIX = "DOMAIN_ENGINE_"


class EngineConfig(BaseModel):
    """Runtime configuration for the domain engine."""

    db_path: Path = Field(default=Path(".domain_engine/data.db"), description="SQLite database file")
    default_limit: int = Field(default=10, ge=1, description="Page size when none is requested")
    max_limit: int = Field(default=1000, ge=1, description="Largest page size served")
    log_level: str = Field(default="INFO", description="Root log level for the engine loggers")
    log_dir: Path | None = Field(default=None, description="Directory for JSONL log files")
    json_logs: bool = Field(default=False, description="Emit JSONL on the console too")
    after_hook_drain_timeout: float = Field(
        default=5.0, ge=0, description="Seconds to wait for pending after-hooks on shutdown"
    )

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _limits_consistent(self) -> EngineConfig:
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit cannot exceed max_limit")
        return self

    @classmethod
    def from_env(cls, **overrides: object) -> EngineConfig:
        """
        Build a config from environment variables.

        Recognized variables: DOMAIN_ENGINE_DB_PATH, DOMAIN_ENGINE_DEFAULT_LIMIT,
        DOMAIN_ENGINE_MAX_LIMIT, DOMAIN_ENGINE_LOG_LEVEL, DOMAIN_ENGINE_LOG_DIR,
        DOMAIN_ENGINE_JSON_LOGS, DOMAIN_ENGINE_AFTER_HOOK_DRAIN_TIMEOUT.
        Explicit keyword overrides win over the environment.
        """
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
            if raw is None or raw == "":
                continue
            if name == "json_logs":
                values[name] = raw.lower() in ("1", "true", "yes", "on")
            else:
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)
