"""
Typed orchestrator configuration.

Loaded from a YAML file (explicit path or $PIPELINE_ORCHESTRATOR_CONFIG), then
overridden by environment variables and finally by CLI flags.
"""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

CONFIG_ENV_VAR = "PIPELINE_ORCHESTRATOR_CONFIG"
MAX_CONCURRENCY_ENV_VAR = "PIPELINE_ORCHESTRATOR_MAX_CONCURRENCY"


class ErrorPolicy(str, Enum):
    FAIL_FAST = "fail_fast"
    CONTINUE = "continue"


class RetryPolicy(BaseModel):
    base_delay_s: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay_s: float = Field(default=60.0, ge=0)
    jitter: float = Field(default=0.2, ge=0, le=1)
    # Caps every job's max_retries when set
    retry_limit: Optional[int] = Field(default=None, ge=0)


class OrchestratorConfig(BaseModel):
    error_policy: ErrorPolicy = ErrorPolicy.CONTINUE
    max_concurrency: int = Field(default=max(4, (os.cpu_count() or 4)), ge=1)
    per_label_limits: Dict[str, int] = Field(default_factory=dict)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    default_timeout_s: Optional[float] = Field(default=None, gt=0)
    termination_grace_s: float = Field(default=10.0, ge=0)
    output_tail_chars: int = Field(default=4000, ge=0)

    @field_validator("per_label_limits")
    @classmethod
    def _positive_limits(cls, v: Dict[str, int]) -> Dict[str, int]:
        for label, limit in v.items():
            if limit < 1:
                raise ValueError(f"limit for label {label!r} must be >= 1")
        return v

    def with_overrides(self, **overrides: Any) -> "OrchestratorConfig":
        """Return a copy with the non-None overrides applied (nested keys as `retry_<field>`)."""
        top: Dict[str, Any] = {}
        retry: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key.startswith("retry_") and key[len("retry_"):] in RetryPolicy.model_fields:
                retry[key[len("retry_"):]] = value
            else:
                top[key] = value
        data = self.model_dump()
        data.update(top)
        data["retry"].update(retry)
        try:
            return OrchestratorConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration override: {e}") from e


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    # Allow the settings to live under an `orchestrator:` key
    return data.get("orchestrator", data)


def load_config(path: Union[str, Path, None] = None) -> OrchestratorConfig:
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_path).expanduser() if env_path else None

    data: Dict[str, Any] = _read_yaml(Path(path)) if path is not None else {}

    env_concurrency = os.environ.get(MAX_CONCURRENCY_ENV_VAR)
    if env_concurrency:
        try:
            data["max_concurrency"] = int(env_concurrency)
        except ValueError:
            raise ConfigError(
                f"{MAX_CONCURRENCY_ENV_VAR} must be an integer, got {env_concurrency!r}"
            ) from None

    try:
        return OrchestratorConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
