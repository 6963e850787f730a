"""Server configuration (backend connection, platforms, scheduler, breakers, tasks).

The config file is JSON. Every key is optional; stored values are merged over
the defaults below, nested sections key by key. A few settings can be
overridden from the environment (a .env file is read first):

    STORYLOOM_DATA_DIR   data_dir
    LLM_PROVIDER_URL     backend.provider_url
    LLM_API_KEY          backend.api_key
    LLM_MODEL            backend.default_model
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from storyloom.errors import ConfigError
from storyloom.executor import RetrySettings
from storyloom.models import TaskDefinition
from storyloom.platforms import McpServerSettings
from storyloom.resolver import ResolverSettings
from storyloom.scheduler import SchedulerSettings
from storyloom.tracker import CircuitBreakerSettings


class BackendSettings(BaseModel):
    provider_url: str = "http://localhost:5001"
    api_key: str = ""
    provider_format: Literal["openai", "koboldcpp", "echo"] = "openai"
    default_model: str = ""
    timeout: float = 120.0


class PersistenceBreakerSettings(BaseModel):
    failure_threshold: int = Field(default=3, ge=1)
    reset_after_seconds: float = 30.0


class AdminSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8400


class ServerConfig(BaseModel):
    data_dir: Path = Path("data")
    narratives_dir: Path = Path("narratives")
    backend: BackendSettings = Field(default_factory=BackendSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    persistence: PersistenceBreakerSettings = Field(default_factory=PersistenceBreakerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    platforms: dict[str, McpServerSettings] = Field(default_factory=dict)  # name -> MCP server
    security: dict[str, list[str]] | None = None  # actor -> allowed action patterns; None allows all
    admin: AdminSettings = Field(default_factory=AdminSettings)
    tasks: list[TaskDefinition] = Field(default_factory=list)


_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "STORYLOOM_DATA_DIR": ("data_dir",),
    "LLM_PROVIDER_URL": ("backend", "provider_url"),
    "LLM_API_KEY": ("backend", "api_key"),
    "LLM_MODEL": ("backend", "default_model"),
}


def _merge(base: dict[str, Any], stored: dict[str, Any]) -> dict[str, Any]:
    for key, value in stored.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: Path | None = None, *, use_env: bool = True) -> ServerConfig:
    """Read config, returning defaults merged with stored values and env overrides."""
    data = ServerConfig().model_dump(mode="json")
    if path is not None and path.is_file():
        try:
            stored = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        if not isinstance(stored, dict):
            raise ConfigError(f"Config {path} must be a JSON object")
        _merge(data, stored)

    if use_env:
        load_dotenv()
        for var, keys in _ENV_OVERRIDES.items():
            value = os.environ.get(var)
            if not value:
                continue
            target = data
            for k in keys[:-1]:
                target = target[k]
            target[keys[-1]] = value

    try:
        return ServerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config: {e}") from e


def save_config(config: ServerConfig, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2))
