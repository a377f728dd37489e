"""Configuration for extmgr.

Precedence: env vars > ./extmgr.config.yaml > <agent_dir>/extmgr.config.yaml > defaults.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from extmgr.core.logging.logger import LoggingConfig, get_logger

logger = get_logger(__name__)

CONFIG_FILENAME = "extmgr.config.yaml"
DEFAULT_AGENT_DIR = Path("~/.pi/agent")

_ENV_ALIASES: dict[str, tuple[str, ...]] = {
    "agent_dir": ("EXTMGR_AGENT_DIR", "PI_CODING_AGENT_DIR"),
    "cache_dir": ("EXTMGR_CACHE_DIR", "PI_EXTMGR_CACHE_DIR"),
}


class CommandTimeouts(BaseModel):
    """Subprocess timeouts in seconds."""

    list_packages: float = 10
    registry_view: float = 10
    registry_search: float = 20
    package_install: float = 180
    package_update: float = 120
    package_update_all: float = 300
    package_remove: float = 60

    model_config = ConfigDict(extra="ignore")


class Settings(BaseSettings):
    agent_dir: Path = Field(
        default=DEFAULT_AGENT_DIR,
        validation_alias=AliasChoices("agent_dir", "EXTMGR_AGENT_DIR", "PI_CODING_AGENT_DIR"),
    )
    cache_dir: Path | None = Field(
        default=None,
        validation_alias=AliasChoices("cache_dir", "EXTMGR_CACHE_DIR", "PI_EXTMGR_CACHE_DIR"),
    )

    metadata_ttl_seconds: float = 24 * 60 * 60
    search_ttl_seconds: float = 15 * 60
    metadata_batch_size: int = 5
    search_limit: int = 30

    host_command: str = "pi"
    registry_command: str = "npm"

    timeouts: CommandTimeouts = Field(default_factory=CommandTimeouts)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="EXTMGR_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _inject_yaml_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            data = {}

        agent_dir = data.get("agent_dir") or os.environ.get("PI_CODING_AGENT_DIR")
        agent_dir = agent_dir or os.environ.get("EXTMGR_AGENT_DIR") or DEFAULT_AGENT_DIR
        layers = [
            _load_yaml_config(Path(agent_dir).expanduser() / CONFIG_FILENAME),
            _load_yaml_config(Path.cwd() / CONFIG_FILENAME),
        ]

        merged: dict[str, Any] = {}
        for layer in layers:
            merged = _deep_merge(merged, layer)

        present = {str(key).lower() for key in data}
        for key, value in merged.items():
            aliases = _ENV_ALIASES.get(key, ())
            if any(alias.lower() in present or os.environ.get(alias) for alias in aliases):
                continue
            if key not in data or data[key] is None:
                data[key] = value
            elif isinstance(data[key], dict) and isinstance(value, dict):
                data[key] = _deep_merge(value, data[key])
        return data

    @property
    def resolved_agent_dir(self) -> Path:
        return self.agent_dir.expanduser()

    @property
    def resolved_cache_dir(self) -> Path:
        if self.cache_dir is not None:
            return self.cache_dir.expanduser()
        return self.resolved_agent_dir / ".extmgr-cache"


def _load_yaml_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Ignoring unreadable config file", data={"path": str(path), "error": str(exc)})
        return {}
    if not isinstance(payload, dict):
        logger.warning("Ignoring config file without a mapping root", data={"path": str(path)})
        return {}
    return payload


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(existing, value)
        else:
            merged[key] = value
    return merged


_settings: Settings | None = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
