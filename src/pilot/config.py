"""YAML configuration for the pilot runtime."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

DEFAULT_CONFIG_NAME = "pilot.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "pilot": {
        "max_epoch": 3,
        "max_steps_per_epoch": 3,
        "default_skill": "commonQnA",
        "summary_skill": "commonQnA",
        "match_threshold": 3,
    },
    "models": {
        "default": "offline",
        "timeout": 120,
        "max_attempts": 3,
        "retry_delay": 0.5,
        "base_url": "https://api.openai.com/v1/responses",
    },
    "user": {
        "uid": "local-user",
        "locale": None,
    },
    "paths": {
        "data": "data",
        "db_path": "data/pilot.sqlite",
        "logs": "data/logs",
    },
}


class ConfigError(ValueError):
    """Raised when a configuration file cannot be read or is malformed."""


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def read_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration and ensure it is a mapping at the top level."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as error:
        raise ConfigError(f"Config file not found: {config_path}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def resolve_path(config: Mapping[str, Any], key: str, config_path: Path) -> Path:
    """Resolve a ``paths`` entry relative to the configuration file."""
    paths_cfg = config.get("paths") or {}
    value = paths_cfg.get(key) or DEFAULT_CONFIG_TEMPLATE["paths"][key]
    candidate = Path(str(value))
    if not candidate.is_absolute():
        candidate = (config_path.parent / candidate).resolve()
    return candidate


@dataclass(slots=True)
class PilotSettings:
    """Epoch driver limits and skill choices."""

    max_epoch: int = 3
    max_steps_per_epoch: int = 3
    default_skill: str = "commonQnA"
    summary_skill: str = "commonQnA"
    match_threshold: int = 3

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PilotSettings":
        pilot_cfg = config.get("pilot") or {}
        defaults = cls()

        def _positive_int(key: str, fallback: int) -> int:
            value = pilot_cfg.get(key)
            if isinstance(value, int) and not isinstance(value, bool) and value > 0:
                return value
            return fallback

        def _name(key: str, fallback: str) -> str:
            value = pilot_cfg.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            return fallback

        return cls(
            max_epoch=_positive_int("max_epoch", defaults.max_epoch),
            max_steps_per_epoch=_positive_int("max_steps_per_epoch", defaults.max_steps_per_epoch),
            default_skill=_name("default_skill", defaults.default_skill),
            summary_skill=_name("summary_skill", defaults.summary_skill),
            match_threshold=_positive_int("match_threshold", defaults.match_threshold),
        )


__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "PilotSettings",
    "copy_config_template",
    "read_config",
    "resolve_path",
    "write_config",
]
