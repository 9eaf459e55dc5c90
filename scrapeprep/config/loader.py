from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from scrapeprep.config.paths import get_global_config_path, get_project_config_path
from scrapeprep.config.schema import AppConfig

CONFIG_PATH_ENV = "SCRAPEPREP_CONFIG"
STORE_URL_ENV = "SCRAPEPREP_STORE_URL"
LOG_LEVEL_ENV = "SCRAPEPREP_LOG_LEVEL"

# Environment variables that win over every config file.
_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    STORE_URL_ENV: ("store", "url"),
    LOG_LEVEL_ENV: ("logging", "level"),
}


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = dict(base)
    for k, v in override.items():
        existing = out.get(k)
        if isinstance(v, dict) and isinstance(existing, dict):
            out[k] = _merge_dicts(existing, v)
        else:
            out[k] = v
    return out


def _resolve_env(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("$") and len(value) > 1:
        return os.getenv(value[1:])
    if isinstance(value, dict):
        # Unset variables drop the key so the schema default applies.
        resolved = {k: _resolve_env(v) for k, v in value.items()}
        return {k: v for k, v in resolved.items() if v is not None}
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    return value


def _set_path(data: dict[str, Any], keys: tuple[str, ...], value: Any) -> None:
    node = data
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def config_sources() -> list[Path]:
    """Config files in increasing precedence."""

    sources = [get_global_config_path(), get_project_config_path()]
    explicit = os.getenv(CONFIG_PATH_ENV)
    if explicit:
        sources.append(Path(explicit).expanduser())
    return sources


def load_raw_config() -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for path in config_sources():
        merged = _merge_dicts(merged, _read_yaml(path))
    resolved = _resolve_env(merged)
    for env_name, keys in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            _set_path(resolved, keys, value)
    return resolved


def load_config() -> AppConfig:
    raw = load_raw_config()
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e
