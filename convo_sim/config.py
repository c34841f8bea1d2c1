"""Application configuration.

Settings come from three layers, later ones winning:

    defaults            _CONFIG_DEFAULTS below
    {data}/config.json  written by update_config() / PATCH /api/settings
    environment         .env (loaded by the app with python-dotenv) or the shell

API keys are only ever read from the environment and never written to disk.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable

from convo_sim.errors import ConfigurationError
from convo_sim.storage import data_dir

_CONFIG_DEFAULTS: dict[str, Any] = {
    "anthropic_base_url": "",
    "gemini_base_url": "",
    "llm_timeout": 30.0,
    "history_window": 10,
    "generation_retries": 1,
}

# setting -> (environment variable, converter)
_ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "anthropic_base_url": ("ANTHROPIC_BASE_URL", str),
    "gemini_base_url": ("GEMINI_BASE_URL", str),
    "llm_timeout": ("LLM_TIMEOUT", float),
    "history_window": ("HISTORY_WINDOW", int),
    "generation_retries": ("GENERATION_RETRIES", int),
}

# setting -> (check, what the check requires)
_LIMITS: dict[str, tuple[Callable[[Any], bool], str]] = {
    "llm_timeout": (lambda v: v > 0, "greater than 0"),
    "history_window": (lambda v: v >= 1, "at least 1"),
    "generation_retries": (lambda v: v >= 0, "at least 0"),
}

_SECRETS: dict[str, str] = {
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "gemini_api_key": "GEMINI_API_KEY",
    "elevenlabs_api_key": "ELEVENLABS_API_KEY",
}


def _config_path() -> Path:
    return data_dir() / "config.json"


def _stored() -> dict[str, Any]:
    path = _config_path()
    if not path.is_file():
        return {}
    return {k: v for k, v in json.loads(path.read_text()).items() if k in _CONFIG_DEFAULTS}


def _check_limits(values: dict[str, Any]) -> None:
    for key, (check, requirement) in _LIMITS.items():
        if values.get(key) is not None and not check(values[key]):
            raise ConfigurationError(f"{key} must be {requirement}, got {values[key]!r}")


def get_config() -> dict[str, Any]:
    """Read config, returning defaults merged with stored values and environment."""
    config = dict(_CONFIG_DEFAULTS)
    config.update(_stored())
    for key, (env_name, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            try:
                config[key] = convert(raw)
            except ValueError as e:
                raise ConfigurationError(f"{env_name}={raw!r} is not a valid {convert.__name__}") from e
    _check_limits(config)
    for key, env_name in _SECRETS.items():
        config[key] = os.getenv(env_name, "")
    return config


def public_config(config: dict[str, Any]) -> dict[str, Any]:
    """Config safe to return over the API: keys replaced by whether they are set."""
    result = {k: v for k, v in config.items() if k not in _SECRETS}
    for key in _SECRETS:
        result[f"{key}_set"] = bool(config.get(key))
    return result


def update_config(fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into the stored config and persist. Returns full config."""
    _check_limits(fields)
    stored = _stored()
    for key, value in fields.items():
        if key in _CONFIG_DEFAULTS and value is not None:
            stored[key] = value
    _config_path().write_text(json.dumps(stored, indent=2))
    return get_config()
