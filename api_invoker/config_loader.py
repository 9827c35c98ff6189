"""Config Loader - Loads invoker configuration from YAML.

String values may reference environment variables as ${ENV_VAR}, which keeps
app secrets out of the file:

    base_url: https://api.weixin.qq.com
    credential:
      app_id: ${WX_APP_ID}
      app_secret: ${WX_APP_SECRET}
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from api_invoker.models import InvokerConfig


class ConfigError(Exception):
    """Raised when configuration loading fails."""


_ENV_VAR = re.compile(r"\$\{([^}]+)\}")


def load_invoker_config(config_path: Path) -> InvokerConfig:
    """Load invoker configuration from YAML with ${ENV_VAR} substitution."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}") from e

    if not isinstance(raw_config, dict):
        raise ConfigError("Config file must be a YAML mapping")

    try:
        return InvokerConfig.model_validate(substitute_env_vars(raw_config))
    except ValidationError as e:
        raise ConfigError(f"Invalid config structure: {e}") from e


def substitute_env_vars(data: Any) -> Any:
    """Recursively substitute ${ENV_VAR} in every string of a parsed document."""
    if isinstance(data, str):
        return _ENV_VAR.sub(_env_value, data)
    if isinstance(data, dict):
        return {k: substitute_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [substitute_env_vars(item) for item in data]
    return data


def _env_value(match: re.Match[str]) -> str:
    var_name = match.group(1)
    value = os.environ.get(var_name)
    if value is None:
        raise ConfigError(f"Environment variable '{var_name}' is not set")
    return value
