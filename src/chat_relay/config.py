"""Configuration loading utilities for the relay server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``CHAT_RELAY__`` (e.g., CHAT_RELAY__OPENAI__MODEL=gpt-4o). Credentials are
read last from their plain names: CHANNEL_SECRET, CHANNEL_ACCESS_TOKEN and
OPEN_AI_SECRET.
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Sequence

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "line": {"channel_secret": "", "channel_access_token": "", "verify_signature": True},
    "openai": {"api_key": "", "model": "gpt-4"},
    "store": {
        "backend": "dynamodb",
        "table_name": "messages",
        "index_name": "userIdIndex",
        "region": "ap-northeast-1",
        "data_dir": "data",
    },
    "history": {"preamble": [], "max_messages": None, "max_chars": None},
    "dispatcher": {"call_timeout": 30.0},
}

ENV_PREFIX = "CHAT_RELAY__"

# env var -> (section, key)
CREDENTIAL_ENV = {
    "CHANNEL_SECRET": ("line", "channel_secret"),
    "CHANNEL_ACCESS_TOKEN": ("line", "channel_access_token"),
    "OPEN_AI_SECRET": ("openai", "api_key"),
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _coerce(value: str) -> Any:
    lowered = value.strip().lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered in {"null", "none"}:
        return None
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value


def _set_path(cfg: Dict[str, Any], path: Sequence[str], value: Any) -> None:
    sub = cfg
    for p in path[:-1]:
        if not isinstance(sub.get(p), dict):
            sub[p] = {}
        sub = sub[p]
    sub[path[-1]] = value


def _apply_environment(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Layer the environment over ``cfg``.

    ``CHAT_RELAY__STORE__TABLE_NAME=x`` sets ``cfg["store"]["table_name"]``
    with scalar coercion (``null`` clears a value). Credentials are taken
    verbatim from their plain names last; a missing one degrades to "" and
    fails at the provider, not here.
    """
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX) and len(key) > len(ENV_PREFIX):
            _set_path(cfg, key[len(ENV_PREFIX):].lower().split("__"), _coerce(value))

    for env_name, path in CREDENTIAL_ENV.items():
        value = os.environ.get(env_name)
        if value is not None:
            _set_path(cfg, path, value)
        elif not isinstance(cfg.get(path[0]), dict) or cfg[path[0]].get(path[1]) is None:
            _set_path(cfg, path, "")
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the relay server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration merged over :data:`DEFAULTS`, with environment
        overrides and credentials applied.
    """
    # Resolve path precedence
    if path is None:
        path = os.environ.get("CHAT_RELAY_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        cfg = copy.deepcopy(DEFAULTS)
        return _apply_environment(cfg)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    cfg = _merge(DEFAULTS, loaded)
    return _apply_environment(cfg)
