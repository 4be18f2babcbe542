"""Load and validate configuration from YAML with env var substitution."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _load_dotenv(path: str | Path = ".env") -> None:
    """Load a .env file into os.environ (without overwriting existing vars)."""
    env_path = Path(path)
    if not env_path.is_file():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and key not in os.environ:
                os.environ[key] = value


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} patterns in config values."""
    if isinstance(value, str):
        match = _ENV_PATTERN.search(value)
        if match:
            if match.group(0) == value:
                return os.environ.get(match.group(1), "")
            return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1), ""), value)
        return value
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def load_config(path: str | Path = "config.yaml") -> dict[str, Any]:
    """Load config from YAML file and resolve environment variables."""
    _load_dotenv()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return _resolve_env_vars(raw)


def get_source_name(config: dict) -> str:
    """Return the configured thread source (default: slack)."""
    return config.get("source", {}).get("type", "slack")


def get_source_config(config: dict) -> dict:
    """Return the settings block of the configured thread source."""
    name = get_source_name(config)
    return config.get("source", {}).get(name, {})


def get_channel_id(config: dict) -> str:
    return str(get_source_config(config).get("channel_id", ""))


def get_active_target(config: dict) -> str | None:
    """Return the name of the first enabled publish target, if any."""
    targets = config.get("publish", {})
    for name, cfg in targets.items():
        if isinstance(cfg, dict) and cfg.get("enabled", False):
            return name
    return None


def get_target_config(config: dict, name: str) -> dict:
    return config.get("publish", {}).get(name, {})


def _storage(config: dict) -> dict:
    return config.get("storage", {})


def get_state_path(config: dict) -> str:
    """Get the mapping table path from config."""
    return _storage(config).get("state_file", "data/state.json")


def get_output_dir(config: dict) -> str:
    """Directory for transcripts and summary scaffolds."""
    return _storage(config).get("output_dir", "data/posts")


def get_media_dir(config: dict) -> str:
    """Directory for downloaded images, one subdirectory per thread."""
    return _storage(config).get("media_dir", "data/images")


def get_media_link_prefix(config: dict) -> str:
    """Prefix used when linking images from transcripts."""
    return _storage(config).get("media_link_prefix", "../images").rstrip("/")


def get_max_concurrency(config: dict) -> int:
    """Upper bound for concurrent fetches, downloads and exports."""
    value = int(config.get("pipeline", {}).get("max_concurrency", 8))
    return max(value, 1)


def get_progress_retention(config: dict) -> float:
    """Seconds a finished run stays visible to pollers."""
    return float(config.get("pipeline", {}).get("progress_retention_seconds", 30))


def get_log_path(config: dict) -> str:
    """Log file lives next to the state file unless configured."""
    configured = config.get("logging", {}).get("file")
    if configured:
        return configured
    return str(Path(get_state_path(config)).parent / "threadsync.log")
