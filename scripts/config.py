"""
Settings for the uploads ingestion job.

Each setting is a field on Config that names its environment variable. A value
is resolved in this order:
1. the ``settings`` section of channels.yaml
2. the environment variable
3. the field default

Secrets (API key, Turso auth token, PostgreSQL URL) are read from the
environment only, so a committed channels.yaml never carries them.

Usage:
    from config import get_config

    cfg = get_config()
    cfg.quota_limit, cfg.request_delay_ms
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

CONFIG_CANDIDATES = [
    "config/channels.yaml",
    "../config/channels.yaml",
    "channels.yaml",
]


def setting(default, env: str):
    """A field that may be set in channels.yaml or through ``env``."""
    return field(default=default, metadata={"env": env})


def secret(env: str):
    """A field read only from the ``env`` environment variable."""
    return field(default="", metadata={"env": env, "secret": True})


@dataclass
class Config:
    # Storage backend; Turso URL may also be a local file: path
    database_backend: str = setting("turso", "DATABASE_BACKEND")
    database_url: str = setting("file:data/tubehub.db", "TURSO_DATABASE_URL")
    database_auth_token: str = secret("TURSO_AUTH_TOKEN")
    postgres_url: str = secret("POSTGRES_URL")

    youtube_api_key: str = secret("YOUTUBE_API_KEY")

    log_dir: str = setting("logs", "LOG_DIR")
    log_level: str = setting("DEBUG", "LOG_LEVEL")
    console_log_level: str = setting("INFO", "CONSOLE_LOG_LEVEL")

    # Retries of a single YouTube request
    api_max_retries: int = setting(3, "API_MAX_RETRIES")
    api_base_delay: float = setting(1.0, "API_BASE_DELAY")
    api_max_delay: float = setting(60.0, "API_MAX_DELAY")
    api_timeout_seconds: float = setting(30.0, "API_TIMEOUT_SECONDS")
    api_max_results_per_page: int = setting(50, "API_MAX_RESULTS_PER_PAGE")

    # Retries of a single database statement or commit
    db_max_retries: int = setting(5, "DB_MAX_RETRIES")
    db_base_delay: float = setting(1.0, "DB_BASE_DELAY")
    db_max_delay: float = setting(30.0, "DB_MAX_DELAY")
    db_exponential_base: float = setting(2.0, "DB_EXPONENTIAL_BASE")

    # Daily quota; the day rolls over at midnight in quota_timezone
    quota_limit: int = setting(10000, "YOUTUBE_QUOTA_LIMIT")
    quota_safety_threshold: int = setting(100, "QUOTA_SAFETY_THRESHOLD")
    quota_warn_threshold: float = setting(0.8, "QUOTA_WARN_THRESHOLD")
    quota_timezone: str = setting("America/Los_Angeles", "QUOTA_TIMEZONE")

    request_delay_ms: int = setting(100, "REQUEST_DELAY_MS")

    # Channel IDs from the channels section of the config file
    channels: list = field(default_factory=list)

    # File the settings came from, None when defaults/env only
    _config_file: Optional[str] = None


DEFAULTS = {f.name: f.default for f in fields(Config) if "env" in f.metadata and not f.metadata.get("secret")}

_config: Optional[Config] = None


def _load_yaml(config_path: str) -> dict:
    try:
        with open(config_path, 'r') as f:
            document = yaml.safe_load(f)
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        print(f"Warning: Could not load config file {config_path}: {e}")
        return {}
    return document if isinstance(document, dict) else {}


def _parse_channel_entries(entries) -> list[str]:
    """
    Normalize the channels section into a list of channel IDs.

    Entries may be plain strings or mappings with an ``id`` (or ``channel_id``) key.
    """
    channel_ids = []
    for entry in entries or []:
        if isinstance(entry, str):
            channel_id = entry.strip()
        elif isinstance(entry, dict):
            channel_id = str(entry.get("id") or entry.get("channel_id") or "").strip()
        else:
            channel_id = ""
        if channel_id:
            channel_ids.append(channel_id)
    return channel_ids


def _coerce(value, cast_type):
    """Cast a raw YAML/env value to the field type; None when it does not convert."""
    if cast_type is str:
        return str(value)
    try:
        return cast_type(value)
    except (ValueError, TypeError):
        return None


def _resolve(f, yaml_settings: dict):
    env_key = f.metadata["env"]
    if f.metadata.get("secret"):
        return os.environ.get(env_key, f.default)

    if f.name in yaml_settings:
        value = yaml_settings[f.name]
        converted = _coerce(value, f.type)
        return value if converted is None else converted

    env_value = os.environ.get(env_key)
    if env_value is not None:
        converted = _coerce(env_value, f.type)
        if converted is not None:
            return converted
    return f.default


def find_config_file() -> Optional[str]:
    for candidate in CONFIG_CANDIDATES:
        if Path(candidate).exists():
            return candidate
    return None


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Build a Config from a channels.yaml file and the environment.

    Args:
        config_path: YAML file to read; the first of CONFIG_CANDIDATES that
                     exists when omitted. A missing file just means no overrides.
    """
    if config_path is None:
        config_path = find_config_file()

    document = _load_yaml(config_path) if config_path else {}
    yaml_settings = document.get("settings") or {}

    values = {f.name: _resolve(f, yaml_settings) for f in fields(Config) if "env" in f.metadata}
    return Config(
        **values,
        channels=_parse_channel_entries(document.get("channels")),
        _config_file=config_path,
    )


def get_config(config_path: Optional[str] = None, reload: bool = False) -> Config:
    """
    Return the process-wide Config, loading it on first use.

    Args:
        config_path: Path to config file (only used on first load or reload)
        reload: Load again even if a Config is already cached
    """
    global _config

    if _config is None or reload:
        _config = load_config(config_path)

    return _config


def set_config(config: Optional[Config]) -> None:
    """Install a Config (tests, CLI overrides); None forces the next get_config() to reload."""
    global _config
    _config = config
