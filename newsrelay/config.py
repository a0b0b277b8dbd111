"""Configuration loading for newsrelay."""
import copy
import os
from pathlib import Path

import yaml

from newsrelay.errors import ConfigError
from newsrelay.models import SummaryLevel

DEFAULTS = {
    "database": {"path": "data/newsrelay.db"},
    "schedule": {
        "timezone": "Asia/Tokyo",
        "ingestion": "0 * * * *",
        "delivery": "*/30 * * * *",
        "retention": "0 2 * * *",
    },
    "ingestion": {
        "feed_workers": 4,
        "enrichment_workers": 2,
        "summary_level": SummaryLevel.STANDARD,
        "max_keywords": 5,
        "retry_unprocessed_limit": 10,
    },
    "feeds": {
        "request_timeout": 30,
        "parse_timeout": 45,
        "user_agent": "NewsRelay/1.0 (compatible; RSS reader)",
    },
    "extractor": {"request_timeout": 10, "min_body_length": 100},
    "summarizer": {"model": "gpt-3.5-turbo", "api_key": "", "base_url": ""},
    "delivery": {
        "lookback_hours": 24,
        "page_size": 5,
        "window_minutes": 30,
        "workers": 4,
        "retry_failed": False,
    },
    "transport": {
        "channel_access_token": "",
        "push_url": "https://api.line.me/v2/bot/message/push",
        "request_timeout": 10,
        "max_messages_per_push": 5,
    },
    "retention": {"ledger_days": 90, "unprocessed_days": 7, "content_days": 30},
    "logging": {"dir": "logs", "retention_days": 30},
}

# (env var, section, key)
ENV_OVERRIDES = [
    ("OPENAI_API_KEY", "summarizer", "api_key"),
    ("LINE_CHANNEL_ACCESS_TOKEN", "transport", "channel_access_token"),
    ("NEWSRELAY_DB_PATH", "database", "path"),
]

POSITIVE_INTS = [
    ("ingestion", "feed_workers"),
    ("ingestion", "enrichment_workers"),
    ("delivery", "workers"),
    ("delivery", "page_size"),
    ("delivery", "lookback_hours"),
    ("transport", "max_messages_per_push"),
]


def get_project_dir() -> Path:
    """Project root (parent of the package directory)."""
    return Path(__file__).parent.parent


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Path | None = None) -> dict:
    """Load YAML config merged over DEFAULTS, then apply env overrides.

    Resolution order for the file: explicit path, $NEWSRELAY_CONFIG,
    config/config.yaml under the project dir. A missing file means defaults.
    """
    if path is None:
        env_path = os.environ.get("NEWSRELAY_CONFIG")
        path = Path(env_path) if env_path else get_project_dir() / "config" / "config.yaml"

    user_config = {}
    if path.exists():
        try:
            user_config = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(user_config, dict):
            raise ConfigError(f"Config root must be a mapping: {path}")

    config = _deep_merge(DEFAULTS, user_config)

    for env_var, section, key in ENV_OVERRIDES:
        value = os.environ.get(env_var)
        if value:
            config[section][key] = value

    validate_config(config)
    return config


def validate_config(config: dict) -> None:
    level = config["ingestion"]["summary_level"]
    if level not in SummaryLevel.ALL:
        raise ConfigError(f"ingestion.summary_level must be one of {SummaryLevel.ALL}, got {level!r}")

    for section, key in POSITIVE_INTS:
        value = config[section][key]
        if not isinstance(value, int) or value <= 0:
            raise ConfigError(f"{section}.{key} must be a positive integer, got {value!r}")


def get_db_path(config: dict) -> Path:
    """Database path; relative paths resolve against the project dir."""
    path = Path(config["database"]["path"]).expanduser()
    return path if path.is_absolute() else get_project_dir() / path


def get_log_dir(config: dict) -> Path:
    path = Path(config["logging"]["dir"]).expanduser()
    return path if path.is_absolute() else get_project_dir() / path
