"""Settings loader: config.yaml sections plus environment overrides."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from loguru import logger
from pydantic import ValidationError

from .errors import ConfigError
from .schemas import Settings


# env var -> (section, field)
ENV_OVERRIDES = {
    "MAX_TOKENS_PER_FILE": ("context", "max_tokens_per_file"),
    "CONTEXT_WINDOW_SIZE": ("context", "context_window_lines"),
    "ENABLE_SMART_CACHE": ("context", "enable_cache"),
    "CACHE_STRATEGY": ("context", "cache_strategy"),
    "REVIEW_CACHE_DIR": ("cache", "cache_dir"),
    "REVIEW_CACHE_TTL": ("cache", "default_ttl_seconds"),
}

_FALSE_STRINGS = {"false", "0", "no", "off"}


def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """Load configuration from YAML file."""
    config_file = Path(config_path)

    if not config_file.exists():
        logger.warning(f"Config file not found: {config_path}. Using defaults.")
        return {}

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config: {e}")
        return {}

    if not isinstance(config, dict):
        logger.error(f"Config root must be a mapping: {config_path}")
        return {}

    logger.info(f"Loaded configuration from: {config_path}")
    return config


def _env_value(name: str, raw: str) -> Any:
    if name == "ENABLE_SMART_CACHE":
        return raw.strip().lower() not in _FALSE_STRINGS
    if name == "CACHE_STRATEGY":
        return raw.strip().lower()
    return raw.strip()


def apply_env_overrides(raw: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Return a copy of `raw` with environment overrides applied."""
    env = os.environ if environ is None else environ
    merged: Dict[str, Any] = {
        "context": dict(raw.get("context") or {}),
        "cache": dict(raw.get("cache") or {}),
    }

    # A cache.strategy set in YAML also drives the pipeline-level policy.
    if "strategy" in merged["cache"] and "cache_strategy" not in merged["context"]:
        merged["context"]["cache_strategy"] = merged["cache"]["strategy"]

    for name, (section, field_name) in ENV_OVERRIDES.items():
        value = env.get(name)
        if value is None or value.strip() == "":
            continue
        merged[section][field_name] = _env_value(name, value)
        logger.debug(f"Config override from {name}")

    return merged


def load_settings(
    config_path: str = "config.yaml",
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build validated Settings. Invalid values raise ConfigError."""
    raw = load_config(config_path)
    for section in ("context", "cache"):
        if raw.get(section) is not None and not isinstance(raw.get(section), dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")

    merged = apply_env_overrides(raw, environ)
    try:
        return Settings.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
