"""Configuration hierarchy: merges sources in priority order.

Precedence (later overrides earlier):
  1. Package defaults
  2. Global config    (~/.tryon-render/config.yaml)
  3. Project config   (./tryon-render.yaml searched upward, or $TRYON_CONFIG)
  4. Environment variables (CACHE_TTL_DAYS, MAX_RETRIES, TRYON_*, ...)
  5. Runtime arguments
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml

from tryon_render.config.defaults import get_defaults

logger = logging.getLogger(__name__)

_GLOBAL_CONFIG_PATH = Path.home() / ".tryon-render" / "config.yaml"
_PROJECT_CONFIG_NAME = "tryon-render.yaml"
_EXPLICIT_CONFIG_ENV = "TRYON_CONFIG"

# Unprefixed names match what the hosting service already exports
_ENV_MAP: dict[str, str] = {
    "CACHE_TTL_DAYS": "cache_ttl_days",
    "SIGNED_URL_TTL_SECONDS": "signed_url_ttl_seconds",
    "MAX_RETRIES": "max_retries",
    "PROVIDER_TIMEOUT_MS": "provider_timeout_ms",
    "LEASE_WAIT_TIMEOUT_MS": "lease_wait_timeout_ms",
    "GEMINI_API_KEY": "gemini_api_key",
    "OPENAI_API_KEY": "openai_api_key",
    "OPENAI_BASE_URL": "openai_base_url",
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_SERVICE_ROLE_KEY": "supabase_service_key",
    "TRYON_CACHE_FAIL_OPEN": "cache_fail_open",
    "TRYON_CACHE_DB_PATH": "cache_db_path",
    "TRYON_METADATA_BACKEND": "metadata_backend",
    "TRYON_STORAGE_BACKEND": "storage_backend",
    "TRYON_STORAGE_ROOT": "storage_root",
    "TRYON_STORAGE_BASE_URL": "storage_base_url",
    "TRYON_STORAGE_SIGNING_KEY": "storage_signing_key",
    "TRYON_SUPABASE_BUCKET": "supabase_bucket",
    "TRYON_PRIMARY_PROVIDER": "primary_provider",
    "TRYON_FALLBACK_PROVIDER": "fallback_provider",
    "TRYON_GATE_ENABLED": "gate_enabled",
    "TRYON_GATE_FAIL_OPEN": "gate_fail_open",
    "TRYON_OPTIMIZE_IMAGES": "optimize_images",
    "TRYON_LOG_LEVEL": "log_level",
}

_INT_KEYS = frozenset(
    {
        "cache_ttl_days",
        "signed_url_ttl_seconds",
        "max_retries",
        "provider_timeout_ms",
        "lease_wait_timeout_ms",
        "image_max_side",
        "image_quality",
    }
)
_BOOL_KEYS = frozenset({"cache_fail_open", "gate_enabled", "gate_fail_open", "optimize_images"})
_TRUTHY = frozenset({"1", "true", "yes", "on"})


def load_config_hierarchy(**runtime_overrides: Any) -> dict[str, Any]:
    """Merge every configuration layer into one flat dict.

    Runtime overrides set to ``None`` are treated as "not given" so CLI
    options without a value never mask lower layers.
    """
    merged: dict[str, Any] = {}
    for source, values in _layers(runtime_overrides):
        if values:
            logger.debug("Config layer %s sets: %s", source, ", ".join(sorted(values)))
            merged.update(values)
    return merged


def _layers(runtime_overrides: dict[str, Any]) -> Iterator[tuple[str, dict[str, Any]]]:
    yield "defaults", get_defaults()
    yield str(_GLOBAL_CONFIG_PATH), _load_yaml_config(_GLOBAL_CONFIG_PATH) or {}

    project_path = _project_config_path()
    if project_path is not None:
        yield str(project_path), _load_yaml_config(project_path) or {}

    yield "environment", {
        key: _coerce_env_value(key, os.environ[name])
        for name, key in _ENV_MAP.items()
        if name in os.environ
    }
    yield "runtime", {key: value for key, value in runtime_overrides.items() if value is not None}


def _project_config_path() -> Path | None:
    explicit = os.environ.get(_EXPLICIT_CONFIG_ENV)
    if explicit:
        return Path(explicit).expanduser()

    here = Path.cwd()
    return next(
        (d / _PROJECT_CONFIG_NAME for d in (here, *here.parents) if (d / _PROJECT_CONFIG_NAME).is_file()),
        None,
    )


def _load_yaml_config(path: Path) -> dict[str, Any] | None:
    """Read a YAML mapping, or None when the file is absent or unusable."""
    if not path.is_file():
        return None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Skipping config %s: %s", path, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Skipping config %s: top level is %s, not a mapping", path, type(data).__name__)
        return None
    return data


def _coerce_env_value(key: str, value: str) -> Any:
    """Turn an environment string into the type the config key expects.

    Unparseable integers are passed through unchanged so validation in
    RenderConfig reports them against the right field.
    """
    if key in _BOOL_KEYS:
        return value.strip().lower() in _TRUTHY
    if key in _INT_KEYS:
        try:
            return int(value)
        except ValueError:
            logger.warning("Env value for '%s' is not an integer: %r", key, value)
    return value
