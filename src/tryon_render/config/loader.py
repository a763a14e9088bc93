"""Config and request file loading."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pydantic
import yaml

from tryon_render.config.hierarchy import load_config_hierarchy
from tryon_render.config.schema import RenderConfig
from tryon_render.errors.exceptions import ValidationError
from tryon_render.types import RenderRequest


def load_render_config(**runtime_overrides: Any) -> RenderConfig:
    """Resolve the config hierarchy and validate it into a RenderConfig."""
    merged = load_config_hierarchy(**runtime_overrides)
    try:
        return RenderConfig.model_validate(merged)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid configuration: {exc}") from exc


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load any YAML file safely."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"YAML file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML mapping, got {type(raw).__name__} in {path}")

    return raw


def load_request_file(path: str | Path) -> RenderRequest:
    """Load a render request from a JSON or YAML file."""
    path = Path(path)
    if path.suffix.lower() in (".yaml", ".yml"):
        raw = load_yaml(path)
    else:
        if not path.exists():
            raise FileNotFoundError(f"Request file not found: {path}")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Request file {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValidationError(f"Request file {path} must hold a JSON object")
    return RenderRequest.from_payload(raw)
