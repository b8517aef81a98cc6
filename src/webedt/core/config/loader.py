from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from webedt.core.config.schema import AppConfig

# Environment variable -> dotted config key. Applied after the YAML merge.
ENV_OVERRIDES: tuple[tuple[str, str], ...] = (
    ("AI_WORKER_URL", "worker.url"),
    ("DATABASE_URL", "database.url"),
    ("WEBEDT_ENVIRONMENT", "environment"),
    ("WEBEDT_LOG_LEVEL", "telemetry.log_level"),
)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = _deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _read_mapping(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    content = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(content, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return content


def _with_dotted(target: dict[str, Any], dotted_key: str, value: Any) -> dict[str, Any]:
    head, _, rest = dotted_key.partition(".")
    if not rest:
        return {**target, head: value}
    section = target.get(head)
    return {**target, head: _with_dotted(section if isinstance(section, dict) else {}, rest, value)}


def load_app_config(
    defaults_path: str | Path = "config/defaults.yaml",
    instance_path: str | Path | None = None,
) -> AppConfig:
    """Defaults file, then the instance file, then environment overrides."""
    merged = _read_mapping(Path(defaults_path))

    instance_file = instance_path or os.getenv("WEBEDT_CONFIG_FILE")
    if instance_file:
        merged = _deep_merge(merged, _read_mapping(Path(instance_file)))

    for env_name, dotted_key in ENV_OVERRIDES:
        value = os.getenv(env_name)
        if value:
            merged = _with_dotted(merged, dotted_key, value)

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as exc:
        raise ValueError(f"Invalid WebEDT configuration: {exc}") from exc
