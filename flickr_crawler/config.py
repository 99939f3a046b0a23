"""Optional YAML/JSON config file support for the CLI."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import yaml


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ValueError(f"Cannot parse boolean from value '{value}'.")


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise SystemExit(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    raw = path.read_text(encoding="utf-8")
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(raw)
    elif suffix == ".json":
        data = json.loads(raw)
    else:
        raise SystemExit("Unsupported config file extension. Use .yaml/.yml or .json.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise SystemExit("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flattened[f"{key}_{nested_key}"] = nested_value
        else:
            flattened[key] = value
    return flattened


def _coerce_number(value: object, key: str, kind: type) -> Any:
    if isinstance(value, bool):
        raise SystemExit(f"Config key '{key}' must be a number.")
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise SystemExit(f"Config key '{key}' must be a number.") from exc


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    int_map = {
        "timeout_seconds": "timeout_seconds",
        "network_timeout_seconds": "timeout_seconds",
        "max_retries": "max_retries",
        "network_max_retries": "max_retries",
        "accept_threshold": "accept_threshold",
        "search_accept_threshold": "accept_threshold",
        "hard_cap": "hard_cap",
        "search_hard_cap": "hard_cap",
        "default_step_seconds": "default_step_seconds",
        "search_default_step_seconds": "default_step_seconds",
        "zero_result_retries": "zero_result_retries",
        "search_zero_result_retries": "zero_result_retries",
        "divergence_min_calls": "divergence_min_calls",
        "search_divergence_min_calls": "divergence_min_calls",
        "divergence_repeat_threshold": "divergence_repeat_threshold",
        "search_divergence_repeat_threshold": "divergence_repeat_threshold",
        "max_divergence_resets": "max_divergence_resets",
        "search_max_divergence_resets": "max_divergence_resets",
        "max_workers": "max_workers",
        "download_max_workers": "max_workers",
        "max_files_per_chunk": "max_files_per_chunk",
        "download_max_files_per_chunk": "max_files_per_chunk",
    }
    float_map = {
        "request_interval_seconds": "request_interval_seconds",
        "network_request_interval_seconds": "request_interval_seconds",
        "retry_sleep_seconds": "retry_sleep_seconds",
        "network_retry_sleep_seconds": "retry_sleep_seconds",
        "zero_result_backoff_seconds": "zero_result_backoff_seconds",
        "search_zero_result_backoff_seconds": "zero_result_backoff_seconds",
    }
    scalar_map = {
        "service_url": "service_url",
        "network_service_url": "service_url",
        "state_dir": "state_dir",
        "resume_state_dir": "state_dir",
        "logs_dir": "logs_dir",
        "logging_logs_dir": "logs_dir",
    }
    bool_map = {
        "show_progress": "show_progress",
        "logging_show_progress": "show_progress",
    }

    for source_key, target_key in int_map.items():
        if source_key in cfg:
            defaults[target_key] = _coerce_number(cfg[source_key], source_key, int)
    for source_key, target_key in float_map.items():
        if source_key in cfg:
            defaults[target_key] = _coerce_number(cfg[source_key], source_key, float)
    for source_key, target_key in scalar_map.items():
        if source_key in cfg:
            defaults[target_key] = str(cfg[source_key])
    for source_key, target_key in bool_map.items():
        if source_key in cfg:
            try:
                defaults[target_key] = _parse_bool(cfg[source_key])
            except ValueError as exc:
                raise SystemExit(f"Config key '{source_key}': {exc}") from exc
    return defaults
