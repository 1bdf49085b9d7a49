from __future__ import annotations

"""Dashboard configuration loading, schema validation, and API base guards."""

import ipaddress
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml
from jsonschema import Draft202012Validator


CONFIG_FILENAME = "config.yaml"
DEFAULT_API_BASE = "http://127.0.0.1:8000"

CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "api_base": {"type": "string", "minLength": 1},
        "allow_nonlocal": {"type": "boolean"},
        "request_timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
        "current_user_timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
        "trust_window_seconds": {"type": "integer", "minimum": 0},
        "resend_cooldown_seconds": {"type": "integer", "minimum": 1},
        "min_key_length": {"type": "integer", "minimum": 1, "maximum": 128},
        "code_length": {"type": "integer", "minimum": 4, "maximum": 12},
    },
}


@dataclass(frozen=True)
class DashboardConfig:
    """Tunables for the credential client and its prompt flows."""

    api_base: str = DEFAULT_API_BASE
    allow_nonlocal: bool = False
    request_timeout_seconds: float = 10.0
    current_user_timeout_seconds: float = 3.0
    trust_window_seconds: int = 60
    resend_cooldown_seconds: int = 60
    min_key_length: int = 4
    code_length: int = 6


def is_local_host(hostname: str) -> bool:
    normalized = hostname.strip().lower().rstrip(".")
    if normalized == "localhost":
        return True
    try:
        return ipaddress.ip_address(normalized).is_loopback
    except ValueError:
        return False


def validate_api_base(api_base: str, *, allow_nonlocal: bool = False) -> str:
    """Validate the key server base URL with a localhost-only default guard."""

    parsed = urlsplit(api_base)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError("api_base must use http or https scheme.")
    if parsed.username or parsed.password:
        raise ValueError("api_base must not include userinfo.")
    if not parsed.hostname:
        raise ValueError("api_base must include a host.")
    if not allow_nonlocal and not is_local_host(parsed.hostname):
        raise ValueError("api_base must target localhost unless allow_nonlocal is set.")
    return api_base.rstrip("/")


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Config file is not valid YAML: {path}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError(f"Config file must be a mapping: {path}")
    return payload


def load_config(home: Path, *, environ: dict[str, str] | None = None) -> DashboardConfig:
    """Load `<home>/config.yaml`, validate it, and apply environment overrides."""

    env = os.environ if environ is None else environ
    path = home / CONFIG_FILENAME
    payload = _load_yaml(path)
    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Config validation failed for {path} at {where}: {first.message}")

    config = DashboardConfig(**payload)
    override = (env.get("CHATSTATS_API_BASE") or "").strip()
    if override:
        config = replace(config, api_base=override)
    return replace(config, api_base=validate_api_base(config.api_base, allow_nonlocal=config.allow_nonlocal))
