"""Layered WebCite client configuration, env interpolation, and redaction.

Provides:
- Defaults <- .webcite.config.yaml <- WEBCITE_* environment, deep-merged
- {env:VAR} interpolation restricted to an allowlist
- Redaction for safe logging (the API key never reaches a log line)

Example .webcite.config.yaml:

    webcite:
      api_key: "{env:WEBCITE_API_KEY}"
      base_url: https://api.webcite.co
      timeout_s: 120
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger("webcite.config_loader")

CONFIG_FILENAME = ".webcite.config.yaml"

REDACTED = "***REDACTED***"

DEFAULTS: Dict[str, Any] = {
    "webcite": {
        "api_key": "",
        "base_url": "https://api.webcite.co",
        "timeout_s": 60.0,
        "connect_timeout_s": 5.0,
    }
}

# Environment variable -> key under "webcite"
_ENV_OVERRIDES = {
    "WEBCITE_API_KEY": "api_key",
    "WEBCITE_API_URL": "base_url",
    "WEBCITE_TIMEOUT_S": "timeout_s",
}

_ENV_ALLOWLIST = [re.compile(r"^WEBCITE_")]

_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer)",
    re.IGNORECASE,
)


class ConfigurationError(ValueError):
    """No usable client configuration (missing key, bad timeout)."""


@dataclass(frozen=True)
class WebCiteSettings:
    """Resolved client settings."""

    api_key: str
    base_url: str = "https://api.webcite.co"
    timeout_s: float = 60.0
    connect_timeout_s: float = 5.0


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(value: str) -> str:
    """Resolve {env:VAR} tokens in a string value.

    Raises ConfigurationError if the variable is not allowlisted or not set.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not any(p.search(var_name) for p in _ENV_ALLOWLIST):
            raise ConfigurationError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^WEBCITE_.*"
            )
        val = os.environ.get(var_name)
        if val is None:
            raise ConfigurationError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of config with every {env:...} string resolved."""
    result = {}
    for key, value in config.items():
        if isinstance(value, str):
            result[key] = interpolate_value(value)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value)
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base; overlay wins. Inputs are not modified."""
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ── Loading ───────────────────────────────────────────────────────────


def read_config_file(project_root: str = ".") -> Dict[str, Any]:
    """Read .webcite.config.yaml from project_root. Missing file -> {}."""
    path = Path(project_root) / CONFIG_FILENAME
    if not path.is_file():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    logger.debug("Loaded config file %s", path)
    return data


def env_overrides() -> Dict[str, Any]:
    """Collect WEBCITE_* environment overrides."""
    section = {}
    for env_var, key in _ENV_OVERRIDES.items():
        val = os.environ.get(env_var)
        if val:
            section[key] = val
    return {"webcite": section} if section else {}


def load_config(project_root: str = ".") -> Dict[str, Any]:
    """Merge defaults, config file and environment, then interpolate."""
    merged = deep_merge(DEFAULTS, read_config_file(project_root))
    merged = deep_merge(merged, env_overrides())
    config = interpolate_config(merged)
    logger.debug("Effective config: %s", redact_config(merged))
    return config


def load_settings(project_root: str = ".") -> WebCiteSettings:
    """Resolve WebCiteSettings. Raises ConfigurationError when no API key is configured."""
    section = load_config(project_root).get("webcite", {})

    api_key = section.get("api_key") or ""
    if not api_key:
        raise ConfigurationError(
            "WebCite API key not configured. Set WEBCITE_API_KEY or "
            f"webcite.api_key in {CONFIG_FILENAME}"
        )

    try:
        timeout_s = float(section.get("timeout_s", 60.0))
        connect_timeout_s = float(section.get("connect_timeout_s", 5.0))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid timeout setting: {e}") from e

    return WebCiteSettings(
        api_key=api_key,
        base_url=str(section.get("base_url") or DEFAULTS["webcite"]["base_url"]).rstrip("/"),
        timeout_s=timeout_s,
        connect_timeout_s=connect_timeout_s,
    )


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Redacted copy of config for display/logging.

    Interpolated values show their source; sensitive keys are masked.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value)
        elif isinstance(value, str) and _INTERP_RE.search(value):
            sources = ", ".join(f"env:{name}" for name in _INTERP_RE.findall(value))
            result[key] = f"{REDACTED} (from {sources})"
        elif _SENSITIVE_KEY_RE.search(key) and value:
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Copy of headers with sensitive values masked."""
    return {
        key: REDACTED if _SENSITIVE_KEY_RE.search(key) else value
        for key, value in headers.items()
    }


def redact_string(value: str, secrets: Optional[List[str]] = None) -> str:
    """Mask known secrets and x-api-key headers inside free text."""
    result = value

    candidates = list(secrets or [])
    env_key = os.environ.get("WEBCITE_API_KEY")
    if env_key:
        candidates.append(env_key)
    for secret in candidates:
        if secret and secret in result:
            result = result.replace(secret, REDACTED)

    return re.sub(
        r"(x-api-key:\s*)\S+", rf"\1{REDACTED}", result, flags=re.IGNORECASE
    )
