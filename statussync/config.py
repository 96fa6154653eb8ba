"""
YAML configuration loader.

Reads config.yaml and produces typed OrganizationConfig / SyncSettings
objects. Falls back to sensible defaults if the config file is missing.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from statussync.errors import ConfigurationError
from statussync.models import OrganizationConfig, SyncSettings

# Default path: config.yaml next to the project root
_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

_ENV_CONFIG_PATH = "STATUSSYNC_CONFIG"

# Fallback if no config file exists at all
_DEFAULT_ORGANIZATION = OrganizationConfig(org_id="demo", public=True)

_FLOAT_SETTINGS = (
    "request_timeout",
    "connect_timeout",
    "heartbeat_seconds",
    "base_backoff",
    "max_backoff",
    "debounce_seconds",
)
_INT_SETTINGS = ("max_refetch_failures", "max_reconnect_failures", "http_port")


def _number(raw: Dict[str, Any], key: str, default: float, cast: type) -> Any:
    value = raw.get(key, default)
    if isinstance(value, bool):
        raise ConfigurationError(f"settings.{key} must be a number, got {value!r}")
    try:
        number = cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"settings.{key} must be a number, got {value!r}") from exc
    if number < 0:
        raise ConfigurationError(f"settings.{key} must not be negative")
    return number


def _parse_organization(entry: Any) -> OrganizationConfig:
    if isinstance(entry, str):
        entry = {"org_id": entry}
    if not isinstance(entry, dict) or not entry.get("org_id"):
        raise ConfigurationError(f"Organization entry needs an org_id: {entry!r}")
    token = entry.get("token")
    return OrganizationConfig(
        org_id=str(entry["org_id"]),
        public=bool(entry.get("public", token is None)),
        token=str(token) if token is not None else None,
    )


def _parse_settings(raw: Dict[str, Any], raw_settings: Dict[str, Any]) -> SyncSettings:
    defaults = SyncSettings()
    values: Dict[str, Any] = {
        "api_url": str(raw.get("api_url", defaults.api_url)),
        "ws_url": str(raw.get("ws_url", defaults.ws_url)),
        "log_level": str(raw_settings.get("log_level", defaults.log_level)).upper(),
    }
    for key in _FLOAT_SETTINGS:
        values[key] = _number(raw_settings, key, getattr(defaults, key), float)
    for key in _INT_SETTINGS:
        values[key] = _number(raw_settings, key, getattr(defaults, key), int)

    if values["max_backoff"] < values["base_backoff"]:
        raise ConfigurationError("settings.max_backoff must be >= settings.base_backoff")
    return SyncSettings(**values)


def load_config(
    path: str | Path | None = None,
) -> Tuple[List[OrganizationConfig], SyncSettings]:
    """
    Load and parse the YAML configuration file.

    The path comes from the argument, else ``$STATUSSYNC_CONFIG``, else
    ``config.yaml`` at the project root.

    Returns:
        A tuple of (list of OrganizationConfig, SyncSettings).

    Raises:
        ConfigurationError: the file exists but its contents are invalid.
    """
    if path is None:
        path = os.environ.get(_ENV_CONFIG_PATH) or _DEFAULT_CONFIG_PATH
    config_path = Path(path)

    if not config_path.exists():
        return [_DEFAULT_ORGANIZATION], SyncSettings()

    with open(config_path, "r") as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")

    organizations = [_parse_organization(e) for e in raw.get("organizations") or []]
    if not organizations:
        organizations = [_DEFAULT_ORGANIZATION]

    raw_settings = raw.get("settings") or {}
    if not isinstance(raw_settings, dict):
        raise ConfigurationError("settings must be a mapping")

    return organizations, _parse_settings(raw, raw_settings)
