"""member_sync.config

Resolve run configuration from a flat key-value source into SyncConfig.

Sources, later wins:
  1. optional YAML properties file (a flat mapping of KEY: value)
  2. process environment

SyncConfig is passed explicitly into the pipeline; no component reads the
environment on its own.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from member_sync.shared import ConfigError
from member_sync.tabular_store import DEFAULT_TABLE

TOKEN_KEY = "SLACK_API_TOKEN"
SCOPE_KEY = "SLACK_CHANNEL_ID"
STORE_KEY = "MEMBER_STORE_LOCATION"
TABLE_KEY = "MEMBER_TABLE_NAME"
UNSCOPED_KEY = "MEMBER_SYNC_UNSCOPED"

REQUIRED_KEYS = (TOKEN_KEY, SCOPE_KEY, STORE_KEY)
KNOWN_KEYS = REQUIRED_KEYS + (TABLE_KEY, UNSCOPED_KEY)

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SyncConfig:
    api_token: str | None
    scope_id: str | None
    store_location: str | None
    table_name: str = DEFAULT_TABLE
    unscoped: bool = False

    def missing_key(self) -> str | None:
        """Return the first required key whose value is empty, else None."""
        values = {
            TOKEN_KEY: self.api_token,
            SCOPE_KEY: self.scope_id,
            STORE_KEY: self.store_location,
        }
        for key in REQUIRED_KEYS:
            if not values[key]:
                return key
        return None

    def require(self) -> None:
        key = self.missing_key()
        if key is not None:
            raise ConfigError(f"missing required configuration value: {key}")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> SyncConfig:
        def _get(key: str) -> str | None:
            v = values.get(key)
            if v is None:
                return None
            v = str(v).strip()
            return v or None

        return cls(
            api_token=_get(TOKEN_KEY),
            scope_id=_get(SCOPE_KEY),
            store_location=_get(STORE_KEY),
            table_name=_get(TABLE_KEY) or DEFAULT_TABLE,
            unscoped=(_get(UNSCOPED_KEY) or "").lower() in _TRUTHY,
        )


def read_properties_file(path: Path) -> dict[str, Any]:
    """Load a flat YAML mapping; nested values are rejected."""
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read properties file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"properties file {path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"properties file {path} must contain a mapping")
    for key, value in data.items():
        if isinstance(value, (dict, list)):
            raise ConfigError(f"properties file {path}: {key} must be a scalar")
    return {str(k): v for k, v in data.items()}


def load_config(
    properties_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> SyncConfig:
    """Merge the properties file (if any) with the environment.

    Does not validate; the pipeline checks required keys when it starts.
    """
    values: dict[str, Any] = {}
    if properties_path is not None:
        values.update(read_properties_file(properties_path))
    env = os.environ if environ is None else environ
    for key in KNOWN_KEYS:
        if env.get(key):
            values[key] = env[key]
    return SyncConfig.from_mapping(values)
