"""
Runtime configuration for the DH core.

Values come from explicit arguments first, then the environment, then the
IKEDH_* entries of the nearest .env file (read, never exported):
  IKEDH_DEFAULT_GROUP         group used when the host does not name one
  IKEDH_LEAK_DETECTIVE        track allocations for leak reports
  IKEDH_STRICT_PUBLIC_VALUES  range and subgroup checks on peer public values
"""

from __future__ import annotations

import os
import threading
from typing import Dict, Optional

from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ValidationError, validator

from ikedh.crypto.groups import DiffieHellmanGroup, UnsupportedGroup, parse_group


ENV_PREFIX = "IKEDH_"


class ConfigError(ValueError):
    pass


class Settings(BaseModel):
    default_group: DiffieHellmanGroup = DiffieHellmanGroup.MODP_2048_BIT
    leak_detective: bool = False
    strict_public_values: bool = False

    @validator("default_group", pre=True)
    def _parse_group(cls, v):
        if isinstance(v, str):
            try:
                return parse_group(v)
            except UnsupportedGroup as e:
                raise ValueError(str(e)) from e
        return v


def _dotenv_values() -> Dict[str, str]:
    """IKEDH_* entries of the nearest .env file; os.environ is left untouched."""
    path = find_dotenv(usecwd=True)
    if not path:
        return {}
    return {
        k: v
        for k, v in dotenv_values(path).items()
        if k.startswith(ENV_PREFIX) and v is not None
    }


def _env(name: str, file_values: Dict[str, str]) -> Optional[str]:
    # Real environment wins over .env
    value = os.getenv(ENV_PREFIX + name)
    if value is None or not value.strip():
        value = file_values.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_settings(
    default_group: Optional[object] = None,
    leak_detective: Optional[bool] = None,
    strict_public_values: Optional[bool] = None,
    dotenv: bool = True,
) -> Settings:
    """Build Settings from arguments, falling back to IKEDH_* variables."""
    file_values = _dotenv_values() if dotenv else {}

    raw = {
        "default_group": (
            default_group if default_group is not None else _env("DEFAULT_GROUP", file_values)
        ),
        "leak_detective": (
            leak_detective if leak_detective is not None else _env("LEAK_DETECTIVE", file_values)
        ),
        "strict_public_values": (
            strict_public_values
            if strict_public_values is not None
            else _env("STRICT_PUBLIC_VALUES", file_values)
        ),
    }
    # Unset values keep the model defaults
    raw = {k: v for k, v in raw.items() if v is not None}

    try:
        return Settings(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


# ---------------------------------------------------------------------------
# Process-wide settings
# ---------------------------------------------------------------------------

_settings: Optional[Settings] = None
_settings_lock = threading.Lock()


def get_settings() -> Settings:
    """Return the process-wide Settings, loading them on first use."""
    global _settings
    with _settings_lock:
        if _settings is None:
            _settings = load_settings()
        return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Install `settings` as the process-wide default (None reloads on next use)."""
    global _settings
    with _settings_lock:
        _settings = settings
