"""Settings loading: TOML file validated by pydantic, credentials from the environment."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import tomllib
from pydantic import BaseModel, Field

API_KEY_ENV = "SCRAPEQUEUE_API_KEY"
BASE_URL_ENV = "SCRAPEQUEUE_BASE_URL"


class SchedulerSettings(BaseModel):
    max_concurrent: int = Field(default=5, gt=0)
    poll_interval_seconds: float = Field(default=10.0, gt=0)


class GateSettings(BaseModel):
    max_per_window: int = Field(default=60, gt=0)
    window_seconds: float = Field(default=60.0, gt=0)
    max_concurrent_dispatch: int = Field(default=60, gt=0)


class ClientSettings(BaseModel):
    base_url: str = "https://api.decodo.io/v1"
    timeout_seconds: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, gt=0)
    base_retry_delay_seconds: float = Field(default=2.0, gt=0)
    api_key: Optional[str] = None


class StorageSettings(BaseModel):
    data_root: Path = Path("data")


class Settings(BaseModel):
    """Validated runtime configuration."""

    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


def load_settings(path: Path, *, environ: Optional[Dict[str, str]] = None) -> Settings:
    """Read the TOML configuration file, falling back to defaults when it is missing.

    The API key is never read from the file; it only comes from the environment so
    a checked-in settings file cannot leak a credential.
    """
    environ = os.environ if environ is None else environ
    payload: Dict[str, Any] = {}
    if path.exists():
        with path.open("rb") as handle:
            payload = tomllib.load(handle)
    client = dict(payload.get("client", {}))
    client.pop("api_key", None)
    if environ.get(API_KEY_ENV):
        client["api_key"] = environ[API_KEY_ENV]
    if environ.get(BASE_URL_ENV):
        client["base_url"] = environ[BASE_URL_ENV]
    payload["client"] = client
    return Settings.model_validate(payload)
