"""Locations of the per-user files the engine reads and writes.

Everything lives under one data directory, ``$SIDECAR_SPEAKERS_HOME`` or
``~/.sidecar_speakers``:

    speakers.json   registry snapshot
    config.json     Settings overrides
    .env            secrets such as HF_TOKEN
"""

from __future__ import annotations

import os
from pathlib import Path

SPEAKERS_HOME_ENV = "SIDECAR_SPEAKERS_HOME"
DEFAULT_HOME_DIRNAME = ".sidecar_speakers"

REGISTRY_FILENAME = "speakers.json"
CONFIG_FILENAME = "config.json"
ENV_FILENAME = ".env"


def get_data_dir(create: bool = False) -> Path:
    """Resolve the data directory, optionally creating it."""
    home = os.environ.get(SPEAKERS_HOME_ENV)
    data_dir = Path(home).expanduser() if home else Path.home() / DEFAULT_HOME_DIRNAME
    data_dir = data_dir.resolve()
    if create:
        data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_registry_path() -> Path:
    return get_data_dir() / REGISTRY_FILENAME


def get_config_path() -> Path:
    return get_data_dir() / CONFIG_FILENAME


def get_env_path() -> Path:
    return get_data_dir() / ENV_FILENAME
