"""Load secrets (HF_TOKEN) from a .env file via python-dotenv."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from .paths import get_env_path

logger = logging.getLogger(__name__)

ENV_FILE_ENV = "SIDECAR_SPEAKERS_ENV_FILE"


def _env_files() -> list[Path]:
    files = []
    explicit = os.environ.get(ENV_FILE_ENV)
    if explicit:
        files.append(Path(explicit).expanduser())
    files.append(get_env_path())
    return files


def load_env(override: bool = False) -> bool:
    """Load the first .env file found.

    Looked up in order: ``$SIDECAR_SPEAKERS_ENV_FILE``, ``.env`` in the
    data directory, then the nearest ``.env`` above the working directory.
    Variables already set in the process win unless ``override`` is set.

    Returns:
        True if any variable was set.
    """
    for path in _env_files():
        if path.is_file():
            logger.debug("Loading environment from %s", path)
            return load_dotenv(dotenv_path=path, override=override)
    return load_dotenv(find_dotenv(usecwd=True), override=override)
