"""Helpers for loading an optional .env file before settings are read."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.logging import get_logger

logger = get_logger(__name__)


def load_dotenv_if_available(path: Optional[Path] = None) -> bool:
    """Load variables from ``path`` (or ``$ENV_FILE`` / ``.env``) without overriding the process env."""

    env_path = path or Path(os.getenv("ENV_FILE") or ".env")
    if not env_path.exists():
        return False
    loaded = load_dotenv(dotenv_path=env_path, override=False)
    logger.debug("Loaded environment variables from %s", env_path)
    return bool(loaded)


__all__ = ["load_dotenv_if_available"]
