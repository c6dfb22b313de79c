"""Environment variable helpers."""

from __future__ import annotations

import os
from typing import List, Optional

from core.logging import get_logger

logger = get_logger(__name__)


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_int(key: str, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %d.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%d is below minimum %d. Falling back to %d.", key, value, minimum, default)
        return default
    if maximum is not None and value > maximum:
        logger.warning("%s=%d exceeds maximum %d. Clamping.", key, value, maximum)
        return maximum
    return value


def env_list(key: str, default: Optional[List[str]] = None) -> List[str]:
    """Parse a comma separated variable into trimmed, de-duplicated values."""
    raw = os.getenv(key)
    if raw is None:
        return list(default or [])
    values: List[str] = []
    for part in raw.split(","):
        item = part.strip()
        if item and item not in values:
            values.append(item)
    return values


__all__ = ["env_int", "env_list", "env_str"]
