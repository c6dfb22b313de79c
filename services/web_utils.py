"""Shared helpers for FastAPI routers and other web modules."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, Request, status


def parse_uuid(
    value: Optional[str],
    *,
    detail: str = "Invalid UUID.",
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Optional[uuid.UUID]:
    """Parse a UUID string used in web requests.

    Args:
        value: Raw UUID string or ``None``.
        detail: Error message when the value cannot be parsed.
        status_code: HTTP status code for the raised :class:`HTTPException`.

    Returns:
        Parsed :class:`uuid.UUID` or ``None`` when ``value`` is falsy.
    """

    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError) as exc:
        raise HTTPException(status_code=status_code, detail=detail) from exc


def client_ip(request: Request) -> Optional[str]:
    """Best-effort client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


__all__ = ["client_ip", "isoformat", "parse_uuid"]
