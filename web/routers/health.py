"""Health-related API endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import database
from services.share_config import ShareSettings
from web.deps import get_share_settings

router = APIRouter(prefix="/health", tags=["Health"])


def ping_database() -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error class name."""
    db = database.SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, exc.__class__.__name__
    finally:
        db.close()


def share_readiness(settings: ShareSettings) -> Dict[str, Any]:
    warnings = []
    if not settings.ip_hash_salt:
        warnings.append("ACCESS_LOG_IP_SALT is not set; client IP hashes are unsalted.")
    if settings.public_base_url.startswith("http://localhost"):
        warnings.append("SHARE_PUBLIC_BASE_URL points at localhost.")
    return {
        "defaultTtlDays": settings.default_ttl_days,
        "maxTtlDays": settings.max_ttl_days,
        "maxActiveLinks": settings.max_active_links,
        "warnings": warnings,
    }


@router.get(
    "/status",
    summary="Service runtime status",
    description="Database connectivity plus the share link settings in effect.",
)
def read_service_status(settings: ShareSettings = Depends(get_share_settings)):
    db_ok, db_error = ping_database()
    payload = {
        "status": "ok" if db_ok else "degraded",
        "database": {"ok": db_ok},
        "share": share_readiness(settings),
    }
    if db_error:
        payload["database"]["error"] = db_error
    return payload


__all__ = ["router", "ping_database", "share_readiness"]
