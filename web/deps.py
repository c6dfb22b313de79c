"""Shared FastAPI dependencies."""

from __future__ import annotations

import uuid
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from database import get_db
from services.share_access_gate import ShareAccessGate
from services.share_config import ShareSettings
from services.share_link_service import build_gate
from services.share_store import ClientContext
from services.web_utils import client_ip, parse_uuid


@lru_cache(maxsize=1)
def get_share_settings() -> ShareSettings:
    return ShareSettings.load()


def get_share_gate(
    db: Session = Depends(get_db),
    settings: ShareSettings = Depends(get_share_settings),
) -> ShareAccessGate:
    """Build a gate bound to the request session."""
    return build_gate(db, settings)


def get_actor_id(
    request: Request,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> uuid.UUID:
    """Resolve the authenticated owner.

    Authentication happens upstream; the gateway forwards the verified user id
    either on ``request.state.user_id`` or as the ``X-User-Id`` header.
    """
    state_user = getattr(request.state, "user_id", None)
    if isinstance(state_user, uuid.UUID):
        return state_user
    user_id = parse_uuid(x_user_id, detail="X-User-Id must be a UUID.")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "auth.required", "message": "Authentication required."},
        )
    return user_id


def get_client_context(request: Request) -> ClientContext:
    return ClientContext(ip=client_ip(request), user_agent=request.headers.get("user-agent"))
