"""Service layer for share link management by decision owners."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from core.logging import get_logger
from models.decision import Decision
from services.share_access_gate import ShareAccessGate, ShareTokenOptions
from services.share_config import ShareSettings
from services.share_errors import InvalidArgumentError, NotFoundError, ShareLimitError
from services.share_metrics import observe_link_mutation
from services.share_store import (
    AccessLogRecord,
    AccessLogStore,
    AccessStatistics,
    ActivityStore,
    ShareTokenRecord,
    ShareTokenStore,
)

logger = get_logger(__name__)

MAX_LOG_PAGE = 200


@dataclass(frozen=True)
class ShareLinkWithLogs:
    share: ShareTokenRecord
    access_logs: List[AccessLogRecord]
    access_count: int


def build_gate(db: Session, settings: Optional[ShareSettings] = None, **kwargs) -> ShareAccessGate:
    """Wire a gate to SQLAlchemy stores bound to ``db``."""
    settings = settings or ShareSettings.load()
    return ShareAccessGate(
        ShareTokenStore(db),
        AccessLogStore(db, ip_hash_salt=settings.ip_hash_salt),
        settings=settings,
        **kwargs,
    )


def _owned_decision(db: Session, decision_id: uuid.UUID, actor_id: uuid.UUID) -> Decision:
    decision = db.get(Decision, decision_id)
    if decision is None or actor_id not in {decision.created_by, decision.assignee_id}:
        raise NotFoundError("Decision not found or access denied.")
    return decision


def _owned_share(db: Session, tokens: ShareTokenStore, token_id: uuid.UUID, actor_id: uuid.UUID) -> ShareTokenRecord:
    record = tokens.find_by_id(token_id)
    if record is None:
        raise NotFoundError("Share link not found or access denied.")
    _owned_decision(db, record.decision_id, actor_id)
    return record


def create_share_link(
    db: Session,
    *,
    decision_id: uuid.UUID,
    actor_id: uuid.UUID,
    passcode: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    expires_in_days: Optional[int] = None,
    allowed_actions: Optional[Sequence[str]] = None,
    gate: Optional[ShareAccessGate] = None,
) -> ShareTokenRecord:
    """Create a new share link for a decision owned by ``actor_id``.

    Args:
        db: Database session
        decision_id: Decision being shared
        actor_id: Authenticated owner creating the link
        passcode: Optional passcode required to open the link
        expires_at: Absolute expiry; mutually exclusive with ``expires_in_days``
        expires_in_days: Relative expiry in days
        allowed_actions: Client actions the link permits (defaults from settings)

    Returns:
        ShareTokenRecord: The created share token
    """
    gate = gate or build_gate(db)
    _owned_decision(db, decision_id, actor_id)
    if expires_at is not None and expires_in_days is not None:
        raise InvalidArgumentError("Provide either expires_at or expires_in_days, not both.")
    if expires_in_days is not None:
        if expires_in_days < 1:
            raise InvalidArgumentError("expires_in_days must be at least 1.")
        expires_at = gate.now() + timedelta(days=expires_in_days)

    tokens = ShareTokenStore(db)
    if tokens.count_active(decision_id, gate.now()) >= gate.settings.max_active_links:
        raise ShareLimitError("Maximum active share links reached for this decision.")

    record = gate.issue_token(
        decision_id=decision_id,
        created_by=actor_id,
        options=ShareTokenOptions(passcode=passcode, expires_at=expires_at, allowed_actions=allowed_actions),
    )
    ActivityStore(db).record(
        decision_id=decision_id,
        actor_id=actor_id,
        action_type="shared",
        payload={
            "token_id": str(record.id),
            "has_passcode": record.passcode_protected,
            "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        },
    )
    observe_link_mutation("create")
    logger.info("Created share link share=%s decision=%s", record.id, decision_id)
    return record


def list_share_links(db: Session, *, decision_id: uuid.UUID, actor_id: uuid.UUID) -> List[ShareTokenRecord]:
    _owned_decision(db, decision_id, actor_id)
    return ShareTokenStore(db).list_for_decision(decision_id)


def get_share_link_with_logs(
    db: Session,
    *,
    token_id: uuid.UUID,
    actor_id: uuid.UUID,
    limit: int = 100,
) -> ShareLinkWithLogs:
    tokens = ShareTokenStore(db)
    record = _owned_share(db, tokens, token_id, actor_id)
    logs = AccessLogStore(db)
    return ShareLinkWithLogs(
        share=record,
        access_logs=logs.list_by_token(record.id, limit=min(max(limit, 1), MAX_LOG_PAGE)),
        access_count=logs.count_by_token(record.id),
    )


def revoke_share_link(
    db: Session,
    *,
    token_id: uuid.UUID,
    actor_id: uuid.UUID,
    gate: Optional[ShareAccessGate] = None,
) -> ShareTokenRecord:
    """Revoke a share link; revoking twice keeps the original revocation time."""
    gate = gate or build_gate(db)
    record = _owned_share(db, ShareTokenStore(db), token_id, actor_id)
    already_revoked = record.revoked
    revoked = gate.revoke_token(record.id)
    if not already_revoked:
        ActivityStore(db).record(
            decision_id=record.decision_id,
            actor_id=actor_id,
            action_type="link_revoked",
            payload={"token_id": str(record.id)},
        )
        observe_link_mutation("revoke")
    return revoked


def regenerate_share_link(
    db: Session,
    *,
    token_id: uuid.UUID,
    actor_id: uuid.UUID,
    options: Optional[ShareTokenOptions] = None,
    gate: Optional[ShareAccessGate] = None,
) -> ShareTokenRecord:
    gate = gate or build_gate(db)
    record = _owned_share(db, ShareTokenStore(db), token_id, actor_id)
    replacement = gate.regenerate_token(record.id, options, created_by=actor_id)
    ActivityStore(db).record(
        decision_id=record.decision_id,
        actor_id=actor_id,
        action_type="link_regenerated",
        payload={"token_id": str(record.id), "new_token_id": str(replacement.id)},
    )
    observe_link_mutation("regenerate")
    return replacement


def extend_share_link(
    db: Session,
    *,
    token_id: uuid.UUID,
    actor_id: uuid.UUID,
    new_expires_at: datetime,
    gate: Optional[ShareAccessGate] = None,
) -> ShareTokenRecord:
    gate = gate or build_gate(db)
    record = _owned_share(db, ShareTokenStore(db), token_id, actor_id)
    updated = gate.extend_expiration(record.id, new_expires_at)
    ActivityStore(db).record(
        decision_id=record.decision_id,
        actor_id=actor_id,
        action_type="link_extended",
        payload={
            "token_id": str(record.id),
            "new_expires_at": updated.expires_at.isoformat() if updated.expires_at else None,
        },
    )
    observe_link_mutation("extend")
    return updated


def list_access_logs(
    db: Session,
    *,
    token_id: uuid.UUID,
    actor_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> List[AccessLogRecord]:
    record = _owned_share(db, ShareTokenStore(db), token_id, actor_id)
    return AccessLogStore(db).list_by_token(record.id, limit=min(max(limit, 1), MAX_LOG_PAGE), offset=offset)


def access_statistics(db: Session, *, token_id: uuid.UUID, actor_id: uuid.UUID) -> AccessStatistics:
    record = _owned_share(db, ShareTokenStore(db), token_id, actor_id)
    return AccessLogStore(db).aggregate_stats(record.id)


__all__ = [
    "ShareLinkWithLogs",
    "access_statistics",
    "build_gate",
    "create_share_link",
    "extend_share_link",
    "get_share_link_with_logs",
    "list_access_logs",
    "list_share_links",
    "regenerate_share_link",
    "revoke_share_link",
]
